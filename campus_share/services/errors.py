from typing import List


class CampusShareError(Exception):
    """Base class for errors raised by the coordination services."""


class ValidationError(CampusShareError):
    """Bad input (empty title, empty message text, ...). Never retried."""


class NotFound(CampusShareError):
    pass


class PermissionDenied(CampusShareError):
    pass


class PreconditionFailed(CampusShareError):
    """A conditional write lost to a concurrent writer."""


class TransientStoreError(CampusShareError):
    """The store could not be reached. Live queries retry these internally."""


class PartialFanoutFailure(CampusShareError):
    """
    Some notification writes of a fan-out did not land. Carried on the fan-out
    report rather than raised to the request creator.
    """

    def __init__(self, intended: int, delivered: int, failed_recipients: List[str]):
        self.intended = intended
        self.delivered = delivered
        self.failed_recipients = failed_recipients
        super().__init__(f"Notified {delivered} of {intended} recipients")
