import logging
from fastapi import Request, status
from fastapi.responses import JSONResponse

from campus_share.services import errors

logger = logging.getLogger(__name__)

STATUS_CODES = {
    errors.ValidationError: status.HTTP_400_BAD_REQUEST,
    errors.PermissionDenied: status.HTTP_403_FORBIDDEN,
    errors.NotFound: status.HTTP_404_NOT_FOUND,
    errors.PreconditionFailed: status.HTTP_409_CONFLICT,
    errors.TransientStoreError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def status_for(exc: errors.CampusShareError) -> int:
    for error_type, code in STATUS_CODES.items():
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def campus_share_exception_handler(request: Request, exc: errors.CampusShareError):
    """
    Maps service errors to HTTP responses with a `detail` body.
    """
    code = status_for(exc)
    if code >= 500:
        logger.error("service_error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=code, content={"detail": str(exc)})
