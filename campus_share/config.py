import os
from dotenv import load_dotenv

load_dotenv()

TESTING = os.getenv("TESTING", "False").lower() == "true"

DB_USER = os.getenv("DB_USER")
DB_PASSWORD = os.getenv("DB_PASSWORD")
DB_HOST = os.getenv("DB_HOST", "localhost")
DB_PORT = os.getenv("DB_PORT", "5432")
DB_NAME = os.getenv("DB_NAME", "campus_share")


def build_database_url() -> str:
    explicit = os.getenv("DATABASE_URL")
    if explicit:
        return explicit
    if TESTING:
        return "sqlite+aiosqlite:///:memory:"
    if not DB_PASSWORD:
        raise ValueError("DB_PASSWORD environment variable is required")
    return f"postgresql+asyncpg://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}"


DATABASE_URL = build_database_url()

FIREBASE_CREDENTIALS = os.getenv("FIREBASE_CREDENTIALS", "serviceAccountKey.json")

# Notifications younger than this are surfaced as live alerts; older ones are backlog.
FRESHNESS_WINDOW_SECONDS = float(os.getenv("FRESHNESS_WINDOW_SECONDS", "10"))

# 0 keeps fan-out locality-only.
FANOUT_RADIUS_METERS = float(os.getenv("FANOUT_RADIUS_METERS", "0"))

LIVE_QUERY_RETRY_ATTEMPTS = int(os.getenv("LIVE_QUERY_RETRY_ATTEMPTS", "5"))
LIVE_QUERY_RETRY_BASE_DELAY = float(os.getenv("LIVE_QUERY_RETRY_BASE_DELAY", "0.5"))
LIVE_QUERY_RESYNC_SECONDS = float(os.getenv("LIVE_QUERY_RESYNC_SECONDS", "0"))

EXPO_PUSH_URL = os.getenv("EXPO_PUSH_URL", "https://exp.host/--/api/v2/push/send")
ENABLE_EXPO_PUSH = os.getenv("ENABLE_EXPO_PUSH", "False").lower() == "true"

GEOCODE_URL = os.getenv("GEOCODE_URL", "https://nominatim.openstreetmap.org/reverse")
ENABLE_REVERSE_GEOCODE = os.getenv("ENABLE_REVERSE_GEOCODE", "False").lower() == "true"
