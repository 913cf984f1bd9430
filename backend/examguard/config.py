from dotenv import load_dotenv
import os

load_dotenv()


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


DATABASE_URL = os.getenv("DATABASE_URL", "postgresql+asyncpg://localhost/examguard")
SCHEMA_SEARCH_PATH = os.getenv("SCHEMA_SEARCH_PATH", "public")
SQL_ECHO = os.getenv("SQL_ECHO", "").lower() in ("1", "true", "yes")

SECRET = os.getenv("SECRET", "change-me")
JWT_LIFETIME_SECONDS = _int_env("JWT_LIFETIME_SECONDS", 3600)

# seconds of clock skew tolerated when a submit arrives right at the deadline
SUBMIT_GRACE_SECONDS = _int_env("SUBMIT_GRACE_SECONDS", 2)
# heartbeats closer together than this are acknowledged but not written
HEARTBEAT_MIN_INTERVAL_SECONDS = _int_env("HEARTBEAT_MIN_INTERVAL_SECONDS", 10)
# 0 disables the in-process sweep loop
SWEEP_INTERVAL_SECONDS = _int_env("SWEEP_INTERVAL_SECONDS", 120)

STORE_RETRY_ATTEMPTS = _int_env("STORE_RETRY_ATTEMPTS", 3)
STORE_RETRY_MAX_WAIT_SECONDS = _int_env("STORE_RETRY_MAX_WAIT_SECONDS", 2)

# exam rule defaults used when an instructor leaves a field out
DEFAULT_MAX_EXITS = 3
DEFAULT_EXIT_WARNING_SECONDS = 10
DEFAULT_OFFLINE_GRACE_MINUTES = 5
DEFAULT_PASS_SCORE = 60

# NOTE: exact origins of the frontend dev servers (no trailing slash)
CORS_ORIGINS = [
    o.strip()
    for o in os.getenv(
        "CORS_ORIGINS",
        "http://localhost:5173,http://127.0.0.1:5173,http://localhost:3000,http://127.0.0.1:3000",
    ).split(",")
    if o.strip()
]
