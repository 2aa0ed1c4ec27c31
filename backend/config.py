import os
from dotenv import load_dotenv

load_dotenv()

APP_ENV = os.getenv("APP_ENV", "development").strip().lower()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./survey.db")

SESSION_SECRET = os.getenv("SESSION_SECRET", "dev-session-secret-change-me-0123456789")
# Separate JWT secret is optional; falls back to the session secret
JWT_SECRET = os.getenv("JWT_SECRET") or SESSION_SECRET
JWT_ALGORITHM = "HS256"

ACCESS_TOKEN_TTL_MINUTES = int(os.getenv("ACCESS_TOKEN_TTL_MINUTES", "15"))
REFRESH_TOKEN_TTL_DAYS = int(os.getenv("REFRESH_TOKEN_TTL_DAYS", "30"))
SESSION_MAX_AGE_SECONDS = int(os.getenv("SESSION_MAX_AGE_SECONDS", "86400"))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

REFRESH_COOKIE_NAME = "refresh_token"
REFRESH_COOKIE_PATH = "/api/auth"
SESSION_COOKIE_NAME = "sid"
CSRF_HEADER = "X-CSRF-Token"

ORIGINS = [o.strip() for o in os.getenv("ORIGINS", "http://localhost:5173").split(",") if o.strip()]

RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "1") != "0"

ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD")
DEFAULT_EVENT_SLUG = os.getenv("DEFAULT_EVENT_SLUG", "fall-summit-2025")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def is_production() -> bool:
    return APP_ENV == "production"


def is_development() -> bool:
    return APP_ENV == "development"


def is_test() -> bool:
    return APP_ENV == "test"
