import os
import logging
from typing import List

from dotenv import load_dotenv

load_dotenv()

# Database
MONGODB_URI = os.getenv("MONGODB_URI") or os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "spell_caster")

# Public URL used to build invite links
APP_URL = os.getenv("APP_URL") or os.getenv("NEXT_PUBLIC_APP_URL")
ENV_NAME = os.getenv("ENV", "development")

# Auth
JWT_SECRET = os.getenv("JWT_SECRET") or os.getenv("BETTER_AUTH_SECRET") or "dev-secret-change-me"
JWT_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", "10080"))  # 7 days
ADMIN_EMAILS = [e.strip().lower() for e in os.getenv("ADMIN_EMAILS", "").split(",") if e.strip()]

# Payments (Stripe)
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_PUBLIC_KEY = os.getenv("STRIPE_PUBLIC_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "usd")

# Email (SMTP)
SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASS = os.getenv("SMTP_PASS")
FROM_EMAIL = os.getenv("FROM_EMAIL", SMTP_USER or "no-reply@yourspellcaster.local")

# Ritual progress uploads
UPLOAD_DIR = os.getenv("UPLOAD_DIR", os.path.join("public", "uploads", "ritual-progress"))
UPLOAD_URL_PREFIX = "/uploads/ritual-progress"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

REQUIRED_ENV_VARS = ["MONGODB_URI", "APP_URL"]
OPTIONAL_ENV_VARS = [
    "STRIPE_SECRET_KEY",
    "STRIPE_PUBLIC_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "JWT_SECRET",
    "ADMIN_EMAILS",
    "SMTP_HOST",
    "SMTP_USER",
    "SMTP_PASS",
]

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def app_url() -> str:
    return (APP_URL or "http://localhost:3000").rstrip("/")


def validate_environment() -> List[str]:
    """Return the required settings that are missing. Missing optional ones are only logged."""
    present = {"MONGODB_URI": MONGODB_URI, "APP_URL": APP_URL}
    missing = [name for name in REQUIRED_ENV_VARS if not present.get(name)]
    if missing:
        logger.warning("Missing required environment variables: %s", ", ".join(missing))
    if ENV_NAME.startswith("dev"):
        missing_optional = [name for name in OPTIONAL_ENV_VARS if not os.getenv(name)]
        if missing_optional:
            logger.debug("Optional environment variables not configured: %s", ", ".join(missing_optional))
    return missing
