import os
import logging
from django.core.exceptions import ImproperlyConfigured

logger = logging.getLogger(__name__)

# Mandatory environment variables for production
REQUIRED_PRODUCTION_ENV_VARS = [
    "SECRET_KEY",
    "DATABASE_URL",
]

NO_CREDIT_LIMIT_POLICIES = ("reject", "unlimited")

POSITIVE_INT_ENV_VARS = [
    "RECEIVABLES_ALLOCATION_MAX_RETRIES",
    "RECEIVABLES_DUNNING_MAX_WORKERS",
]


def validate_receivables_env():
    """
    Validate the receivables ledger configuration.

    The no-credit-limit policy has no safe implicit value, so anything other
    than an explicit, known policy name stops start-up.
    """
    policy = os.getenv("RECEIVABLES_NO_CREDIT_LIMIT_POLICY", "reject").strip().lower()
    if policy not in NO_CREDIT_LIMIT_POLICIES:
        error_msg = (
            f"RECEIVABLES_NO_CREDIT_LIMIT_POLICY must be one of {', '.join(NO_CREDIT_LIMIT_POLICIES)}, "
            f"got '{policy}'"
        )
        logger.critical(error_msg)
        raise ImproperlyConfigured(error_msg)

    for var in POSITIVE_INT_ENV_VARS:
        raw = os.getenv(var)
        if raw is None:
            continue
        try:
            value = int(raw)
        except ValueError:
            raise ImproperlyConfigured(f"{var} must be an integer, got '{raw}'")
        if value < 1:
            raise ImproperlyConfigured(f"{var} must be at least 1, got {value}")


def validate_env():
    """
    Validate critical environment variables for Django settings.
    Runs once per process; subsequent calls are idempotent.
    """
    is_production = os.getenv("PRODUCTION", "false").lower() == "true"

    # Check SECRET_KEY exists regardless of environment
    secret_key = os.getenv("SECRET_KEY")
    if not secret_key:
        if is_production:
            raise ImproperlyConfigured("CRITICAL: SECRET_KEY is required in production.")
        else:
            logger.warning("SECRET_KEY not set, using insecure default for development.")

    if is_production:
        missing = [var for var in REQUIRED_PRODUCTION_ENV_VARS if not os.getenv(var)]
        if missing:
            error_msg = f"CRITICAL: Missing required environment variables in production: {', '.join(missing)}"
            logger.critical(error_msg)
            raise ImproperlyConfigured(error_msg)

        # Enforce secure SECRET_KEY
        if secret_key and (secret_key.startswith("django-insecure") or len(secret_key) < 50):
            error_msg = "CRITICAL: SECRET_KEY must be a long, secure string in production"
            logger.critical(error_msg)
            raise ImproperlyConfigured(error_msg)

    validate_receivables_env()
    logger.info("Environment validation passed successfully")
