"""
LedgerFlow – Receivables Ledger Django Settings
"""

from pathlib import Path
import os
import re
import environ
import dj_database_url

# =============================================================================
# BASE SETUP
# =============================================================================
BASE_DIR = Path(__file__).resolve().parent.parent
env = environ.Env()

IS_PRODUCTION = os.getenv("PRODUCTION", "false").lower() == "true"
DEBUG = os.getenv("DEBUG", "true").lower() == "true"

# =============================================================================
# ENVIRONMENT VALIDATION (FAIL-FAST)
# =============================================================================
from ledgerflow.env_validation import validate_env
validate_env()

# =============================================================================
# SECURITY
# =============================================================================
SECRET_KEY = os.getenv("SECRET_KEY", "django-insecure-dev-only-change-in-production")

if IS_PRODUCTION:
    ALLOWED_HOSTS = env.list("ALLOWED_HOSTS", default=[])
else:
    ALLOWED_HOSTS = ["*"]

# Structured Logging
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'structured': {
            'format': '[%(asctime)s] %(levelname)s [%(name)s:%(lineno)s] [operation_id=%(operation_id)s] %(message)s',
        },
    },
    'filters': {
        'operation_id': {
            '()': 'ledgerflow.log_context.OperationIDFilter',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'structured',
            'filters': ['operation_id'],
        },
    },
    'root': {
        'handlers': ['console'],
        'level': os.getenv("LOG_LEVEL", "INFO"),
    },
}

# =============================================================================
# INSTALLED APPS
# =============================================================================
INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "rest_framework",
    "receivables.apps.ReceivablesConfig",
]

# =============================================================================
# DATABASE
# =============================================================================
DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
DATABASES = {
    "default": dj_database_url.config(
        default="sqlite:///" + str(BASE_DIR / "db.sqlite3"),
        conn_max_age=600,
        conn_health_checks=True,
        ssl_require=IS_PRODUCTION
    )
}

if DATABASE_URL and IS_PRODUCTION:
    # Strip unsupported params for production PostgreSQL (e.g. Neon)
    clean_url = re.sub(r'[?&]channel_binding=[^&]+', '', DATABASE_URL).replace('?&', '?').rstrip('&')
    DATABASES["default"] = dj_database_url.parse(
        clean_url,
        conn_max_age=600,
        conn_health_checks=True,
        ssl_require=True
    )
    DATABASES["default"]["OPTIONS"] = {"connect_timeout": 10, "sslmode": "require"}

# =============================================================================
# MIDDLEWARE
# =============================================================================
MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "ledgerflow.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    }
]

# =============================================================================
# REST FRAMEWORK
# =============================================================================
REST_FRAMEWORK = {
    "COERCE_DECIMAL_TO_STRING": True,
}

# =============================================================================
# EMAIL (dunning notices)
# =============================================================================
EMAIL_BACKEND = os.getenv("EMAIL_BACKEND", "django.core.mail.backends.console.EmailBackend")
DEFAULT_FROM_EMAIL = os.getenv("DEFAULT_FROM_EMAIL", "receivables@ledgerflow.local")

# =============================================================================
# RECEIVABLES LEDGER
# =============================================================================
RECEIVABLES = {
    # What a credit check does when the customer has no active limit: "reject" or "unlimited"
    "NO_CREDIT_LIMIT_POLICY": env.str("RECEIVABLES_NO_CREDIT_LIMIT_POLICY", default="reject"),
    "ENFORCE_CREDIT_LIMIT": env.bool("RECEIVABLES_ENFORCE_CREDIT_LIMIT", default=False),
    "ALLOCATION_MAX_RETRIES": env.int("RECEIVABLES_ALLOCATION_MAX_RETRIES", default=3),
    "RETRY_BACKOFF_SECONDS": env.float("RECEIVABLES_RETRY_BACKOFF_SECONDS", default=0.05),
    "DUNNING_MAX_WORKERS": env.int("RECEIVABLES_DUNNING_MAX_WORKERS", default=1),
    "DEFAULT_CURRENCY": env.str("RECEIVABLES_DEFAULT_CURRENCY", default="USD"),
    "SMS_GATEWAY_URL": env.str("RECEIVABLES_SMS_GATEWAY_URL", default=""),
    "SMS_GATEWAY_TOKEN": env.str("RECEIVABLES_SMS_GATEWAY_TOKEN", default=""),
    # Print-and-post service for dunning letters
    "LETTER_GATEWAY_URL": env.str("RECEIVABLES_LETTER_GATEWAY_URL", default=""),
    "LETTER_GATEWAY_TOKEN": env.str("RECEIVABLES_LETTER_GATEWAY_TOKEN", default=""),
}

LANGUAGE_CODE = "en-us"
TIME_ZONE = os.getenv("TIME_ZONE", "UTC")
USE_TZ = True

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"
