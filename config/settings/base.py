"""
Django base settings for the Lead Scan Pipeline service.

This module contains settings common to all environments.
For more information on this file, see
https://docs.djangoproject.com/en/4.2/topics/settings/
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent.parent


# Quick-start development settings - unsuitable for production
# See https://docs.djangoproject.com/en/4.2/howto/deployment/checklist/

# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = os.getenv(
    "SECRET_KEY",
    "django-insecure-leadscan-dev-key-change-in-production"
)

# SECURITY WARNING: don't run with debug turned on in production!
DEBUG = os.getenv("DEBUG", "True") == "True"

ALLOWED_HOSTS = os.getenv("ALLOWED_HOSTS", "localhost,127.0.0.1").split(",")


# Application definition

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    # Third-party apps
    "rest_framework",
    "drf_spectacular",
    # Local apps
    "scanner",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "config.urls"

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
    },
]


# Database
# https://docs.djangoproject.com/en/4.2/ref/settings/#databases
# Configured in environment-specific settings (development.py, production.py, test.py)

DATABASES = {
    # Override in environment-specific settings
}


# Password validation
# https://docs.djangoproject.com/en/4.2/ref/settings/#auth-password-validators

AUTH_PASSWORD_VALIDATORS = [
    {
        "NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator",
    },
    {
        "NAME": "django.contrib.auth.password_validation.MinimumLengthValidator",
    },
    {
        "NAME": "django.contrib.auth.password_validation.CommonPasswordValidator",
    },
    {
        "NAME": "django.contrib.auth.password_validation.NumericPasswordValidator",
    },
]


# Internationalization
# https://docs.djangoproject.com/en/4.2/topics/i18n/

LANGUAGE_CODE = "en-us"

TIME_ZONE = "UTC"

USE_I18N = True

USE_TZ = True


# Static files (CSS, JavaScript, Images)
# https://docs.djangoproject.com/en/4.2/howto/static-files/

STATIC_URL = "static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

# Default primary key field type
# https://docs.djangoproject.com/en/4.2/ref/settings/#default-auto-field

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"


# Cache Configuration
# https://docs.djangoproject.com/en/4.2/topics/cache/
# Configured in environment-specific settings

CACHES = {
    # Override in environment-specific settings
}


# Celery Configuration
# https://docs.celeryproject.org/en/stable/django/first-steps-with-django.html

CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/1")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/1")
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TASK_SERIALIZER = "json"
CELERY_RESULT_SERIALIZER = "json"
CELERY_TIMEZONE = TIME_ZONE
CELERY_TASK_TRACK_STARTED = True
CELERY_TASK_TIME_LIMIT = 60 * 60  # one hour max for a scan batch


# Django REST Framework Configuration
# https://www.django-rest-framework.org/

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.SessionAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAuthenticated",
    ],
    "DEFAULT_SCHEMA_CLASS": "drf_spectacular.openapi.AutoSchema",
    "DEFAULT_PAGINATION_CLASS": "rest_framework.pagination.PageNumberPagination",
    "PAGE_SIZE": 100,
    "DEFAULT_THROTTLE_RATES": {
        "scan_trigger": "10/hour",
        "discovery": "30/hour",
    },
}


# DRF Spectacular (OpenAPI/Swagger) Configuration
# https://drf-spectacular.readthedocs.io/

SPECTACULAR_SETTINGS = {
    "TITLE": "Lead Scan Pipeline API",
    "DESCRIPTION": "Automated website scanning and business discovery for lead generation",
    "VERSION": "1.0.0",
    "SERVE_INCLUDE_SCHEMA": False,
}


# Logging Configuration
# https://docs.djangoproject.com/en/4.2/topics/logging/

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{levelname} {asctime} {module} {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "loggers": {
        "django": {
            "handlers": ["console"],
            "level": os.getenv("LOG_LEVEL", "INFO"),
        },
        "scanner": {
            "handlers": ["console"],
            "level": os.getenv("LOG_LEVEL", "INFO"),
        },
    },
}


# External API Configuration

# Google PageSpeed Insights (Lighthouse)
PAGESPEED_API_KEY = os.getenv("PAGESPEED_API_KEY", "")

# GTmetrix performance reports
GTMETRIX_API_KEY = os.getenv("GTMETRIX_API_KEY", "")

# BuiltWith technology lookup
BUILTWITH_API_KEY = os.getenv("BUILTWITH_API_KEY", "")

# Google Places text search (discovery)
GOOGLE_MAPS_API_KEY = os.getenv("GOOGLE_MAPS_API_KEY", "")


# Sentry Configuration
# https://docs.sentry.io/platforms/python/guides/django/

SENTRY_DSN = os.getenv("SENTRY_DSN", "")
SENTRY_ENVIRONMENT = os.getenv("SENTRY_ENVIRONMENT", "development")
SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.2"))

# Initialize Sentry only when a DSN is configured
import sentry_sdk

if SENTRY_DSN:
    sentry_sdk.init(
        dsn=SENTRY_DSN,
        send_default_pii=False,
        traces_sample_rate=SENTRY_TRACES_SAMPLE_RATE,
        environment=SENTRY_ENVIRONMENT,
    )


# Scanner Configuration

# Monthly call limits per metered provider
SCANNER_QUOTA_LIMITS = {
    "pagespeed": int(os.getenv("SCANNER_QUOTA_PAGESPEED", "25000")),
    "gtmetrix": int(os.getenv("SCANNER_QUOTA_GTMETRIX", "100")),
    "builtwith": int(os.getenv("SCANNER_QUOTA_BUILTWITH", "200")),
    "google_places": int(os.getenv("SCANNER_QUOTA_GOOGLE_PLACES", "1000")),
}

# Adapter used per scan type
SCANNER_SCAN_PROVIDERS = {
    "performance": os.getenv("SCANNER_PERFORMANCE_PROVIDER", "pagespeed"),
    "technology": os.getenv("SCANNER_TECHNOLOGY_PROVIDER", "builtwith"),
}

# Discovery sources in priority order (earlier wins on duplicates)
SCANNER_DISCOVERY_SOURCES = os.getenv(
    "SCANNER_DISCOVERY_SOURCES", "yellowpages,localstack,google_places"
).split(",")

# Timeout applied to every provider call (seconds)
SCANNER_PROVIDER_TIMEOUT_SECONDS = float(os.getenv("SCANNER_PROVIDER_TIMEOUT_SECONDS", "30"))

# Delay between targets in a batch: base + random jitter (seconds)
SCANNER_SCAN_DELAY_SECONDS = float(os.getenv("SCANNER_SCAN_DELAY_SECONDS", "5"))
SCANNER_SCAN_DELAY_JITTER_SECONDS = float(os.getenv("SCANNER_SCAN_DELAY_JITTER_SECONDS", "5"))

# Delay after a provider answered with a rate-limit response (seconds)
SCANNER_RATE_LIMIT_DELAY_SECONDS = float(os.getenv("SCANNER_RATE_LIMIT_DELAY_SECONDS", "30"))

# A target is stale when its last successful scan is older than this
SCANNER_STALE_TARGET_DAYS = int(os.getenv("SCANNER_STALE_TARGET_DAYS", "30"))

# Items stuck in processing longer than this are requeued by the reaper
SCANNER_STALE_PROCESSING_MINUTES = int(os.getenv("SCANNER_STALE_PROCESSING_MINUTES", "30"))

# Discovery retry policy (per provider)
SCANNER_DISCOVERY_MAX_ATTEMPTS = int(os.getenv("SCANNER_DISCOVERY_MAX_ATTEMPTS", "3"))
SCANNER_DISCOVERY_BASE_DELAY = float(os.getenv("SCANNER_DISCOVERY_BASE_DELAY", "1.0"))
SCANNER_DISCOVERY_MAX_DELAY = float(os.getenv("SCANNER_DISCOVERY_MAX_DELAY", "10.0"))
