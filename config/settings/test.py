"""
Test settings for the Lead Scan Pipeline service.

Uses in-memory SQLite and eager Celery for fast test execution.
"""

import os
from .base import *

# Test mode
DEBUG = False

ALLOWED_HOSTS = ["localhost", "127.0.0.1", "testserver"]

# Test database - in-memory SQLite for speed
DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
    }
}

# Test Cache - use local memory cache
CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        "LOCATION": "unique-snowflake",
    }
}

# Test Celery - run tasks synchronously
CELERY_TASK_ALWAYS_EAGER = True
CELERY_TASK_EAGER_PROPAGATES = True
CELERY_BROKER_URL = "memory://"
CELERY_RESULT_BACKEND = "cache+memory://"

# Test logging - minimal output
LOGGING["loggers"]["django"]["level"] = "WARNING"
LOGGING["loggers"]["scanner"]["level"] = "WARNING"

# Password validators disabled for faster tests
AUTH_PASSWORD_VALIDATORS = []

# Use faster password hasher for tests
PASSWORD_HASHERS = [
    "django.contrib.auth.hashers.MD5PasswordHasher",
]

# Disable Sentry in tests
SENTRY_DSN = ""

# Generous throttle rates so API tests are not rate limited
REST_FRAMEWORK = {
    **REST_FRAMEWORK,
    "DEFAULT_THROTTLE_RATES": {
        "scan_trigger": "10000/hour",
        "discovery": "10000/hour",
    },
}

# Test scanner settings - no sleeping, fail fast
SCANNER_PROVIDER_TIMEOUT_SECONDS = 5
SCANNER_SCAN_DELAY_SECONDS = 0
SCANNER_SCAN_DELAY_JITTER_SECONDS = 0
SCANNER_RATE_LIMIT_DELAY_SECONDS = 0
SCANNER_DISCOVERY_BASE_DELAY = 0
SCANNER_DISCOVERY_MAX_DELAY = 0
