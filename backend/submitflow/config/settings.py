"""Django settings for SubmitFlow.

Settings are 12-factor compliant and pull configuration from environment variables. Defaults
are suitable for local development and unit tests only.
"""

from __future__ import annotations

import os
from pathlib import Path

import environ
from django.core.exceptions import ImproperlyConfigured

BASE_DIR = Path(__file__).resolve().parent.parent.parent

env = environ.Env(
    DEBUG=(bool, False),
    SECRET_KEY=(str, "unsafe-secret-key"),
    ALLOWED_HOSTS=(list, ["*"]),
    DATABASE_URL=(str, f"sqlite:///{BASE_DIR / 'db.sqlite3'}"),
    REDIS_URL=(str, "redis://localhost:6379/0"),
    LOG_LEVEL=(str, "INFO"),
    CORS_ALLOWED_ORIGINS=(list, []),
    ASYNC_REQUEST_STORE=(str, "database"),
    ASYNC_REQUESTS_TABLE_NAME=(str, ""),
    ASYNC_SYNC_THRESHOLD_MS=(int, 25_000),
    ASYNC_INLINE_MARGIN_MS=(int, 250),
    ASYNC_MAX_ATTEMPTS=(int, 3),
    ASYNC_RETRY_BASE_DELAY_SEC=(float, 1.0),
    ASYNC_RETRY_MAX_DELAY_SEC=(float, 60.0),
    ASYNC_REQUEST_TTL_SEC=(int, 3600),
    ASYNC_PROCESSING_LEASE_SEC=(float, 300.0),
    ASYNC_RETRY_SCHEDULER=(str, "celery"),
    ASYNC_LOCAL_WORKERS=(int, 8),
    ASYNC_DEFAULT_WAIT_MS=(int, 0),
    ASYNC_REAP_INTERVAL_SEC=(int, 300),
    ENVIRONMENT_NAME=(str, ""),
    AWS_REGION=(str, "eu-west-2"),
    UPSTREAM_BASE_URL=(str, "https://test-api.service.hmrc.gov.uk"),
    UPSTREAM_TIMEOUT_SEC=(float, 20.0),
)

environ.Env.read_env(
    env_file=os.environ.get("SUBMITFLOW_ENV_FILE", BASE_DIR / ".env"), recurse=False
)

SECRET_KEY = env("SECRET_KEY")
DEBUG = env("DEBUG")
ALLOWED_HOSTS = env("ALLOWED_HOSTS")

INSTALLED_APPS = [
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "rest_framework",
    "drf_spectacular",
    "corsheaders",
    "submitflow.asyncrequests",
    "submitflow.interfaces.rest",
]

MIDDLEWARE = [
    "corsheaders.middleware.CorsMiddleware",
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
]

ROOT_URLCONF = "submitflow.config.urls"

WSGI_APPLICATION = "submitflow.config.wsgi.application"
ASGI_APPLICATION = "submitflow.config.asgi.application"

DATABASES = {
    "default": env.db(),
}

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

REST_FRAMEWORK = {
    "DEFAULT_RENDERER_CLASSES": [
        "rest_framework.renderers.JSONRenderer",
    ],
    "DEFAULT_PARSER_CLASSES": [
        "rest_framework.parsers.JSONParser",
    ],
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.SessionAuthentication",
        "rest_framework.authentication.BasicAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAuthenticated",
    ],
    "DEFAULT_SCHEMA_CLASS": "drf_spectacular.openapi.AutoSchema",
}

SPECTACULAR_SETTINGS = {
    "TITLE": "SubmitFlow API",
    "VERSION": "0.1.0",
    "SERVE_INCLUDE_SCHEMA": False,
}

CORS_ALLOWED_ORIGINS = env("CORS_ALLOWED_ORIGINS")
# Clients need these to follow a 202 to the status endpoint.
CORS_EXPOSE_HEADERS = ["Location", "Retry-After", "x-request-id"]
CORS_ALLOW_HEADERS = [
    "accept",
    "authorization",
    "content-type",
    "x-csrftoken",
    "x-hmrc-access-token",
    "x-request-id",
    "x-wait-time-ms",
]

LOG_LEVEL = env("LOG_LEVEL")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "structured": {
            "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
        }
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "structured",
        }
    },
    "root": {
        "handlers": ["console"],
        "level": LOG_LEVEL,
    },
}

# Async request core ---------------------------------------------------------

ASYNC_REQUEST_STORE = env("ASYNC_REQUEST_STORE").strip().lower()
ASYNC_REQUESTS_TABLE_NAME = env("ASYNC_REQUESTS_TABLE_NAME")
ASYNC_SYNC_THRESHOLD_MS = env("ASYNC_SYNC_THRESHOLD_MS")
ASYNC_INLINE_MARGIN_MS = env("ASYNC_INLINE_MARGIN_MS")
ASYNC_MAX_ATTEMPTS = env("ASYNC_MAX_ATTEMPTS")
ASYNC_RETRY_BASE_DELAY_SEC = env("ASYNC_RETRY_BASE_DELAY_SEC")
ASYNC_RETRY_MAX_DELAY_SEC = env("ASYNC_RETRY_MAX_DELAY_SEC")
ASYNC_REQUEST_TTL_SEC = env("ASYNC_REQUEST_TTL_SEC")
ASYNC_PROCESSING_LEASE_SEC = env("ASYNC_PROCESSING_LEASE_SEC")
ASYNC_RETRY_SCHEDULER = env("ASYNC_RETRY_SCHEDULER").strip().lower()
ASYNC_LOCAL_WORKERS = env("ASYNC_LOCAL_WORKERS")
ASYNC_DEFAULT_WAIT_MS = env("ASYNC_DEFAULT_WAIT_MS")
ASYNC_REAP_INTERVAL_SEC = env("ASYNC_REAP_INTERVAL_SEC")
IDENTITY_HASHER = "hmac"

ENVIRONMENT_NAME = env("ENVIRONMENT_NAME")
AWS_REGION = env("AWS_REGION")
UPSTREAM_BASE_URL = env("UPSTREAM_BASE_URL")
UPSTREAM_TIMEOUT_SEC = env("UPSTREAM_TIMEOUT_SEC")

if ASYNC_REQUEST_STORE not in ("", "database", "dynamodb", "memory"):
    raise ImproperlyConfigured(
        "ASYNC_REQUEST_STORE must be one of 'database', 'dynamodb', 'memory' or empty."
    )
if ASYNC_RETRY_SCHEDULER not in ("celery", "local"):
    raise ImproperlyConfigured("ASYNC_RETRY_SCHEDULER must be 'celery' or 'local'.")
if ASYNC_SYNC_THRESHOLD_MS < 0 or ASYNC_INLINE_MARGIN_MS < 0 or ASYNC_DEFAULT_WAIT_MS < 0:
    raise ImproperlyConfigured("Async wait thresholds must not be negative.")
if ASYNC_MAX_ATTEMPTS < 1:
    raise ImproperlyConfigured("ASYNC_MAX_ATTEMPTS must be at least 1.")
if ASYNC_PROCESSING_LEASE_SEC <= ASYNC_RETRY_MAX_DELAY_SEC:
    raise ImproperlyConfigured(
        "ASYNC_PROCESSING_LEASE_SEC must exceed ASYNC_RETRY_MAX_DELAY_SEC."
    )
if ASYNC_LOCAL_WORKERS < 1:
    raise ImproperlyConfigured("ASYNC_LOCAL_WORKERS must be at least 1.")

CELERY_BROKER_URL = env("REDIS_URL")
CELERY_RESULT_BACKEND = env("REDIS_URL")
# Eager mode would run background attempts inside the HTTP request.
CELERY_TASK_ALWAYS_EAGER = env.bool("CELERY_TASK_ALWAYS_EAGER", default=False)
CELERY_TASK_EAGER_PROPAGATES = env.bool("CELERY_TASK_EAGER_PROPAGATES", default=True)
CELERY_TASK_DEFAULT_QUEUE = "submitflow.default"
CELERY_TASK_ROUTES = {
    "submitflow.application.tasks.*": {"queue": "submitflow.core"},
}
CELERY_TASK_ACKS_LATE = True
CELERY_BEAT_SCHEDULE = {
    "reap-expired-async-requests": {
        "task": "submitflow.asyncrequests.tasks.reap_expired_async_requests",
        "schedule": ASYNC_REAP_INTERVAL_SEC,
    },
    "recover-stalled-async-requests": {
        "task": "submitflow.asyncrequests.tasks.recover_stalled_async_requests",
        "schedule": ASYNC_REAP_INTERVAL_SEC,
    },
}
