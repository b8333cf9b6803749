# backend/flowcrm_backend/settings/base.py
import os
from pathlib import Path
from datetime import timedelta
from corsheaders.defaults import default_headers, default_methods

BASE_DIR = Path(__file__).resolve().parents[2]

SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-secret")
DEBUG = os.getenv("DJANGO_DEBUG", "true").lower() == "true"

ALLOWED_HOSTS = [h for h in os.getenv("ALLOWED_HOSTS", "localhost,127.0.0.1,0.0.0.0").split(",") if h]
CSRF_TRUSTED_ORIGINS = [s.strip() for s in os.getenv("CSRF_TRUSTED_ORIGINS", "").split(",") if s.strip()]

INSTALLED_APPS = [
    "core",
    "platformapp",
    "crm",
    "notificationsapp",
    "automations",

    # third-party
    "corsheaders",
    "rest_framework",
    "rest_framework_simplejwt",
    "django_filters",
    "drf_spectacular",

    # contrib
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    # WhiteNoise can be below CORS; it only serves /static
    "whitenoise.middleware.WhiteNoiseMiddleware",
    "core.middleware.RequestIDMiddleware",
    "core.middleware.TimingMiddleware",
    "corsheaders.middleware.CorsMiddleware",

    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "flowcrm_backend.urls"

TEMPLATES = [{
    "BACKEND": "django.template.backends.django.DjangoTemplates",
    "DIRS": [],
    "APP_DIRS": True,
    "OPTIONS": {"context_processors": [
        "django.template.context_processors.debug",
        "django.template.context_processors.request",
        "django.contrib.auth.context_processors.auth",
        "django.contrib.messages.context_processors.messages",
    ]},
}]

WSGI_APPLICATION = "flowcrm_backend.wsgi.application"

if os.getenv("POSTGRES_HOST"):
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.getenv("POSTGRES_DB", "flowcrm"),
            "USER": os.getenv("POSTGRES_USER", "postgres"),
            "PASSWORD": os.getenv("POSTGRES_PASSWORD", ""),
            "HOST": os.getenv("POSTGRES_HOST"),
            "PORT": int(os.getenv("POSTGRES_PORT", "5432")),
            "CONN_MAX_AGE": 60,
        }
    }
else:
    DATABASES = {"default": {"ENGINE": "django.db.backends.sqlite3", "NAME": str(BASE_DIR / "db.sqlite3")}}

LANGUAGE_CODE = "en-us"; TIME_ZONE = "UTC"; USE_I18N = True; USE_TZ = True

STATIC_URL = "/static/"
STATIC_ROOT = BASE_DIR / "staticfiles"
STORAGES = {
    "default": {"BACKEND": "django.core.files.storage.FileSystemStorage"},
    "staticfiles": {"BACKEND": "whitenoise.storage.CompressedManifestStaticFilesStorage"},
}
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# Proxies/redirects
APPEND_SLASH = False
USE_X_FORWARDED_HOST = True
SECURE_PROXY_SSL_HEADER = ("HTTP_X_FORWARDED_PROTO", "https")

# DRF
REST_FRAMEWORK = {
    "DEFAULT_SCHEMA_CLASS": "drf_spectacular.openapi.AutoSchema",
    "DEFAULT_PERMISSION_CLASSES": ["rest_framework.permissions.IsAuthenticatedOrReadOnly"],
    "DEFAULT_AUTHENTICATION_CLASSES": ["rest_framework_simplejwt.authentication.JWTAuthentication"],
    "DEFAULT_FILTER_BACKENDS": ["django_filters.rest_framework.DjangoFilterBackend"],
    "DEFAULT_RENDERER_CLASSES": ["rest_framework.renderers.JSONRenderer"],
    "DEFAULT_THROTTLE_CLASSES": [
        "rest_framework.throttling.AnonRateThrottle",
        "rest_framework.throttling.UserRateThrottle",
    ],
    "DEFAULT_THROTTLE_RATES": {
        "anon": "60/minute",
        "user": "600/minute",
    },
}
if DEBUG:
    REST_FRAMEWORK["DEFAULT_RENDERER_CLASSES"].append("rest_framework.renderers.BrowsableAPIRenderer")

SPECTACULAR_SETTINGS = {"TITLE": "FlowCRM API", "DESCRIPTION": "CRM + automation engine API", "VERSION": "0.1.0"}

# SimpleJWT
SIMPLE_JWT = {
    "ACCESS_TOKEN_LIFETIME": timedelta(minutes=5),
    "REFRESH_TOKEN_LIFETIME": timedelta(days=1),
    "ALGORITHM": "HS256",
    "SIGNING_KEY": SECRET_KEY,
    "AUTH_HEADER_TYPES": ("Bearer",),
    "AUTH_HEADER_NAME": "HTTP_AUTHORIZATION",
    "USER_ID_FIELD": "id",
    "USER_ID_CLAIM": "user_id",
}

SESSION_ENGINE = "django.contrib.sessions.backends.db"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOGGING = {
    "version": 1, "disable_existing_loggers": False,
    "filters": {"request_id": {"()": "core.logging.RequestIDFilter"}},
    "formatters": {
        "default": {"format": "%(asctime)s %(levelname)s [%(request_id)s] %(name)s: %(message)s"},
    },
    "handlers": {"console": {"class": "logging.StreamHandler", "filters": ["request_id"], "formatter": "default"}},
    "loggers": {"django": {"handlers": ["console"], "level": "INFO"},
                "django.request": {"handlers": ["console"], "level": "ERROR", "propagate": False},
                "automations": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
                "celery": {"handlers": ["console"], "level": "INFO"}},
}

# Mail (email channel sender)
EMAIL_BACKEND = os.getenv("EMAIL_BACKEND", "django.core.mail.backends.smtp.EmailBackend")
EMAIL_HOST = os.getenv("EMAIL_HOST", "localhost")
EMAIL_PORT = int(os.getenv("EMAIL_PORT", "25"))
EMAIL_HOST_USER = os.getenv("EMAIL_HOST_USER", "")
EMAIL_HOST_PASSWORD = os.getenv("EMAIL_HOST_PASSWORD", "")
EMAIL_USE_TLS = os.getenv("EMAIL_USE_TLS", "false").lower() == "true"
DEFAULT_FROM_EMAIL = os.getenv("DEFAULT_FROM_EMAIL", "no-reply@flowcrm.local")

# Celery
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", CELERY_BROKER_URL)
CELERY_TASK_SERIALIZER = "json"
CELERY_RESULT_SERIALIZER = "json"
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TASK_ACKS_LATE = True
CELERY_BEAT_SCHEDULE = {
    "automations-pending-events": {
        "task": "automations.tasks.process_pending_events_task",
        "schedule": 60,
    },
    "automations-pending-runs": {
        "task": "automations.tasks.process_pending_runs_task",
        "schedule": 60,
    },
    "automations-delayed-runs": {
        "task": "automations.tasks.resume_due_runs_task",
        "schedule": 60,
    },
    "automations-stale-runs": {
        "task": "automations.tasks.reclaim_stale_runs_task",
        "schedule": 300,
    },
}

# Automation engine
AUTOMATION_QUEUE_BACKEND = os.getenv("AUTOMATION_QUEUE_BACKEND", "celery")  # celery | http
AUTOMATION_QUEUE_PUBLISH_URL = os.getenv("AUTOMATION_QUEUE_PUBLISH_URL", "")  # e.g. https://qstash.upstash.io/v2/publish
AUTOMATION_QUEUE_TOKEN = os.getenv("AUTOMATION_QUEUE_TOKEN", "")
AUTOMATION_QUEUE_CALLBACK_URL = os.getenv("AUTOMATION_QUEUE_CALLBACK_URL", "")  # public URL of workers/step/
AUTOMATION_QUEUE_CURRENT_SIGNING_KEY = os.getenv("AUTOMATION_QUEUE_CURRENT_SIGNING_KEY", "")
AUTOMATION_QUEUE_NEXT_SIGNING_KEY = os.getenv("AUTOMATION_QUEUE_NEXT_SIGNING_KEY", "")
AUTOMATION_QUEUE_RETRIES = int(os.getenv("AUTOMATION_QUEUE_RETRIES", "3"))
AUTOMATION_HTTP_TIMEOUT = int(os.getenv("AUTOMATION_HTTP_TIMEOUT", "15"))
AUTOMATION_PENDING_RUN_DEBOUNCE_SECONDS = int(os.getenv("AUTOMATION_PENDING_RUN_DEBOUNCE_SECONDS", "5"))
AUTOMATION_EVENT_BATCH_SIZE = int(os.getenv("AUTOMATION_EVENT_BATCH_SIZE", "100"))
AUTOMATION_RUN_BATCH_SIZE = int(os.getenv("AUTOMATION_RUN_BATCH_SIZE", "10"))
AUTOMATION_DELAYED_BATCH_SIZE = int(os.getenv("AUTOMATION_DELAYED_BATCH_SIZE", "50"))
AUTOMATION_STALE_RUN_SECONDS = int(os.getenv("AUTOMATION_STALE_RUN_SECONDS", "900"))
AUTOMATION_STALE_RUN_BATCH_SIZE = int(os.getenv("AUTOMATION_STALE_RUN_BATCH_SIZE", "20"))
AUTOMATION_DEFAULT_CURRENCY = os.getenv("AUTOMATION_DEFAULT_CURRENCY", "BRL")
AUTOMATION_CHANNEL_SENDERS = {}  # {"whatsapp": "myproject.senders.send_whatsapp"}

CREDENTIAL_ENCRYPTION_KEY = os.getenv("CREDENTIAL_ENCRYPTION_KEY", "")
CRON_SECRET = os.getenv("CRON_SECRET", "")

CORS_ALLOW_ALL_ORIGINS = True           # dev convenience
CORS_ALLOW_CREDENTIALS = False
CORS_ALLOW_HEADERS = list(default_headers) + ["authorization", "content-type", "accept", "x-tenant-id",
                                              "upstash-signature"]
CORS_EXPOSE_HEADERS = ["Location", "X-Request-ID"]
CORS_ALLOW_METHODS = list(default_methods)
