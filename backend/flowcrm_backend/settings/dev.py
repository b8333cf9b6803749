# backend/flowcrm_backend/settings/dev.py
from .base import *

DEBUG = True

ALLOWED_HOSTS = ["*", "localhost", "127.0.0.1"]

DATABASES = {
    "default": {"ENGINE": "django.db.backends.sqlite3", "NAME": str(BASE_DIR / "db.sqlite3")}
}

EMAIL_BACKEND = "django.core.mail.backends.console.EmailBackend"

# local-only fallbacks so the engine works out of the box
CREDENTIAL_ENCRYPTION_KEY = CREDENTIAL_ENCRYPTION_KEY or "dev-only-credential-key-change-me-0123456789"
AUTOMATION_QUEUE_CURRENT_SIGNING_KEY = AUTOMATION_QUEUE_CURRENT_SIGNING_KEY or "dev-signing-key"
