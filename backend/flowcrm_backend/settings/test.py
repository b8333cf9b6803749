from .base import *

DEBUG = False
SECRET_KEY = "test-secret"
ALLOWED_HOSTS = ["*"]

DATABASES = {"default": {"ENGINE": "django.db.backends.sqlite3", "NAME": ":memory:"}}
PASSWORD_HASHERS = ["django.contrib.auth.hashers.MD5PasswordHasher"]
STORAGES = {
    "default": {"BACKEND": "django.core.files.storage.FileSystemStorage"},
    "staticfiles": {"BACKEND": "django.contrib.staticfiles.storage.StaticFilesStorage"},
}

REST_FRAMEWORK = {
    **REST_FRAMEWORK,
    "DEFAULT_RENDERER_CLASSES": ["rest_framework.renderers.JSONRenderer"],
    "DEFAULT_THROTTLE_CLASSES": [],
}

EMAIL_BACKEND = "django.core.mail.backends.locmem.EmailBackend"

CELERY_TASK_ALWAYS_EAGER = True
CELERY_TASK_EAGER_PROPAGATES = True
CELERY_BROKER_URL = "memory://"
CELERY_RESULT_BACKEND = "cache+memory://"

AUTOMATION_QUEUE_BACKEND = "celery"
AUTOMATION_QUEUE_CURRENT_SIGNING_KEY = "test-current-queue-signing-key-0001"
AUTOMATION_QUEUE_NEXT_SIGNING_KEY = "test-next-queue-signing-key-0002"
AUTOMATION_PENDING_RUN_DEBOUNCE_SECONDS = 0
CREDENTIAL_ENCRYPTION_KEY = "test-credential-encryption-key-0123456789abcdef"
CRON_SECRET = "test-cron-secret"
