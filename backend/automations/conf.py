from django.conf import settings

DEFAULTS = {
    "AUTOMATION_QUEUE_BACKEND": "celery",          # celery | http
    "AUTOMATION_QUEUE_PUBLISH_URL": "",
    "AUTOMATION_QUEUE_TOKEN": "",
    "AUTOMATION_QUEUE_CALLBACK_URL": "",
    "AUTOMATION_QUEUE_CURRENT_SIGNING_KEY": "",
    "AUTOMATION_QUEUE_NEXT_SIGNING_KEY": "",
    "AUTOMATION_QUEUE_RETRIES": 3,
    "AUTOMATION_HTTP_TIMEOUT": 15,
    "AUTOMATION_PENDING_RUN_DEBOUNCE_SECONDS": 5,
    "AUTOMATION_EVENT_BATCH_SIZE": 100,
    "AUTOMATION_RUN_BATCH_SIZE": 10,
    "AUTOMATION_DELAYED_BATCH_SIZE": 50,
    "AUTOMATION_STALE_RUN_SECONDS": 900,            # a `running` row untouched this long lost its worker
    "AUTOMATION_STALE_RUN_BATCH_SIZE": 20,
    "AUTOMATION_DEFAULT_CURRENCY": "BRL",
    "AUTOMATION_CHANNEL_SENDERS": {},
}


def get(name):
    return getattr(settings, name, DEFAULTS[name])
