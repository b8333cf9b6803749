import logging.config
import os

from celery import Celery
from celery.signals import setup_logging
from django.conf import settings

# Set the default Django settings module for the 'celery' program.
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "flowcrm_backend.settings.dev")

app = Celery("flowcrm_backend")

# Using a string here means the worker doesn't have to serialize
# the configuration object to child processes.
app.config_from_object("django.conf:settings", namespace="CELERY")

# Engine tasks live in automations.tasks; the sweep schedule is CELERY_BEAT_SCHEDULE.
app.autodiscover_tasks(lambda: settings.INSTALLED_APPS)


@setup_logging.connect
def use_django_logging(**kwargs):
    # workers log through settings.LOGGING (request_id filter, automations logger)
    logging.config.dictConfig(settings.LOGGING)
