import logging

from .middleware import get_request_id


class RequestIDFilter(logging.Filter):
    """Stamps `record.request_id` so formatters can use %(request_id)s."""

    def filter(self, record):
        if not hasattr(record, "request_id"):
            record.request_id = get_request_id()
        return True
