"""Logging filter that stamps records with the current request id."""

from logging import Filter, LogRecord

from .middleware import REQUEST_ID_CTX


class RequestIdFilter(Filter):
    """Attach ``request_id`` to every record ("-" outside a request).

    Used by the JSON formatter in ``config.settings.LOGGING`` so each line
    can be correlated with the ``X-Request-ID`` of the call that caused it.
    """

    def filter(self, record: LogRecord) -> bool:
        record.request_id = REQUEST_ID_CTX.get()
        return True
