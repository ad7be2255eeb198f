"""Logging filters that stamp records with the current request id.

Checkout and reconciliation code logs through plain ``logging`` loggers; the
filter below adds ``request_id`` so the JSON formatter configured in
``config.settings.base.LOGGING`` can correlate a webhook delivery, the gateway
re-fetch it triggers and the resulting status transition.
"""

from logging import Filter, LogRecord

from .middleware import REQUEST_ID_CTX


class RequestIdFilter(Filter):
    """Attach ``record.request_id`` from ``REQUEST_ID_CTX``.

    Records emitted outside a request (management commands, startup) get
    ``"-"`` so formatters can always reference ``%(request_id)s``.
    """

    def filter(self, record: LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = REQUEST_ID_CTX.get()
        return True
