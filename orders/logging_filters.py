"""Logging filters for enriching log records with placement context.

This module provides a logging filter that injects the current placement
attempt id into log records using the ContextVar set by ``OrderService``.
Adding the filter to a handler enables per-attempt correlation in logs
without modifying individual log statements.
"""

from logging import Filter, LogRecord

from .context import ATTEMPT_ID_CTX


class AttemptIdFilter(Filter):
    """Attach an ``attempt_id`` attribute to log records.

    If no attempt is in progress a hyphen ("-") is used as a placeholder so
    formatters can reliably reference ``%(attempt_id)s``.
    """

    def filter(self, record: LogRecord) -> bool:
        """Populate ``record.attempt_id`` and allow the record to be logged.

        Args:
            record: The log record to enrich.

        Returns:
            bool: Always True to indicate the record should be processed.
        """
        if not getattr(record, "attempt_id", None):
            record.attempt_id = ATTEMPT_ID_CTX.get()
        return True
