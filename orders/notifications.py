"""Fire-and-forget dispatch of order notifications.

``NotificationDispatcher`` hands each notification to a worker thread and
returns immediately. Notifier failures are logged and never reach the
caller; a confirmed order stays confirmed whatever happens here.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor

from .domain import NotifierPort, Order

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Run ``notifier.notify`` on a small thread pool.

    Args:
        notifier: Any ``NotifierPort`` implementation.
        max_workers: Size of the worker pool.
    """

    def __init__(self, notifier: NotifierPort, max_workers: int = 4):
        self.notifier = notifier
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")

    def dispatch(self, customer_id: str, order: Order) -> Future | None:
        """Schedule a notification; never raises.

        Returns:
            The scheduled future, or None if the dispatcher is shut down.
        """
        try:
            fut = self._executor.submit(self.notifier.notify, customer_id, order)
        except RuntimeError:
            logger.warning("notification for order %s dropped: dispatcher closed", order.id)
            return None
        fut.add_done_callback(lambda f: self._log_failure(f, order))
        return fut

    @staticmethod
    def _log_failure(fut: Future, order: Order) -> None:
        exc = fut.exception()
        if exc is not None:
            logger.error(
                "notification for order %s failed: %r", order.id, exc,
                extra={"order_id": order.id},
            )

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work; with ``wait`` drain pending notifications."""
        self._executor.shutdown(wait=wait)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.shutdown()
