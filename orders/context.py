"""Context variable carrying the current placement attempt id.

``OrderService`` sets the id for the duration of a ``place_order`` call so
log records and outgoing HTTP requests can be correlated without passing
the value explicitly.
"""

import contextvars
import uuid
from contextlib import contextmanager

ATTEMPT_ID_CTX = contextvars.ContextVar("attempt_id", default="-")


def new_attempt_id() -> str:
    return uuid.uuid4().hex


@contextmanager
def attempt_scope(attempt_id: str):
    """Bind ``attempt_id`` to ``ATTEMPT_ID_CTX`` inside the block."""
    token = ATTEMPT_ID_CTX.set(attempt_id)
    try:
        yield attempt_id
    finally:
        ATTEMPT_ID_CTX.reset(token)
