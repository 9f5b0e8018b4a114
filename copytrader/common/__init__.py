from .async_utils import compute_backoff_seconds, guarded_call, wait_with_stop
from .logging import log_event

__all__ = [
    "compute_backoff_seconds",
    "guarded_call",
    "log_event",
    "wait_with_stop",
]
