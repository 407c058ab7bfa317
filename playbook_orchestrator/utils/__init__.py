from .clock import Clock, utcnow
from .retry import compute_backoff, ladder_delay

__all__ = ["Clock", "utcnow", "compute_backoff", "ladder_delay"]
