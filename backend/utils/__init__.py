from .logger import setup_logging, get_logger, cost_basis_logger, price_logger, cache_logger, queue_logger
from .utcnow import utcnow, epoch_ms, hour_floor, datetime_to_epoch_ms, utcfromtimestamp_ms

__all__ = [
    # Logger
    "setup_logging",
    "get_logger",
    "cost_basis_logger",
    "price_logger",
    "cache_logger",
    "queue_logger",

    # Time
    "utcnow",
    "epoch_ms",
    "hour_floor",
    "datetime_to_epoch_ms",
    "utcfromtimestamp_ms",
]
