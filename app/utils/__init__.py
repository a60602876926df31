"""
Utilities package initialization.
"""
from .logger import get_logger, log_business_event, log_performance, setup_logging
from .redaction import redact_sensitive

__all__ = ["get_logger", "log_business_event", "log_performance", "setup_logging", "redact_sensitive"]
