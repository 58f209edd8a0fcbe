"""
Utilities package initialization.
"""
from .logger import bind_log_context, get_logger, log_business_event, log_performance, setup_logging

__all__ = ["bind_log_context", "get_logger", "log_business_event", "log_performance", "setup_logging"]
