"""
Structured logging for credverify.

JSON logs with timestamp, event_type and signature/address context.
Use get_logger() in every module for aggregation-friendly output.
"""

from credverify.cv_logging.logger import configure_logging, get_logger, short_id

__all__ = ["configure_logging", "get_logger", "short_id"]
