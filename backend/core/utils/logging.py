"""
Structured logging utility for the order pipeline
"""
import logging
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional


SERVICE_NAME = "order-pipeline"


class StructuredLogger:
    """
    Structured logger that outputs JSON formatted logs
    """

    def __init__(self, name: str = "order_pipeline"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        # Create console handler if not exists
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setLevel(logging.INFO)

            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)

            self.logger.addHandler(handler)

        # Emitted once, by the handler above, not again by root.
        self.logger.propagate = False

    def _create_log_entry(
        self,
        level: str,
        message: str,
        order_id: Optional[str] = None,
        job: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        exception: Optional[Exception] = None
    ) -> Dict[str, Any]:
        """
        Create a structured log entry
        """
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level.upper(),
            "message": message,
            "service": SERVICE_NAME,
        }

        if order_id:
            log_entry["order_id"] = str(order_id)

        if job:
            log_entry["job"] = job

        if metadata:
            log_entry["metadata"] = metadata

        if exception:
            log_entry["exception"] = {
                "type": type(exception).__name__,
                "message": str(exception),
            }

        return log_entry

    def info(
        self,
        message: str,
        order_id: Optional[str] = None,
        job: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ):
        """Log info message"""
        log_entry = self._create_log_entry("info", message, order_id, job, metadata)
        self.logger.info(json.dumps(log_entry, default=str))

    def warning(
        self,
        message: str,
        order_id: Optional[str] = None,
        job: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        exception: Optional[Exception] = None
    ):
        """Log warning message"""
        log_entry = self._create_log_entry(
            "warning", message, order_id, job, metadata, exception
        )
        self.logger.warning(json.dumps(log_entry, default=str))

    def error(
        self,
        message: str,
        order_id: Optional[str] = None,
        job: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        exception: Optional[Exception] = None
    ):
        """Log error message"""
        log_entry = self._create_log_entry(
            "error", message, order_id, job, metadata, exception
        )
        self.logger.error(json.dumps(log_entry, default=str))


def setup_logging(level: str = "INFO"):
    """Configure root logging for the API process and the ARQ worker."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


# Create global logger instance
structured_logger = StructuredLogger()
