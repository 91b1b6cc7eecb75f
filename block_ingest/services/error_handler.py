"""
Error handling policy for block ingestion.

This service centralizes how RPC and persistence failures are logged and how
retry delays are computed for transient chain source errors.
"""

from typing import Any, Dict, Optional

import structlog

from block_ingest.utils.exceptions import PersistenceError


class ErrorHandler:
    """Handle ingestion errors and retry timing"""

    def __init__(self, base_delay: float = 1.0, max_delay: float = 30.0, max_retries: Optional[int] = None):
        """
        Initialize the error handler.

        Args:
            base_delay: Delay before the first retry, in seconds
            max_delay: Upper bound for any single retry delay
            max_retries: Retry ceiling; None retries indefinitely
        """
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_retries = max_retries
        self.logger = structlog.get_logger()

    def handle_rpc_error(self, error: Exception, context: Dict[str, Any]) -> bool:
        """
        Handle chain RPC errors.

        Returns:
            True if the call should be retried
        """
        attempt = context.get("attempt", 1)
        retry = self.should_retry(attempt)
        if retry:
            self.logger.warning("RPC error occurred", error=str(error), **context)
        else:
            self.logger.error("RPC call failed after all retries", error=str(error), **context)
        return retry

    def handle_persistence_error(self, error: Exception, context: Dict[str, Any]) -> None:
        """
        Log a failed batch write. Persistence errors are never retried here;
        the caller decides whether to stop.
        """
        context = dict(context)
        rows = context.pop("rows", None)
        if isinstance(error, PersistenceError):
            rows = error.rows
        self.logger.error(
            "Persistence error occurred",
            error=str(error),
            rows=rows,
            note="Rows in this batch are not guaranteed persisted",
            **context,
        )

    def should_retry(self, attempt: int) -> bool:
        """
        Determine if an operation should be retried.

        Args:
            attempt: Number of attempts made so far (1-based)
        """
        if self.max_retries is None:
            return True
        return attempt <= self.max_retries

    def get_retry_delay(self, attempt: int) -> float:
        """
        Calculate the retry delay with capped exponential backoff.

        Args:
            attempt: Number of attempts made so far (1-based)

        Returns:
            The delay in seconds
        """
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        self.logger.debug("Retrying operation", attempt=attempt, delay=delay)
        return delay
