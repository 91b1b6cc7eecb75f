"""
Ingestion exception hierarchy
"""

from typing import Optional


class IngestError(Exception):

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class TransientSourceError(IngestError):
    """Chain source call failed after the configured retry budget"""

    def __init__(self, message: str, attempts: int = 0):
        self.attempts = attempts
        super().__init__(message)


class PersistenceError(IngestError):
    """Batch write to storage failed; rows are not guaranteed persisted"""

    def __init__(self, message: str, rows: int = 0, path: Optional[str] = None):
        self.rows = rows
        self.path = path
        super().__init__(message)


class ConfigurationError(IngestError):
    pass


class MissingEndpointError(ConfigurationError):

    def __init__(self, chain: str):
        self.chain = chain
        super().__init__(f"No RPC endpoint configured for chain '{chain}'")
