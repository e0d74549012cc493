"""
Error types shared by the decoder, the stores and the processor.
"""
from typing import Optional


class DecodeError(ValueError):
    """Payload cannot become a TelemetryEvent. Never retried."""

    def __init__(self, field: Optional[str], reason: str):
        self.field = field
        self.reason = reason
        if field:
            super().__init__(f"{field}: {reason}")
        else:
            super().__init__(reason)


class TransientStoreError(Exception):
    """Durable store failed in a way that may succeed on retry (connection, lock timeout, serialization)."""

    def __init__(self, reason: str, message: str = ""):
        self.reason = reason
        super().__init__(message or reason)
