from typing import Optional
from uuid import uuid4

CORRELATION_HEADER = "X-Correlation-ID"

def ensure_correlation_id(value: Optional[str] = None) -> str:
    """Returns the given id trimmed, or a fresh one when it is missing or blank."""
    if value:
        value = value.strip()
        if value:
            return value[:128]
    return str(uuid4())
