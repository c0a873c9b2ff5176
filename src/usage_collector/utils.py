"""
Utility functions for the usage collector.

Includes time helpers and record size estimation.
"""

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Union


def generate_id() -> str:
    """Generate a UUID hex string for batch identification."""
    return uuid.uuid4().hex


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def parse_datetime(dt: Union[str, datetime]) -> datetime:
    """Parse datetime from string or return datetime object. Naive values are UTC."""
    if isinstance(dt, str):
        dt = datetime.fromisoformat(dt.strip().replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_timestamp(dt: datetime) -> str:
    """ISO-8601 in UTC with a trailing Z."""
    return parse_datetime(dt).astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def estimate_size(record: Dict[str, Any]) -> int:
    """Rough JSON byte size of a wire record."""
    try:
        return len(json.dumps(record, separators=(",", ":")))
    except (TypeError, ValueError):
        return 256  # fallback fixed cost
