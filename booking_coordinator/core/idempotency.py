"""Deterministic idempotency keys for directives and synthetic events."""

import hashlib
import json
from typing import Any
from uuid import UUID


def generate_idempotency_key(
    operation: str,
    entity_id: UUID | str,
    params: dict[str, Any] | None = None,
) -> str:
    """Generate a deterministic idempotency key.

    Args:
        operation: Operation name (e.g., "CreatePaymentSession")
        entity_id: Primary entity ID
        params: Additional parameters to include in key

    Returns:
        SHA256 hash of operation + entity + params
    """
    key_data = {
        "operation": operation,
        "entity_id": str(entity_id),
        "params": params or {},
    }
    key_str = json.dumps(key_data, sort_keys=True)
    return hashlib.sha256(key_str.encode()).hexdigest()


def synthetic_event_key(booking_id: UUID | str, event_type: str, history_length: int) -> str:
    """Key for an event synthesized by the recovery job.

    Two sweeps observing the same booking at the same point of its history
    produce the same key, so the second one is a duplicate.
    """
    return f"recovery:{booking_id}:{event_type}:{history_length}"


def api_event_key(action: str, booking_id: UUID | str, history_length: int | None = None) -> str:
    """Key for an event emitted by an API action."""
    if history_length is None:
        return f"api:{action}:{booking_id}"
    return f"api:{action}:{booking_id}:{history_length}"
