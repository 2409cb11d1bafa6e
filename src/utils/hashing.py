"""Cryptographic hashing for decision record integrity."""
import hashlib
import json
from datetime import datetime
from decimal import Decimal
from typing import Dict, Any, Iterable

# Fields that differ between two evaluations of identical inputs
WALL_CLOCK_FIELDS = ('decision_id', 'timestamp', 'duration_ms', 'record_hash')

def decimal_default(obj):
    """Convert Decimal and datetime values for JSON serialization."""
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")

def canonical_json(data: Dict[str, Any]) -> str:
    """Serialize a dict with sorted keys so equal content yields equal text."""
    return json.dumps(data, sort_keys=True, default=decimal_default)

def create_decision_hash(
    record: Dict[str, Any],
    exclude: Iterable[str] = WALL_CLOCK_FIELDS
) -> str:
    """
    Create SHA-256 hash of a decision record, ignoring wall-clock fields.
    """
    content = {k: v for k, v in record.items() if k not in exclude}

    hash_obj = hashlib.sha256(canonical_json(content).encode('utf-8'))
    return hash_obj.hexdigest()

def verify_decision_hash(record: Dict[str, Any], expected_hash: str) -> bool:
    """Check that a stored decision still matches its recorded hash."""
    return create_decision_hash(record) == expected_hash
