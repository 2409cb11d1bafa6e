"""
Typed errors raised by the decision engine.

Business rejections are never errors: they come back as REJECT decisions.
Only malformed input, bad configuration, unknown records and collaborator
failures propagate as exceptions.
"""
from typing import Any, Optional


class DecisionEngineError(Exception):
    """Base class for decision engine errors."""


class SchemaValidationError(DecisionEngineError):
    """
    Malformed or missing field on an input payload or persisted row.

    Carries enough context to tell a schema mismatch apart from a
    business rejection without exposing internals.
    """

    def __init__(
        self,
        message: str,
        entity_type: str,
        field: str,
        expected_type: str,
        actual_value: Any = None
    ):
        super().__init__(message)
        self.message = message
        self.entity_type = entity_type
        self.field = field
        self.expected_type = expected_type
        self.actual_value = actual_value

    def to_dict(self) -> dict:
        return {
            'error': 'SchemaValidationError',
            'message': self.message,
            'entity_type': self.entity_type,
            'field': self.field,
            'expected_type': self.expected_type,
            'actual_type': type(self.actual_value).__name__,
        }

    def __str__(self):
        return f"{self.entity_type}.{self.field}: {self.message}"


class ConfigError(DecisionEngineError):
    """Invalid configuration override."""

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


class DecisionNotFound(DecisionEngineError):
    """No decision record exists for the given id."""

    def __init__(self, decision_id: str):
        super().__init__(f"Decision not found: {decision_id}")
        self.decision_id = decision_id


class OutcomeAlreadyRecorded(DecisionEngineError):
    """A decision's outcome fields may only be set once."""

    def __init__(self, decision_id: str):
        super().__init__(f"Outcome already recorded for decision {decision_id}")
        self.decision_id = decision_id


class MarketDataError(DecisionEngineError):
    """Quote, chain or bar retrieval failed."""

    def __init__(self, message: str, ticker: Optional[str] = None):
        super().__init__(message)
        self.ticker = ticker
