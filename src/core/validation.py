"""
Boundary validation for payloads and persisted rows.

Every failure surfaces as SchemaValidationError naming the entity, the
offending field, the expected type and the value actually received.
Nullable columns are converted explicitly: null JSON becomes an empty
dict/list, null counters become 0, null optional numerics stay None.
"""
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from src.core.credibility import SourceStats
from src.core.errors import SchemaValidationError
from src.core.schemas import (
    EntryInput,
    ExitInput,
    HoldInput,
    KellyStats,
    PositionSnapshot,
)
from src.utils.clock import as_utc

M = TypeVar('M', bound=BaseModel)

# pydantic error type prefix -> readable expected type
_EXPECTED_TYPES = {
    'missing': 'required value',
    'string': 'str',
    'int': 'int',
    'float': 'float',
    'bool': 'bool',
    'date': 'date',
    'datetime': 'datetime',
    'literal': 'one of allowed values',
    'dict': 'object',
    'list': 'array',
    'greater_than': 'number in range',
    'less_than': 'number in range',
    'model': 'object',
}


def _expected_type(error_type: str) -> str:
    for prefix, name in _EXPECTED_TYPES.items():
        if error_type.startswith(prefix):
            return name
    return error_type


def _lookup(data: Any, loc) -> Any:
    current = data
    for part in loc:
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, (list, tuple)) and isinstance(part, int) and part < len(current):
            current = current[part]
        else:
            return None
    return current


def translate_validation_error(
    error: ValidationError,
    entity_type: str,
    data: Any
) -> SchemaValidationError:
    """Convert the first pydantic error into a SchemaValidationError."""
    first = error.errors()[0]
    field = '.'.join(str(p) for p in first['loc']) or '<root>'
    return SchemaValidationError(
        message=first['msg'],
        entity_type=entity_type,
        field=field,
        expected_type=_expected_type(first['type']),
        actual_value=_lookup(data, first['loc']),
    )


def validate_model(model: Type[M], data: Any, entity_type: Optional[str] = None) -> M:
    """Validate raw data into a model or raise SchemaValidationError."""
    entity_type = entity_type or model.__name__
    if isinstance(data, model):
        return data
    if not isinstance(data, Mapping):
        raise SchemaValidationError(
            message="Payload must be an object",
            entity_type=entity_type,
            field='<root>',
            expected_type='object',
            actual_value=data,
        )
    try:
        return model.model_validate(dict(data))
    except ValidationError as e:
        raise translate_validation_error(e, entity_type, data) from e


def validate_entry_input(data: Any) -> EntryInput:
    return validate_model(EntryInput, data, 'EntryInput')


def validate_hold_input(data: Any) -> HoldInput:
    return validate_model(HoldInput, data, 'HoldInput')


def validate_exit_input(data: Any) -> ExitInput:
    return validate_model(ExitInput, data, 'ExitInput')


# ========== ROW CONVERSION ==========

def json_object(value: Any) -> Dict:
    """Null JSON object column -> {}."""
    return dict(value) if isinstance(value, Mapping) else {}


def json_array(value: Any) -> List:
    """Null JSON array column -> []."""
    return list(value) if isinstance(value, (list, tuple)) else []


def optional_float(value: Any) -> Optional[float]:
    """Null numeric -> None, Decimal/int -> float."""
    return None if value is None else float(value)


def counter(value: Any) -> int:
    """Null counter -> 0."""
    return 0 if value is None else int(value)


def _require(row: Any, entity_type: str, field: str, expected: str) -> Any:
    value = getattr(row, field, None)
    if value is None:
        raise SchemaValidationError(
            message=f"{field} is required",
            entity_type=entity_type,
            field=field,
            expected_type=expected,
            actual_value=None,
        )
    return value


def position_from_row(row: Any, current_price: float, now: datetime) -> PositionSnapshot:
    """
    Build a PositionSnapshot from a positions row and a fresh quote.

    Derives hours in trade, P&L, P&L percent and DTE.
    """
    entity = 'Position'
    entry_price = float(_require(row, entity, 'entry_price', 'float'))
    quantity = int(_require(row, entity, 'quantity', 'int'))
    option_type = _require(row, entity, 'option_type', 'CALL|PUT')
    expiration = _require(row, entity, 'expiration', 'date')
    opened_at = _require(row, entity, 'opened_at', 'datetime')

    if entry_price <= 0:
        raise SchemaValidationError(
            message="entry_price must be positive",
            entity_type=entity,
            field='entry_price',
            expected_type='float > 0',
            actual_value=row.entry_price,
        )

    if isinstance(expiration, datetime):
        expiration = expiration.date()
    if not isinstance(expiration, date):
        raise SchemaValidationError(
            message="expiration must be a date",
            entity_type=entity,
            field='expiration',
            expected_type='date',
            actual_value=expiration,
        )

    partials = counter(row.partial_exits_taken)
    highest = optional_float(row.highest_price_since_entry)
    highest = max(highest or entry_price, current_price)

    # Contracts already closed by partial exits are booked in realized_pnl
    pnl = (current_price - entry_price) * max(0, quantity - partials) * 100
    pnl_pct = (current_price - entry_price) / entry_price * 100
    hours = max(0.0, (as_utc(now) - as_utc(opened_at)).total_seconds() / 3600)
    dte = (expiration - as_utc(now).date()).days

    data = {
        'id': str(_require(row, entity, 'position_id', 'str')),
        'ticker': _require(row, entity, 'ticker', 'str'),
        'symbol': row.symbol,
        'option_type': option_type,
        'entry_price': entry_price,
        'current_price': current_price,
        'quantity': quantity,
        'partial_exits_taken': partials,
        'highest_price_since_entry': highest,
        'dte': dte,
        'hours_in_trade': round(hours, 2),
        'unrealized_pnl': round(pnl, 2),
        'unrealized_pnl_pct': round(pnl_pct, 2),
        'entry_market_regime': row.entry_market_regime,
        'entry_dealer_position': row.entry_dealer_position,
        'planned_stop_loss': optional_float(row.planned_stop_loss),
        'planned_target1': optional_float(row.planned_target1),
        'planned_target2': optional_float(row.planned_target2),
        'trailing_stop_pct': optional_float(row.trailing_stop_pct),
    }
    return validate_model(PositionSnapshot, data, entity)


def kelly_stats_from_row(row: Any) -> KellyStats:
    """Regime performance row (possibly missing) -> KellyStats."""
    if row is None:
        return KellyStats()
    total = counter(row.total_trades)
    wins = counter(row.winning_trades)
    return KellyStats(
        win_rate=(wins / total) if total else 0.0,
        avg_win=abs(optional_float(row.avg_win) or 0.0),
        avg_loss=abs(optional_float(row.avg_loss) or 0.0),
        total_trades=total,
    )


def source_stats_from_row(row: Any) -> SourceStats:
    """Source credibility row -> SourceStats with null counters as 0."""
    return SourceStats(
        source=row.source,
        total_signals=counter(row.total_signals),
        correct_signals=counter(row.correct_signals),
        recent_total=counter(row.recent_total),
        recent_correct=optional_float(row.recent_correct) or 0.0,
    )


def decision_from_row(row: Any) -> Dict:
    """Decision log row -> plain dict with every nullable field made explicit."""
    return {
        'decision_id': row.decision_id,
        'schema_version': counter(row.schema_version) or 1,
        'decision_type': row.decision_type,
        'ticker': row.ticker,
        'action': row.action,
        'action_reason': row.action_reason or '',
        'confidence': optional_float(row.confidence),
        'quantity': optional_float(row.quantity),
        'price': optional_float(row.price),
        'context_snapshot': json_object(row.context_snapshot),
        'rules_triggered': json_array(row.rules_triggered),
        'record_hash': row.record_hash,
        'record': json_object(row.record),
        'decided_at': row.decided_at.isoformat() if row.decided_at else None,
        'duration_ms': optional_float(row.duration_ms),
        'outcome_pnl': optional_float(row.outcome_pnl),
        'outcome_correct': row.outcome_correct,
        'outcome_at': row.outcome_at.isoformat() if row.outcome_at else None,
    }
