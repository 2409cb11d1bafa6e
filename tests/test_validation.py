from datetime import date, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from src.core.errors import SchemaValidationError
from src.core.validation import (
    decision_from_row, kelly_stats_from_row, position_from_row,
    validate_entry_input, validate_exit_input,
)


def _position_row(**overrides):
    values = dict(
        position_id='pos-7',
        ticker='SPY',
        symbol='O:SPY260312C00450000',
        option_type='CALL',
        expiration=date(2026, 3, 12),
        opened_at=None,
        entry_price=2.0,
        quantity=10,
        partial_exits_taken=None,
        highest_price_since_entry=None,
        entry_market_regime=None,
        entry_dealer_position=None,
        planned_stop_loss=None,
        planned_target1=None,
        planned_target2=None,
        trailing_stop_pct=None,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


class TestEntryValidation:
    def test_valid_payload(self, entry_payload):
        entry = validate_entry_input(entry_payload())
        assert entry.signal.ticker == 'SPY'
        assert entry.gex.dealer_position == 'LONG_GAMMA'

    def test_missing_field_names_field(self, entry_payload):
        payload = entry_payload()
        del payload['portfolio_value']
        with pytest.raises(SchemaValidationError) as exc:
            validate_entry_input(payload)
        assert exc.value.entity_type == 'EntryInput'
        assert exc.value.field == 'portfolio_value'
        assert exc.value.expected_type == 'required value'

    def test_out_of_range_carries_actual_value(self, entry_payload):
        with pytest.raises(SchemaValidationError) as exc:
            validate_entry_input(entry_payload(option_price=-1))
        assert exc.value.field == 'option_price'
        assert exc.value.actual_value == -1
        assert exc.value.to_dict()['actual_type'] == 'int'

    def test_nested_field_path(self, entry_payload):
        payload = entry_payload()
        payload['signal']['action'] = 'HODL'
        with pytest.raises(SchemaValidationError) as exc:
            validate_entry_input(payload)
        assert exc.value.field == 'signal.action'
        assert exc.value.actual_value == 'HODL'

    def test_ticker_longer_than_column(self, entry_payload):
        payload = entry_payload()
        payload['signal']['ticker'] = 'TOOLONGTICKER'
        with pytest.raises(SchemaValidationError) as exc:
            validate_entry_input(payload)
        assert exc.value.field == 'signal.ticker'

    def test_non_object_payload(self):
        with pytest.raises(SchemaValidationError) as exc:
            validate_entry_input(['not', 'a', 'dict'])
        assert exc.value.field == '<root>'

    def test_exit_input_defaults_atr_percentile(self, position_payload):
        exit_input = validate_exit_input({'position': position_payload()})
        assert exit_input.atr is None
        assert exit_input.atr_percentile == 50


class TestPositionFromRow:
    def test_null_columns_are_explicit(self, now):
        row = _position_row(opened_at=now - timedelta(hours=5))
        snapshot = position_from_row(row, 2.5, now)

        assert snapshot.partial_exits_taken == 0
        assert snapshot.highest_price_since_entry == 2.5
        assert snapshot.planned_stop_loss is None
        assert snapshot.hours_in_trade == 5.0
        assert snapshot.dte == 10
        assert snapshot.unrealized_pnl == 500.0
        assert snapshot.unrealized_pnl_pct == 25.0

    def test_naive_timestamp_treated_as_utc(self, now):
        row = _position_row(opened_at=(now - timedelta(hours=2)).replace(tzinfo=None))
        assert position_from_row(row, 2.0, now).hours_in_trade == 2.0

    def test_missing_required_column(self, now):
        row = _position_row(opened_at=now, entry_price=None)
        with pytest.raises(SchemaValidationError) as exc:
            position_from_row(row, 2.0, now)
        assert exc.value.entity_type == 'Position'
        assert exc.value.field == 'entry_price'

    @pytest.mark.parametrize('entry_price', [0, Decimal('0'), -1.5])
    def test_non_positive_entry_price(self, now, entry_price):
        row = _position_row(opened_at=now, entry_price=entry_price)
        with pytest.raises(SchemaValidationError) as exc:
            position_from_row(row, 1.0, now)
        assert exc.value.entity_type == 'Position'
        assert exc.value.field == 'entry_price'
        assert exc.value.actual_value == entry_price

    def test_pnl_counts_only_open_contracts(self, now):
        row = _position_row(opened_at=now, partial_exits_taken=4)
        snapshot = position_from_row(row, 2.5, now)
        assert snapshot.unrealized_pnl == 300.0
        assert snapshot.unrealized_pnl_pct == 25.0


class TestRowConversions:
    def test_decision_row_nulls(self):
        row = SimpleNamespace(
            decision_id='d-1', schema_version=None, decision_type='ENTRY', ticker='SPY',
            action='REJECT', action_reason=None, confidence=None, quantity=None, price=None,
            context_snapshot=None, rules_triggered=None, record_hash='x', record=None,
            decided_at=None, duration_ms=None, outcome_pnl=None, outcome_correct=None,
            outcome_at=None,
        )
        data = decision_from_row(row)
        assert data['schema_version'] == 1
        assert data['context_snapshot'] == {}
        assert data['rules_triggered'] == []
        assert data['record'] == {}
        assert data['action_reason'] == ''
        assert data['outcome_pnl'] is None

    def test_kelly_stats_missing_row(self):
        stats = kelly_stats_from_row(None)
        assert stats.total_trades == 0
        assert stats.win_rate == 0

    def test_kelly_stats_from_counts(self):
        row = SimpleNamespace(total_trades=20, winning_trades=12, avg_win=150, avg_loss=-90)
        stats = kelly_stats_from_row(row)
        assert stats.win_rate == 0.6
        assert stats.avg_loss == 90.0
