from datetime import date

import pytest

from src.core.decision_service import DecisionService
from src.models.decisions import DecisionLog
from src.models.positions import Position
from src.scheduler.tasks import group_positions, run_position_monitor


def _position(db, position_id):
    db.expire_all()
    return db.query(Position).filter(Position.position_id == position_id).one()


class TestRunPositionMonitor:
    def test_no_open_positions(self, db, fake_market_data, now):
        summary = run_position_monitor(db, fake_market_data(), now=now)
        assert summary['checked'] == 0
        assert summary['errors'] == 0
        assert 'duration_ms' in summary

    def test_failures_are_isolated(self, db, position_row, fake_market_data, now):
        spy_quote_fails = position_row('p2')
        spy_holds = position_row('p3')
        spy_stopped = position_row('p4')
        db.add_all([position_row('p1', ticker='QQQ'), spy_quote_fails, spy_holds, spy_stopped])
        db.commit()

        provider = fake_market_data(
            quotes={spy_holds.symbol: 2.1, spy_stopped.symbol: 1.2},
            failing_chains={'QQQ'},
            failing_quotes={spy_quote_fails.symbol},
        )
        summary = run_position_monitor(db, provider, now=now)

        # QQQ chain failure counts its whole group; one bad quote does not stop SPY siblings
        assert summary['errors'] == 2
        assert summary['checked'] == 3
        assert summary['updated'] == 2
        assert summary['exited'] == 1
        assert summary['partial_exited'] == 0
        assert [d['trigger'] for d in summary['details']] == ['STOP_LOSS']

        stopped = _position(db, 'p4')
        assert stopped.status == 'CLOSED'
        assert float(stopped.exit_price) == 1.2
        assert float(stopped.realized_pnl) == -800.0

        held = _position(db, 'p3')
        assert held.status == 'OPEN'
        assert float(held.last_price) == 2.1
        assert float(held.highest_price_since_entry) == 2.1

        assert _position(db, 'p1').last_evaluated_at is None

    def test_chain_fetched_once_per_group(self, db, position_row, fake_market_data, now):
        db.add_all([position_row('a'), position_row('b'), position_row('c', expiration=date(2026, 3, 20))])
        db.commit()

        provider = fake_market_data()
        summary = run_position_monitor(db, provider, now=now)
        assert summary['checked'] == 3
        assert provider.chain_calls == [('SPY', date(2026, 3, 12)), ('SPY', date(2026, 3, 20))]

    def test_target1_takes_partial(self, db, position_row, fake_market_data, now):
        row = position_row('p1')
        db.add(row)
        db.commit()

        summary = run_position_monitor(db, fake_market_data(quotes={row.symbol: 2.7}), now=now)

        assert summary['partial_exited'] == 1
        position = _position(db, 'p1')
        assert position.status == 'OPEN'
        assert position.partial_exits_taken == 3
        assert float(position.planned_stop_loss) == 2.0

    def test_partial_then_close_books_each_exit(self, db, position_row, fake_market_data, entry_payload, now):
        entry = DecisionService(db).evaluate_entry(entry_payload(), now)
        row = position_row('p1', entry_decision_id=entry.decision_id)
        db.add(row)
        db.commit()

        run_position_monitor(db, fake_market_data(quotes={row.symbol: 2.7}), now=now)
        position = _position(db, 'p1')
        assert position.partial_exits_taken == 3
        assert float(position.realized_pnl) == 210.0

        # 7 remaining contracts stopped out at the breakeven stop
        summary = run_position_monitor(db, fake_market_data(quotes={row.symbol: 1.9}), now=now)
        assert summary['exited'] == 1
        assert summary['details'][0]['quantity'] == 7

        position = _position(db, 'p1')
        assert position.status == 'CLOSED'
        assert position.partial_exits_taken == 10
        assert float(position.realized_pnl) == 140.0

        logged = db.query(DecisionLog).filter(DecisionLog.decision_id == entry.decision_id).one()
        assert float(logged.outcome_pnl) == 140.0
        assert logged.outcome_correct is True

    def test_dry_run_applies_nothing(self, db, position_row, fake_market_data, now):
        row = position_row('p1')
        db.add(row)
        db.commit()

        summary = run_position_monitor(
            db, fake_market_data(quotes={row.symbol: 1.2}), now=now, config_overrides={'dryRun': True},
        )

        assert [d['trigger'] for d in summary['details']] == ['STOP_LOSS']
        position = _position(db, 'p1')
        assert position.status == 'OPEN'
        assert position.realized_pnl is None
        assert position.partial_exits_taken == 0

    def test_profit_tightens_stop(self, db, position_row, fake_market_data, now):
        row = position_row('p1')
        db.add(row)
        db.commit()

        summary = run_position_monitor(db, fake_market_data(quotes={row.symbol: 2.55}), now=now)

        assert summary['updated'] == 1
        assert summary['details'] == []
        position = _position(db, 'p1')
        assert float(position.planned_stop_loss) == 2.0
        assert float(position.highest_price_since_entry) == 2.55

    def test_missing_atr_falls_back(self, db, position_row, fake_market_data, now):
        db.add(position_row('p1'))
        db.commit()

        summary = run_position_monitor(db, fake_market_data(atr=None), now=now)
        assert summary['errors'] == 0
        assert summary['updated'] == 1

    def test_closing_records_entry_outcome(self, db, position_row, fake_market_data, entry_payload, now):
        entry = DecisionService(db).evaluate_entry(entry_payload(), now)
        row = position_row('p1', entry_decision_id=entry.decision_id)
        db.add(row)
        db.commit()

        run_position_monitor(db, fake_market_data(quotes={row.symbol: 1.2}), now=now)

        db.expire_all()
        logged = db.query(DecisionLog).filter(DecisionLog.decision_id == entry.decision_id).one()
        assert logged.outcome_correct is False
        assert float(logged.outcome_pnl) == -800.0


class TestGroupPositions:
    def test_groups_by_ticker_and_expiration(self, position_row):
        rows = [
            position_row('a'),
            position_row('b', ticker='QQQ'),
            position_row('c'),
            position_row('d', expiration=date(2026, 4, 17)),
        ]
        groups = group_positions(rows)
        assert list(groups) == [
            ('SPY', date(2026, 3, 12)), ('QQQ', date(2026, 3, 12)), ('SPY', date(2026, 4, 17)),
        ]
        assert [p.position_id for p in groups[('SPY', date(2026, 3, 12))]] == ['a', 'c']
