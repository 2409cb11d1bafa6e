"""
Celery background tasks.
"""
import time
from collections import OrderedDict
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from celery import Task

from src.core.decision_service import DecisionService
from src.core.errors import DecisionEngineError
from src.core.validation import position_from_row
from src.data.market_data import MarketDataProvider, get_market_data_provider
from src.data.transformers import GexTransformer
from src.models.base import SessionLocal
from src.models.positions import Position
from src.scheduler.celery_app import app
from src.utils import metrics
from src.utils.clock import as_utc, utc_now
from src.utils.constants import (
    EXIT_ACTION_CLOSE_FULL, EXIT_ACTION_HOLD, EXIT_IMMEDIATE, EXIT_SOON,
    HOLD_ACTION_TIGHTEN_STOP, POSITION_CLOSED, POSITION_OPEN, CONTRACT_MULTIPLIER,
)
from src.utils.logging import get_logger

logger = get_logger(__name__)


class DatabaseTask(Task):
    """Base task with database session management."""
    _db = None

    @property
    def db(self):
        if self._db is None:
            self._db = SessionLocal()
        return self._db

    def after_return(self, *args, **kwargs):
        if self._db is not None:
            self._db.close()
            self._db = None


def group_positions(positions: List[Position]) -> "OrderedDict[tuple, List[Position]]":
    """Group open positions by (ticker, expiration), preserving order."""
    groups: "OrderedDict[tuple, List[Position]]" = OrderedDict()
    for position in positions:
        groups.setdefault((position.ticker, position.expiration), []).append(position)
    return groups


def run_position_monitor(
    db,
    provider: MarketDataProvider,
    now: Optional[datetime] = None,
    config_overrides: Optional[Mapping[str, Any]] = None
) -> Dict:
    """
    Evaluate every open position and apply exits.

    Monitoring Process:
    1. Group open positions by (ticker, expiration)
    2. Per group: fetch the chain once; a failure counts every position in the group
    3. Per position: quote, exit evaluation, hold evaluation when no exit;
       a failure is rolled back and counted without stopping siblings

    Returns:
        Summary with checked, updated, exited, partial_exited, errors, details, duration_ms
    """
    started = time.perf_counter()
    now = as_utc(now) if now else utc_now()
    service = DecisionService(db, config_overrides)
    summary = {
        'checked': 0,
        'updated': 0,
        'exited': 0,
        'partial_exited': 0,
        'errors': 0,
        'details': [],
    }

    positions = (
        db.query(Position)
        .filter(Position.status == POSITION_OPEN)
        .order_by(Position.ticker, Position.expiration, Position.id)
        .all()
    )
    if not positions:
        logger.info("No open positions to monitor")
        summary['duration_ms'] = round((time.perf_counter() - started) * 1000, 3)
        return summary

    logger.info(f"Monitoring {len(positions)} open positions")

    for (ticker, expiration), group in group_positions(positions).items():
        # Step 1: Group-level market data
        try:
            chain = provider.get_options_chain(ticker, expiration)
        except Exception as e:
            logger.error(f"Chain fetch failed for {ticker} {expiration}: {e}")
            summary['errors'] += len(group)
            metrics.record_monitor_error('chain', len(group))
            continue

        try:
            atr, atr_percentile = provider.get_atr(ticker)
        except Exception as e:
            logger.warning(f"ATR unavailable for {ticker}, using planned levels: {e}")
            metrics.record_monitor_error('atr')
            atr, atr_percentile = None, 50.0

        # Step 2: Per-position evaluation
        for position in group:
            summary['checked'] += 1
            try:
                detail = _monitor_position(db, service, provider, position, chain, atr, atr_percentile, now)
                summary['updated'] += 1
                if detail is not None:
                    summary['details'].append(detail)
                    if detail['action'] == EXIT_ACTION_CLOSE_FULL:
                        summary['exited'] += 1
                    else:
                        summary['partial_exited'] += 1
                metrics.record_position_monitored('ok')
            except Exception as e:
                db.rollback()
                logger.error(f"Error processing position {position.position_id}: {e}")
                summary['errors'] += 1
                metrics.record_monitor_error('position')
                metrics.record_position_monitored('error')

    summary['duration_ms'] = round((time.perf_counter() - started) * 1000, 3)
    logger.info(
        "Position monitor complete",
        checked=summary['checked'],
        exited=summary['exited'],
        partial_exited=summary['partial_exited'],
        errors=summary['errors'],
        duration_ms=summary['duration_ms'],
    )
    return summary


def _monitor_position(db, service, provider, position, chain, atr, atr_percentile, now) -> Optional[Dict]:
    """Evaluate one position; returns an exit detail when an exit was applied."""
    if not position.symbol:
        raise DecisionEngineError(f"Position {position.position_id} has no option symbol")

    quote = provider.get_option_quote(position.ticker, position.symbol)
    price = quote['mid']

    # Live price bookkeeping
    highest = float(position.highest_price_since_entry or position.entry_price)
    position.highest_price_since_entry = Decimal(str(max(highest, price)))
    position.last_price = Decimal(str(price))
    position.last_evaluated_at = now

    snapshot = position_from_row(position, price, now)
    gex = GexTransformer.chain_to_bundle(chain, position.entry_dealer_position, now=now)

    exit_decision = service.evaluate_exit(
        {'position': snapshot, 'gex': gex, 'atr': atr, 'atr_percentile': atr_percentile}, now,
    )

    if exit_decision.action != EXIT_ACTION_HOLD and exit_decision.urgency in (EXIT_IMMEDIATE, EXIT_SOON):
        return _apply_exit(db, service, position, snapshot, exit_decision, price, now)

    hold_decision = service.evaluate_hold({'position': snapshot, 'gex': gex}, now)
    if (
        hold_decision.action == HOLD_ACTION_TIGHTEN_STOP
        and hold_decision.new_stop_loss is not None
        and not service.config.orchestrator.dry_run
    ):
        position.planned_stop_loss = Decimal(str(hold_decision.new_stop_loss))
    if hold_decision.warnings:
        logger.info(
            f"Hold warnings for {position.symbol}",
            warnings=[w['type'] for w in hold_decision.warnings],
            confidence=hold_decision.confidence,
        )
    db.commit()
    return None


def _apply_exit(db, service, position, snapshot, decision, price, now) -> Dict:
    entry_price = float(position.entry_price)
    quantity = min(decision.exit_quantity, snapshot.remaining_quantity)
    closing = decision.action == EXIT_ACTION_CLOSE_FULL or quantity >= snapshot.remaining_quantity
    if closing:
        quantity = snapshot.remaining_quantity

    detail = {
        'symbol': position.symbol,
        'action': EXIT_ACTION_CLOSE_FULL if closing else decision.action,
        'trigger': decision.trigger,
        'reason': decision.reason,
        'quantity': quantity,
        'pnl': snapshot.unrealized_pnl,
        'pnl_pct': snapshot.unrealized_pnl_pct,
    }

    if service.config.orchestrator.dry_run:
        logger.info(f"Dry run, not applying {decision.action} on {position.symbol}", quantity=quantity)
        return detail

    # Each exit books only the contracts it closes
    booked = Decimal(str(position.realized_pnl or 0))
    booked += Decimal(str(round((price - entry_price) * quantity * CONTRACT_MULTIPLIER, 2)))
    position.realized_pnl = booked
    position.partial_exits_taken = snapshot.partial_exits_taken + quantity

    if closing:
        position.status = POSITION_CLOSED
        position.closed_at = now
        position.exit_price = Decimal(str(price))
    if decision.new_stop_loss is not None:
        position.planned_stop_loss = Decimal(str(decision.new_stop_loss))
    db.commit()

    logger.info(
        f"{decision.action} {position.symbol}: {decision.reason}",
        quantity=quantity,
        trigger=decision.trigger,
        realized_pnl=float(booked),
    )

    if closing and position.entry_decision_id:
        pnl = float(booked)
        try:
            service.record_trade_outcome(position.entry_decision_id, pnl, pnl > 0)
        except DecisionEngineError as e:
            logger.warning(f"Outcome not recorded for {position.position_id}: {e}")

    return detail


@app.task(base=DatabaseTask, bind=True)
def monitor_open_positions(self, config_overrides=None):
    """
    Every 5 minutes during market hours: evaluate open positions.
    """
    logger.info("Starting position monitor")

    db = self.db

    try:
        with metrics.monitor_duration.time():
            return run_position_monitor(db, get_market_data_provider(), config_overrides=config_overrides)
    except Exception as e:
        logger.error(f"Position monitor failed: {e}")
        db.rollback()
        raise


@app.task(base=DatabaseTask, bind=True)
def evaluate_entry_signal(self, payload, config_overrides=None):
    """
    Evaluate one entry payload and return the decision as JSON.
    """
    db = self.db

    try:
        decision = DecisionService(db, config_overrides).evaluate_entry(payload)
        return decision.to_dict()
    except Exception as e:
        logger.error(f"Entry evaluation failed: {e}")
        db.rollback()
        raise


@app.task(base=DatabaseTask, bind=True)
def record_trade_outcome(self, decision_id, pnl, was_correct):
    """
    Attach a closed trade's outcome to its decision.
    """
    db = self.db

    try:
        return DecisionService(db).record_trade_outcome(decision_id, pnl, was_correct)
    except Exception as e:
        logger.error(f"Recording outcome for {decision_id} failed: {e}")
        db.rollback()
        raise


@app.task(base=DatabaseTask, bind=True)
def rule_tuning_report(self):
    """
    Daily task: log rules that need their thresholds tuned.
    Runs at 10 PM UTC.
    """
    logger.info("Building rule tuning report")

    db = self.db

    try:
        recommendations = DecisionService(db).observer.get_rule_tuning_recommendations()
        for rec in recommendations:
            logger.info(
                f"Rule {rec['rule_id']}: {rec['tune_direction']}",
                accuracy=rec['accuracy_rate'],
                current_threshold=rec['current_threshold'],
                suggested_threshold=rec['suggested_threshold'],
                confidence=rec['tune_confidence'],
            )
        logger.info(f"Tuning report: {len(recommendations)} rules flagged")
        return {'rules_flagged': len(recommendations), 'recommendations': recommendations}
    except Exception as e:
        logger.error(f"Rule tuning report failed: {e}")
        raise
