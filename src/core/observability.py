"""
Decision Observability & Auto-Tuner

Persists decision records and keeps per-rule statistics:
- log_decision: one immutable row plus an atomic trigger increment per fired rule
- update_decision_outcome: outcome set exactly once, then rule accuracy,
  running average P&L and tuning direction recomputed
- get_rule_tuning_recommendations: rules past the statistical floor with a
  LOOSEN/TIGHTEN suggestion

Trigger increments commit in the same transaction as the decision row, so an
outcome for a decision is always applied after that decision's own triggers.
"""
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.core.config import OrchestratorConfig, merge_config
from src.core.errors import DecisionNotFound, OutcomeAlreadyRecorded
from src.core.orchestrator import DecisionRecord
from src.core.validation import counter, decision_from_row, json_array, optional_float
from src.models.decisions import DecisionLog
from src.models.rule_performance import RulePerformance
from src.utils import metrics
from src.utils.clock import utc_now
from src.utils.constants import (
    ACTION_REJECT, DECISION_ENTRY, MAX_QUERY_LIMIT,
    TUNE_KEEP, TUNE_LOOSEN, TUNE_TIGHTEN,
)
from src.utils.locks import rule_locks
from src.utils.logging import get_logger

logger = get_logger(__name__)


def tuning_for(
    times_triggered: int,
    accuracy: Optional[float],
    avg_pnl: float,
    current_threshold: Optional[float],
    config: OrchestratorConfig
) -> Tuple[str, Optional[float], float]:
    """
    Tuning direction for one rule.

    Returns (direction, suggested_threshold, tune_confidence).
    """
    obs = config.observability
    if accuracy is None or times_triggered < obs.tuning_min_triggers:
        return TUNE_KEEP, current_threshold, 0.0

    if accuracy < obs.loosen_below_accuracy:
        # Rejecting too many good trades
        suggested = current_threshold * obs.loosen_factor if current_threshold is not None else None
        confidence = obs.base_tune_confidence + (obs.loosen_below_accuracy - accuracy)
        return TUNE_LOOSEN, suggested, round(min(1.0, confidence), 4)

    if accuracy > obs.tighten_above_accuracy and avg_pnl < 0:
        # Letting bad trades through
        suggested = current_threshold * obs.tighten_factor if current_threshold is not None else None
        confidence = obs.base_tune_confidence + (accuracy - obs.tighten_above_accuracy)
        return TUNE_TIGHTEN, suggested, round(min(1.0, confidence), 4)

    return TUNE_KEEP, current_threshold, 0.0


def running_average(old_avg: Decimal, n: int, pnl: Decimal) -> Decimal:
    """newAvg = (oldAvg * (n - 1) + pnl) / n"""
    if n <= 0:
        return pnl
    return (old_avg * (n - 1) + pnl) / n


class DecisionObserver:
    """
    Decision log and rule statistics backed by a SQLAlchemy session.

    The observer commits its own writes.
    """

    def __init__(self, db: Session, config: Optional[OrchestratorConfig] = None):
        self.db = db
        self.config = config or merge_config()

    # ========== LOGGING ==========

    def log_decision(self, decision: DecisionRecord) -> DecisionLog:
        """Persist a decision and count its fired rules."""
        record = decision.to_dict()
        fired = [r for r in record['rules_triggered'] if r.get('fired')]
        decided_at = datetime.fromisoformat(decision.timestamp)

        with rule_locks.hold_many(r['rule_id'] for r in fired):
            row = DecisionLog(
                decision_id=decision.decision_id,
                schema_version=decision.schema_version,
                decision_type=decision.decision_type,
                ticker=decision.ticker,
                action=decision.action,
                action_reason=(decision.reason or '')[:255],
                confidence=decision.confidence,
                quantity=decision.quantity,
                price=Decimal(str(decision.price)) if decision.price is not None else None,
                context_snapshot=record['context_snapshot'],
                rules_triggered=record['rules_triggered'],
                record_hash=decision.record_hash,
                record=record,
                decided_at=decided_at,
                duration_ms=decision.duration_ms,
            )
            try:
                self.db.add(row)
                self.db.flush()
                for rule in fired:
                    self._increment_trigger(rule, decided_at)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        metrics.record_decision(decision.decision_type, decision.action, decision.duration_ms)
        if decision.decision_type == DECISION_ENTRY and decision.action == ACTION_REJECT:
            metrics.record_entry_rejection(decision.reason)
        for rule in fired:
            metrics.record_rule_trigger(rule['rule_id'])

        logger.info(
            "Decision logged",
            decision_id=decision.decision_id,
            decision_type=decision.decision_type,
            fired_rules=len(fired),
        )
        return row

    def _increment_trigger(self, rule: Dict, now: datetime):
        """Atomic times_triggered + 1, inserting the row on first sight."""
        values = {
            'times_triggered': RulePerformance.times_triggered + 1,
            'last_triggered_at': now,
        }
        if rule.get('threshold') is not None:
            values['current_threshold'] = rule['threshold']

        stmt = update(RulePerformance).where(RulePerformance.rule_id == rule['rule_id']).values(**values)
        if self.db.execute(stmt).rowcount:
            return

        try:
            with self.db.begin_nested():
                self.db.add(RulePerformance(
                    rule_id=rule['rule_id'],
                    category=rule.get('category'),
                    times_triggered=1,
                    times_outcomes=0,
                    times_correct=0,
                    avg_pnl_when_triggered=Decimal('0'),
                    current_threshold=rule.get('threshold'),
                    tune_direction=TUNE_KEEP,
                    tune_confidence=0.0,
                    last_triggered_at=now,
                ))
        except IntegrityError:
            # Another writer created the row first
            logger.debug(f"Rule {rule['rule_id']} created concurrently, retrying increment")
            self.db.execute(stmt)

    # ========== OUTCOMES ==========

    def update_decision_outcome(self, decision_id: str, pnl: float, was_correct: bool) -> DecisionLog:
        """
        Attach a trade outcome to a decision and update its fired rules.

        Raises:
            DecisionNotFound: unknown decision id
            OutcomeAlreadyRecorded: outcome was set before
        """
        row = (
            self.db.query(DecisionLog)
            .filter(DecisionLog.decision_id == decision_id)
            .with_for_update()
            .first()
        )
        if row is None:
            raise DecisionNotFound(decision_id)
        if row.outcome_at is not None or row.outcome_correct is not None:
            raise OutcomeAlreadyRecorded(decision_id)

        pnl_value = Decimal(str(pnl))
        row.outcome_pnl = pnl_value
        row.outcome_correct = bool(was_correct)
        row.outcome_at = utc_now()

        fired = sorted({
            r['rule_id'] for r in json_array(row.rules_triggered)
            if isinstance(r, dict) and r.get('fired') and r.get('rule_id')
        })

        with rule_locks.hold_many(fired):
            try:
                for rule_id in fired:
                    perf = (
                        self.db.query(RulePerformance)
                        .filter(RulePerformance.rule_id == rule_id)
                        .with_for_update()
                        .first()
                    )
                    if perf is None:
                        logger.warning(f"No statistics row for fired rule {rule_id}")
                        continue
                    self._apply_outcome(perf, pnl_value, bool(was_correct))
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        metrics.record_outcome(was_correct)
        logger.info(
            "Outcome recorded",
            decision_id=decision_id,
            pnl=float(pnl_value),
            was_correct=bool(was_correct),
            rules_updated=len(fired),
        )
        return row

    def _apply_outcome(self, perf: RulePerformance, pnl: Decimal, was_correct: bool):
        n = counter(perf.times_outcomes) + 1
        correct = counter(perf.times_correct) + (1 if was_correct else 0)
        triggered = max(counter(perf.times_triggered), n)

        old_avg = Decimal(str(perf.avg_pnl_when_triggered or 0))
        avg = running_average(old_avg, n, pnl)
        accuracy = correct / triggered

        direction, suggested, confidence = tuning_for(
            triggered, accuracy, float(avg), optional_float(perf.current_threshold), self.config,
        )

        perf.times_outcomes = n
        perf.times_correct = correct
        perf.accuracy_rate = round(accuracy, 4)
        perf.avg_pnl_when_triggered = avg
        perf.tune_direction = direction
        perf.suggested_threshold = suggested
        perf.tune_confidence = confidence

        if direction != TUNE_KEEP:
            logger.info(
                f"Rule {perf.rule_id} flagged for tuning: {direction}",
                accuracy=round(accuracy, 4),
                suggested_threshold=suggested,
            )

    # ========== QUERIES ==========

    def get_rule_tuning_recommendations(self) -> List[Dict]:
        """Rules past the trigger floor with a non-KEEP direction, most confident first."""
        floor = self.config.observability.recommendation_min_triggers
        rows = (
            self.db.query(RulePerformance)
            .filter(RulePerformance.times_triggered >= floor)
            .filter(RulePerformance.tune_direction.isnot(None))
            .filter(RulePerformance.tune_direction != TUNE_KEEP)
            .order_by(RulePerformance.tune_confidence.desc(), RulePerformance.rule_id)
            .all()
        )
        recommendations = [self.rule_to_dict(r) for r in rows]
        metrics.update_rules_needing_tuning(len(recommendations))
        return recommendations

    def get_rule_performance(self, rule_id: str) -> Optional[Dict]:
        row = self.db.query(RulePerformance).filter(RulePerformance.rule_id == rule_id).first()
        return self.rule_to_dict(row) if row else None

    @staticmethod
    def rule_to_dict(row: RulePerformance) -> Dict:
        return {
            'rule_id': row.rule_id,
            'category': row.category,
            'times_triggered': counter(row.times_triggered),
            'times_outcomes': counter(row.times_outcomes),
            'times_correct': counter(row.times_correct),
            'accuracy_rate': optional_float(row.accuracy_rate),
            'avg_pnl_when_triggered': optional_float(row.avg_pnl_when_triggered) or 0.0,
            'current_threshold': optional_float(row.current_threshold),
            'suggested_threshold': optional_float(row.suggested_threshold),
            'tune_direction': row.tune_direction or TUNE_KEEP,
            'tune_confidence': optional_float(row.tune_confidence) or 0.0,
        }

    def get_recent_decisions(self, ticker: Optional[str] = None, limit: Optional[int] = None) -> List[Dict]:
        limit = limit or self.config.observability.recent_decisions_limit
        limit = max(1, min(limit, MAX_QUERY_LIMIT))
        query = self.db.query(DecisionLog)
        if ticker:
            query = query.filter(DecisionLog.ticker == ticker)
        rows = query.order_by(DecisionLog.decided_at.desc(), DecisionLog.id.desc()).limit(limit).all()
        return [decision_from_row(r) for r in rows]

    def get_decision_by_id(self, decision_id: str) -> Optional[Dict]:
        row = self.db.query(DecisionLog).filter(DecisionLog.decision_id == decision_id).first()
        return decision_from_row(row) if row else None
