"""
Decision service: the I/O shell around the pure orchestrator.

Loads per-ticker regime state and Kelly statistics, runs a decision flow,
persists the new regime state and logs the decision. Regime state for a
ticker is read and written under a per-ticker lock and a row lock, so
concurrent entries for one ticker cannot lose a flip.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.core.config import merge_config
from src.core.credibility import (
    SourceStats, adjusted_weight, apply_learned_credibility, learned_credibility, record_outcome,
)
from src.core.errors import DecisionNotFound
from src.core.observability import DecisionObserver, running_average
from src.core.orchestrator import (
    DecisionOrchestrator, DecisionRecord, EntryDecision, ExitDecision, HoldDecision,
)
from src.core.regime_gate import RegimeState
from src.core.schemas import EntryInput, ExitInput, HoldInput, KellyStats
from src.core.validation import (
    counter, json_object, kelly_stats_from_row, source_stats_from_row,
    validate_entry_input, validate_exit_input, validate_hold_input,
)
from src.models.regime_performance import RegimePerformance
from src.models.regime_stability import RegimeStability
from src.models.source_credibility import SourceCredibility
from src.utils import metrics
from src.utils.clock import as_utc, utc_now
from src.utils.constants import ACTION_EXECUTE, DECISION_ENTRY, REGIME_FLIPPED
from src.utils.locks import ticker_locks
from src.utils.logging import get_logger

logger = get_logger(__name__)


def regime_state_from_row(row: Optional[RegimeStability]) -> Optional[RegimeState]:
    """Stored regime row -> RegimeState; None when the ticker has no history."""
    if row is None:
        return None
    return RegimeState(
        ticker=row.ticker,
        current_regime=row.current_regime,
        previous_regime=row.previous_regime,
        regime_confidence=float(row.regime_confidence or 0.0),
        regime_since=as_utc(row.regime_since),
        last_observed_at=as_utc(row.last_observed_at),
        last_flip_at=as_utc(row.last_flip_at),
        cooldown_until=as_utc(row.cooldown_until),
        consecutive_readings=counter(row.consecutive_readings) or 1,
        flip_count=counter(row.flip_count),
        market_regime=row.market_regime,
    )


class DecisionService:
    """
    Runs decisions against a database session.

    Usage:
        service = DecisionService(db, {'minConfidenceToExecute': 70})
        decision = service.evaluate_entry(payload)
    """

    def __init__(self, db: Session, config_overrides: Optional[Mapping[str, Any]] = None):
        self.db = db
        self.config = merge_config(config_overrides)
        self.orchestrator = DecisionOrchestrator(self.config)
        self.observer = DecisionObserver(db, self.config)

    # ========== DECISIONS ==========

    def evaluate_entry(
        self,
        entry: Union[EntryInput, Mapping],
        now: Optional[datetime] = None
    ) -> EntryDecision:
        entry = validate_entry_input(entry)
        now = as_utc(now) if now else utc_now()
        ticker = entry.signal.ticker

        with ticker_locks.hold(ticker):
            row = None
            if entry.gex is not None:
                row = (
                    self.db.query(RegimeStability)
                    .filter(RegimeStability.ticker == ticker)
                    .with_for_update()
                    .first()
                )
            kelly_stats = self.get_kelly_stats(
                entry.gex.market_regime.regime if entry.gex else None,
                entry.gex.dealer_position if entry.gex else None,
            )

            decision = self._entry_orchestrator().orchestrate_entry(
                entry, now, regime_state_from_row(row), kelly_stats,
            )

            if decision.regime_state is not None:
                try:
                    self._save_regime_state(row, decision.regime_state)
                    self.db.commit()
                except Exception:
                    self.db.rollback()
                    raise
                if decision.regime_gate is not None and decision.regime_gate.state == REGIME_FLIPPED:
                    metrics.record_regime_flip(ticker)
                    logger.info(
                        f"Regime flip on {ticker}",
                        previous=decision.regime_state.previous_regime,
                        current=decision.regime_state.current_regime,
                    )

        self._log(decision)
        return decision

    def evaluate_hold(self, hold: Union[HoldInput, Mapping], now: Optional[datetime] = None) -> HoldDecision:
        decision = self.orchestrator.orchestrate_hold(validate_hold_input(hold), now)
        self._log(decision)
        return decision

    def evaluate_exit(self, exit_input: Union[ExitInput, Mapping], now: Optional[datetime] = None) -> ExitDecision:
        decision = self.orchestrator.orchestrate_exit(validate_exit_input(exit_input), now)
        self._log(decision)
        return decision

    def _log(self, decision: DecisionRecord):
        if self.config.orchestrator.log_all_decisions:
            self.observer.log_decision(decision)

    def _save_regime_state(self, row: Optional[RegimeStability], state: RegimeState):
        if row is None:
            row = RegimeStability(ticker=state.ticker)
            self.db.add(row)
        row.current_regime = state.current_regime
        row.previous_regime = state.previous_regime
        row.market_regime = state.market_regime
        row.regime_confidence = state.regime_confidence
        row.regime_since = state.regime_since
        row.last_observed_at = state.last_observed_at
        row.last_flip_at = state.last_flip_at
        row.cooldown_until = state.cooldown_until
        row.consecutive_readings = state.consecutive_readings
        row.flip_count = state.flip_count

    # ========== KELLY STATISTICS ==========

    def get_kelly_stats(self, market_regime: Optional[str], dealer_position: Optional[str]) -> Optional[KellyStats]:
        if not market_regime or not dealer_position:
            return None
        row = (
            self.db.query(RegimePerformance)
            .filter(RegimePerformance.market_regime == market_regime)
            .filter(RegimePerformance.dealer_position == dealer_position)
            .first()
        )
        return kelly_stats_from_row(row)

    # ========== OUTCOMES ==========

    def record_trade_outcome(self, decision_id: str, pnl: float, was_correct: bool) -> Dict:
        """
        Attach a closed trade's result to its decision.

        Updates rule statistics and, for executed entries when learning is
        enabled, the regime performance that feeds Kelly sizing and the
        credibility of the sources that agreed with the entry.
        """
        row = self.observer.update_decision_outcome(decision_id, pnl, was_correct)

        regime_updated = False
        credibility_sources: List[str] = []
        if (
            self.config.orchestrator.enable_learning
            and row.decision_type == DECISION_ENTRY
            and row.action == ACTION_EXECUTE
        ):
            snapshot = json_object(row.context_snapshot)
            regime_updated = self._update_regime_performance(
                snapshot.get('market_regime'), snapshot.get('dealer_position'), Decimal(str(pnl)),
            )
            credibility_sources = self._update_source_credibility(json_object(row.record), was_correct)

        return {
            'decision_id': decision_id,
            'pnl': float(pnl),
            'was_correct': bool(was_correct),
            'regime_performance_updated': regime_updated,
            'source_credibility_updated': credibility_sources,
        }

    def _update_regime_performance(self, market_regime, dealer_position, pnl: Decimal) -> bool:
        if not market_regime or not dealer_position:
            return False

        key = f"{market_regime}:{dealer_position}"
        with ticker_locks.hold(key):
            try:
                perf = self._regime_performance_row(market_regime, dealer_position)
                total = counter(perf.total_trades) + 1
                wins = counter(perf.winning_trades)
                losses = counter(perf.total_trades) - wins

                if pnl > 0:
                    wins += 1
                    perf.avg_win = running_average(Decimal(str(perf.avg_win or 0)), wins, pnl)
                else:
                    losses += 1
                    perf.avg_loss = running_average(Decimal(str(perf.avg_loss or 0)), losses, abs(pnl))

                perf.total_trades = total
                perf.winning_trades = wins
                perf.total_pnl = Decimal(str(perf.total_pnl or 0)) + pnl
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        logger.info(f"Regime performance updated for {key}", total_trades=total, winning_trades=wins)
        return True

    def _regime_performance_row(self, market_regime: str, dealer_position: str) -> RegimePerformance:
        query = (
            self.db.query(RegimePerformance)
            .filter(RegimePerformance.market_regime == market_regime)
            .filter(RegimePerformance.dealer_position == dealer_position)
        )
        perf = query.with_for_update().first()
        if perf is not None:
            return perf
        try:
            with self.db.begin_nested():
                perf = RegimePerformance(
                    market_regime=market_regime,
                    dealer_position=dealer_position,
                    total_trades=0,
                    winning_trades=0,
                    avg_win=Decimal('0'),
                    avg_loss=Decimal('0'),
                    total_pnl=Decimal('0'),
                )
                self.db.add(perf)
        except IntegrityError:
            perf = query.with_for_update().first()
        return perf

    # ========== SOURCE CREDIBILITY ==========

    def get_source_stats(self) -> Dict[str, SourceStats]:
        return {row.source: source_stats_from_row(row) for row in self.db.query(SourceCredibility).all()}

    def _entry_orchestrator(self) -> DecisionOrchestrator:
        """Orchestrator whose credibility and source weights include what was learned."""
        if not self.config.orchestrator.enable_learning:
            return self.orchestrator
        stats = self.get_source_stats()
        if not stats:
            return self.orchestrator
        return DecisionOrchestrator(apply_learned_credibility(self.config, stats))

    def _update_source_credibility(self, record: Dict, was_correct: bool) -> List[str]:
        """Credit or debit every source that agreed with the entry's direction."""
        direction = record.get('direction')
        sources = sorted({
            s['source'] for s in record.get('signal_scores') or []
            if direction and s.get('direction') == direction
        })
        if not sources:
            return []

        window = self.config.conflict.credibility_recent_window
        priors = self.config.conflict.source_credibility
        base_weights = self.config.scoring.source_weights
        with ticker_locks.hold_many([f"source:{s}" for s in sources]):
            try:
                for source in sources:
                    row = self._source_credibility_row(source)
                    stats = record_outcome(source_stats_from_row(row), was_correct, window)
                    prior = priors.get(source, 0.5)
                    credibility = learned_credibility(stats, prior, self.config)

                    row.total_signals = stats.total_signals
                    row.correct_signals = stats.correct_signals
                    row.accuracy_rate = stats.accuracy
                    row.recent_total = stats.recent_total
                    row.recent_correct = stats.recent_correct
                    row.recent_accuracy = stats.recent_accuracy
                    row.credibility_score = round(credibility, 4)
                    row.adjusted_weight = round(
                        adjusted_weight(base_weights.get(source, 0.5), credibility, prior), 4,
                    )
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        logger.info("Source credibility updated", sources=sources, was_correct=bool(was_correct))
        return sources

    def _source_credibility_row(self, source: str) -> SourceCredibility:
        query = self.db.query(SourceCredibility).filter(SourceCredibility.source == source)
        row = query.with_for_update().first()
        if row is not None:
            return row
        try:
            with self.db.begin_nested():
                row = SourceCredibility(
                    source=source,
                    total_signals=0,
                    correct_signals=0,
                    recent_total=0,
                    recent_correct=0.0,
                )
                self.db.add(row)
        except IntegrityError:
            row = query.with_for_update().first()
        return row

    # ========== QUERIES ==========

    def get_decision(self, decision_id: str) -> Dict:
        decision = self.observer.get_decision_by_id(decision_id)
        if decision is None:
            raise DecisionNotFound(decision_id)
        return decision
