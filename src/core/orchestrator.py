"""
Decision Orchestrator

Composes scoring, confluence/conflict resolution, the regime gate,
position sizing and exit planning into three decision flows:

- Entry: EXECUTE or REJECT a new trade signal
- Hold: HOLD / TIGHTEN_STOP / PARTIAL_EXIT / EXIT an open position
- Exit: HOLD / CLOSE_PARTIAL / CLOSE_FULL with urgency

Every flow is a pure function of (validated input, resolved config, now)
plus any prior state handed in by the caller. Nothing here touches the
database or the network; see src.core.decision_service for that.
"""
import json
import math
import time
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Union

from src.core.config import OrchestratorConfig, merge_config
from src.core.confluence import (
    ConfluenceScore, ConflictResolution, calculate_confluence, resolve_conflicts,
)
from src.core.exit_planner import ExitPlanner, ExitPlan
from src.core.position_sizer import PositionSizer, PositionSizeCalculation
from src.core.regime_gate import GateResult, RegimeState, evaluate_regime, observation_from
from src.core.schemas import EntryInput, ExitInput, HoldInput, KellyStats
from src.core.signal_scorer import NormalizedSignals, SignalScore, SignalScorer
from src.core.validation import validate_entry_input, validate_exit_input, validate_hold_input
from src.utils import constants as C
from src.utils.clock import as_utc, utc_now
from src.utils.hashing import canonical_json, create_decision_hash
from src.utils.logging import get_logger

logger = get_logger(__name__)

# Exit urgency -> decision confidence
EXIT_URGENCY_CONFIDENCE = {
    C.EXIT_IMMEDIATE: 90.0,
    C.EXIT_SOON: 75.0,
    C.EXIT_OPTIONAL: 50.0,
}


@dataclass
class RuleTrigger:
    rule_id: str
    category: str
    condition: str
    fired: bool
    impact: float
    details: str = ''
    threshold: Optional[float] = None

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class ConfidenceBreakdown:
    base_confidence: float
    confluence_impact: float
    regime_impact: float
    conflict_impact: float
    positioning_impact: float
    context_impact: float
    mtf_impact: float
    gex_alignment: str
    regime_alignment: str
    final_confidence: float
    clamped_confidence: float

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class DecisionRecord:
    """Immutable, schema-versioned record of one decision."""
    decision_id: str
    decision_type: str
    ticker: str
    action: str
    confidence: float
    quantity: int
    price: Optional[float]
    reason: str
    timestamp: str
    duration_ms: float
    rules_triggered: List[RuleTrigger] = field(default_factory=list)
    context_snapshot: Dict = field(default_factory=dict)
    schema_version: int = C.DECISION_SCHEMA_VERSION
    record_hash: str = ''

    # Not part of the persisted record
    _transient = ('regime_state',)

    @property
    def fired_rules(self) -> List[RuleTrigger]:
        return [r for r in self.rules_triggered if r.fired]

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe dict of the record."""
        raw = {}
        for name in self.__dataclass_fields__:
            if name in self._transient:
                continue
            value = getattr(self, name)
            if isinstance(value, list):
                value = [v.to_dict() if hasattr(v, 'to_dict') else v for v in value]
            elif hasattr(value, 'to_dict'):
                value = value.to_dict()
            raw[name] = value
        return json.loads(canonical_json(raw))

    def seal(self) -> 'DecisionRecord':
        self.record_hash = create_decision_hash(self.to_dict())
        return self


@dataclass
class EntryDecision(DecisionRecord):
    direction: str = C.NEUTRAL
    rejection_reason: Optional[str] = None
    rejection_details: Optional[str] = None
    recommendations: List[str] = field(default_factory=list)
    base_quantity: int = 0
    exit_plan: Optional[ExitPlan] = None
    signal_scores: List[SignalScore] = field(default_factory=list)
    confluence: Optional[ConfluenceScore] = None
    conflict: Optional[ConflictResolution] = None
    regime_gate: Optional[GateResult] = None
    position_sizing: Optional[PositionSizeCalculation] = None
    confidence_breakdown: Optional[ConfidenceBreakdown] = None
    regime_state: Optional[RegimeState] = None


@dataclass
class HoldDecision(DecisionRecord):
    warnings: List[Dict] = field(default_factory=list)
    regime_changed: bool = False
    previous_regime: Optional[str] = None
    current_regime: Optional[str] = None
    regime_change_impact: str = 'NEUTRAL'
    new_stop_loss: Optional[float] = None
    exit_quantity_pct: Optional[float] = None
    details: str = ''


@dataclass
class ExitDecision(DecisionRecord):
    urgency: str = C.EXIT_OPTIONAL
    trigger: Optional[str] = None
    exit_quantity: int = 0
    new_stop_loss: Optional[float] = None
    unrealized_pnl: float = 0.0
    unrealized_pnl_pct: float = 0.0
    levels: Dict = field(default_factory=dict)
    time_decay: Dict = field(default_factory=dict)
    details: str = ''


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def _oriented_score(score: Optional[SignalScore], direction: str) -> Optional[float]:
    """Score seen from the decision direction; None when the source is absent."""
    if score is None:
        return None
    if score.direction == C.NEUTRAL or direction == C.NEUTRAL:
        return 50.0
    return score.score if score.direction == direction else 100.0 - score.score


def assess_gex_alignment(direction: str, gex) -> str:
    if gex is None or direction == C.NEUTRAL:
        return 'NEUTRAL'
    bias = gex.summary.overall_bias
    if bias == 'NEUTRAL':
        return 'NEUTRAL'
    aligned = (bias == 'BULLISH') == (direction == C.LONG)
    return 'ALIGNED' if aligned else 'CONFLICTING'


def assess_regime_alignment(direction: str, market_regime: Optional[str]) -> str:
    if market_regime is None or direction == C.NEUTRAL:
        return 'NEUTRAL'
    if market_regime in C.BULLISH_MARKET_REGIMES:
        return 'ALIGNED' if direction == C.LONG else 'CONFLICTING'
    if market_regime in C.BEARISH_MARKET_REGIMES:
        return 'ALIGNED' if direction == C.SHORT else 'CONFLICTING'
    return 'NEUTRAL'


def regime_change_impact(option_type: str, current_regime: Optional[str], changed: bool) -> str:
    """FAVORABLE / UNFAVORABLE / NEUTRAL for a regime change on an open position."""
    if not changed or current_regime is None:
        return 'NEUTRAL'
    is_long = option_type == 'CALL'
    if current_regime in C.BULLISH_MARKET_REGIMES:
        return 'FAVORABLE' if is_long else 'UNFAVORABLE'
    if current_regime in C.BEARISH_MARKET_REGIMES:
        return 'UNFAVORABLE' if is_long else 'FAVORABLE'
    return 'NEUTRAL'


class DecisionOrchestrator:
    """
    Runs the Entry, Hold and Exit flows under one resolved configuration.

    Entry Process:
    1. Normalize and score every reporting source
    2. Confluence score and conflict resolution
    3. Regime stability gate (REJECT ends the flow here)
    4. Exit levels, then position size off the stop distance
    5. Confidence breakdown, thresholds, final decision
    """

    def __init__(self, config: Optional[OrchestratorConfig] = None):
        self.config = config or merge_config()
        self.scorer = SignalScorer(self.config)
        self.sizer = PositionSizer(self.config)
        self.exit_planner = ExitPlanner(self.config)

    # ========== ENTRY ==========

    def orchestrate_entry(
        self,
        entry: EntryInput,
        now: Optional[datetime] = None,
        regime_state: Optional[RegimeState] = None,
        kelly_stats: Optional[KellyStats] = None
    ) -> EntryDecision:
        started = time.perf_counter()
        now = as_utc(now) if now else utc_now()
        ticker = entry.signal.ticker
        rules: List[RuleTrigger] = []

        # Step 1: Normalize
        signals = self.scorer.score_entry(entry, now)
        confluence = calculate_confluence(signals, self.config)
        rules.append(RuleTrigger(
            rule_id=C.RULE_SIGNAL_NORMALIZATION,
            category=C.CATEGORY_ENTRY,
            condition=f"Normalized {len(signals.scores)} sources, {len(signals.absent_sources)} absent",
            fired=True,
            impact=0,
            details=f"Confluence {confluence.score:.1f}, {confluence.confluence_count} agreeing",
        ))
        rules.append(RuleTrigger(
            rule_id=C.RULE_CONFLUENCE_ALIGNMENT,
            category=C.CATEGORY_ENTRY,
            condition=f"Aligned: {confluence.is_aligned} ({confluence.majority_direction})",
            fired=confluence.is_aligned,
            impact=0,
            threshold=self.config.confluence.min_agreeing_sources_for_alignment,
        ))

        # Step 2: Conflicts
        conflict = resolve_conflicts(signals, self.config)
        direction = conflict.resolved_direction
        rules.append(RuleTrigger(
            rule_id=C.RULE_CONFLICT_RESOLUTION,
            category=C.CATEGORY_CONFLICT,
            condition=conflict.reason,
            fired=conflict.has_conflict,
            impact=-conflict.confidence_penalty,
            details=f"Overridden: {', '.join(conflict.overridden_sources) or 'none'}",
            threshold=self.config.conflict.min_agreeing_sources,
        ))

        # Step 3: Regime gate
        gate = None
        new_state = regime_state
        observation = observation_from(entry.gex, entry.market_context)
        if observation is not None:
            new_state, gate = evaluate_regime(regime_state, ticker, observation, now, self.config)
            rules.append(RuleTrigger(
                rule_id=C.RULE_REGIME_STABILITY,
                category=C.CATEGORY_REGIME,
                condition=(
                    f"Regime {new_state.current_regime} {gate.state}, "
                    f"confidence {new_state.regime_confidence:.2f}"
                ),
                fired=gate.gated,
                impact=(-100 if not gate.can_enter else -gate.confidence_penalty) if gate.gated else 0,
                details=gate.block_reason or f"Stability score {gate.stability_score:.0f}",
                threshold=self.config.regime.min_regime_confidence,
            ))

        base = dict(
            ticker=ticker, now=now, started=started, rules=rules, signals=signals,
            confluence=confluence, conflict=conflict, gate=gate, new_state=new_state,
            direction=direction, entry=entry,
        )

        if gate is not None and not gate.can_enter:
            return self._entry_rejection(
                **base,
                reason=C.REJECT_REGIME_UNSTABLE,
                details=gate.block_reason,
                recommendations=gate.recommendations + ['Re-check gamma exposure after the cooldown'],
            )

        if direction == C.NEUTRAL:
            return self._entry_rejection(
                **base,
                reason=C.REJECT_NO_DIRECTION,
                details='Signal does not express a direction',
                recommendations=['Send BUY or SELL signals for entries'],
            )

        # Step 4: Exit levels and sizing
        ctx = entry.market_context
        atr = ctx.atr if ctx else None
        atr_percentile = ctx.atr_percentile if ctx else None
        levels = self.exit_planner.calculate_exit_levels(entry.option_price, atr, atr_percentile)
        rules.append(RuleTrigger(
            rule_id=C.RULE_EXIT_PLANNING,
            category=C.CATEGORY_EXIT,
            condition=f"Stop at {levels.stop_loss_percent:.1f}%",
            fired=True,
            impact=0,
            details=f"T1 +{levels.target1_percent:.1f}%, T2 +{levels.target2_percent:.1f}%",
        ))

        gex = entry.gex
        sizing = self.sizer.calculate_position_size(
            portfolio_value=entry.portfolio_value,
            entry_price=entry.option_price,
            stop_loss=levels.stop_loss,
            requested_quantity=entry.signal.quantity,
            kelly_stats=kelly_stats,
            vix=ctx.vix if ctx else None,
            vix_regime=ctx.vix_regime if ctx else None,
            market_regime=gex.market_regime.regime if gex else None,
            dealer_position=gex.dealer_position if gex else None,
            confluence_score=confluence.score,
        )
        rules.append(RuleTrigger(
            rule_id=C.RULE_POSITION_SIZING,
            category=C.CATEGORY_SIZING,
            condition=(
                f"Kelly x{sizing.kelly_scalar:.2f}, VIX x{sizing.vix_scalar:.2f}, "
                f"regime x{sizing.regime_scalar:.2f}"
            ),
            fired=True,
            impact=0,
            details=f"{sizing.base_quantity} -> {sizing.adjusted_quantity} ({sizing.reason})",
            threshold=self.config.sizing.max_risk_per_trade_percent,
        ))
        exit_plan = self.exit_planner.build_exit_plan(
            entry.option_price, sizing.adjusted_quantity, atr, atr_percentile,
        )

        # Step 5: Confidence
        breakdown = self.confidence_breakdown(signals, confluence, conflict, gate, new_state, direction, gex)
        confidence = breakdown.clamped_confidence
        min_confidence = self.config.orchestrator.min_confidence_to_execute
        min_confluence = self.config.confluence.min_confluence_score

        rules.append(RuleTrigger(
            rule_id=C.RULE_CONFIDENCE_THRESHOLD,
            category=C.CATEGORY_ENTRY,
            condition=f"Confidence {confidence:.1f} vs threshold {min_confidence}",
            fired=confidence < min_confidence,
            impact=-100 if confidence < min_confidence else 0,
            threshold=min_confidence,
        ))
        rules.append(RuleTrigger(
            rule_id=C.RULE_CONFLUENCE_THRESHOLD,
            category=C.CATEGORY_ENTRY,
            condition=f"Confluence {confluence.score:.1f} vs threshold {min_confluence}",
            fired=confluence.score < min_confluence,
            impact=-100 if confluence.score < min_confluence else 0,
            threshold=min_confluence,
        ))

        failures = []
        if confidence < min_confidence:
            failures.append((C.REJECT_LOW_CONFIDENCE,
                             f"Confidence {confidence:.1f}% below threshold {min_confidence}%"))
        if confluence.score < min_confluence:
            failures.append((C.REJECT_LOW_CONFLUENCE,
                             f"Confluence {confluence.score:.1f} below threshold {min_confluence}"))
        if sizing.adjusted_quantity == 0:
            failures.append((C.REJECT_ZERO_SIZE, f"Sized to zero contracts: {sizing.reason}"))

        if failures:
            return self._entry_rejection(
                **base,
                reason=failures[0][0],
                details='; '.join(text for _, text in failures),
                recommendations=self._recommendations(failures),
                sizing=sizing,
                breakdown=breakdown,
                confidence=confidence,
            )

        decision = EntryDecision(
            decision_id=str(uuid.uuid4()),
            decision_type=C.DECISION_ENTRY,
            ticker=ticker,
            action=C.ACTION_EXECUTE,
            confidence=confidence,
            quantity=sizing.adjusted_quantity,
            price=entry.option_price,
            reason='Trade approved',
            timestamp=now.isoformat(),
            duration_ms=0.0,
            rules_triggered=rules,
            context_snapshot=self._entry_snapshot(entry, signals, new_state, gex),
            direction=direction,
            base_quantity=sizing.base_quantity,
            exit_plan=exit_plan,
            signal_scores=signals.scores,
            confluence=confluence,
            conflict=conflict,
            regime_gate=gate,
            position_sizing=sizing,
            confidence_breakdown=breakdown,
            regime_state=new_state,
        )
        return self._finish(decision, started)

    def confidence_breakdown(
        self,
        signals: NormalizedSignals,
        confluence: ConfluenceScore,
        conflict: ConflictResolution,
        gate: Optional[GateResult],
        state: Optional[RegimeState],
        direction: str,
        gex
    ) -> ConfidenceBreakdown:
        """Additive confidence model, clamped to [0, 100]."""
        scoring = self.config.scoring
        regime_config = self.config.regime
        weights = scoring.impact_weights

        base = scoring.base_confidence if signals.primary.direction != C.NEUTRAL else 0.0
        confluence_impact = (confluence.score - 50) * weights.get('confluence', 0.3)

        regime_impact = 0.0
        if gate is not None and state is not None:
            if gate.is_stable and state.regime_confidence > regime_config.stable_bonus_confidence:
                regime_impact += regime_config.stable_bonus
            regime_impact -= gate.confidence_penalty
            if gate.stability_score < regime_config.low_stability_score:
                regime_impact -= regime_config.low_stability_penalty

        market_regime = gex.market_regime.regime if gex is not None else None
        regime_alignment = assess_regime_alignment(direction, market_regime)
        if regime_alignment == 'ALIGNED':
            regime_impact += scoring.market_regime_aligned_bonus
        elif regime_alignment == 'CONFLICTING':
            regime_impact -= scoring.market_regime_conflict_penalty

        conflict_impact = -conflict.confidence_penalty if not conflict.resolved else 0.0

        def impact(source: str, weight_key: str, default: float) -> float:
            oriented = _oriented_score(signals.get(source), direction)
            if oriented is None:
                return 0.0
            return (oriented - 50) * weights.get(weight_key, default)

        positioning_impact = impact(C.SOURCE_POSITIONING, 'positioning', 0.15)
        gex_alignment = assess_gex_alignment(direction, gex)
        if gex_alignment == 'ALIGNED':
            positioning_impact += scoring.gex_aligned_bonus
        elif gex_alignment == 'CONFLICTING':
            positioning_impact -= scoring.gex_conflict_penalty

        context_impact = impact(C.SOURCE_MARKET_CONTEXT, 'context', 0.1)
        mtf_impact = impact(C.SOURCE_MTF, 'mtf', 0.2)

        final = (
            base + confluence_impact + regime_impact + conflict_impact
            + positioning_impact + context_impact + mtf_impact
        )
        return ConfidenceBreakdown(
            base_confidence=round(base, 2),
            confluence_impact=round(confluence_impact, 2),
            regime_impact=round(regime_impact, 2),
            conflict_impact=round(conflict_impact, 2),
            positioning_impact=round(positioning_impact, 2),
            context_impact=round(context_impact, 2),
            mtf_impact=round(mtf_impact, 2),
            gex_alignment=gex_alignment,
            regime_alignment=regime_alignment,
            final_confidence=round(final, 2),
            clamped_confidence=round(_clamp(final), 2),
        )

    def _recommendations(self, failures) -> List[str]:
        texts = {
            C.REJECT_LOW_CONFIDENCE: 'Wait for more sources to confirm the direction',
            C.REJECT_LOW_CONFLUENCE: 'Wait for stronger agreement between sources',
            C.REJECT_ZERO_SIZE: 'Stop distance too wide for the risk budget',
        }
        return [texts[code] for code, _ in failures if code in texts]

    def _entry_snapshot(self, entry: EntryInput, signals, state, gex) -> Dict:
        return {
            'input': entry.model_dump(mode='json'),
            'signals': signals.to_dict(),
            'regime': state.to_dict() if state is not None else None,
            'market_regime': gex.market_regime.regime if gex is not None else None,
            'dealer_position': gex.dealer_position if gex is not None else None,
            'config': self.config.as_dict(),
        }

    def _entry_rejection(
        self,
        ticker, now, started, rules, signals, confluence, conflict, gate, new_state,
        direction, entry, reason, details, recommendations,
        sizing=None, breakdown=None, confidence=0.0
    ) -> EntryDecision:
        decision = EntryDecision(
            decision_id=str(uuid.uuid4()),
            decision_type=C.DECISION_ENTRY,
            ticker=ticker,
            action=C.ACTION_REJECT,
            confidence=round(_clamp(confidence), 2),
            quantity=0,
            price=entry.option_price,
            reason=reason,
            timestamp=now.isoformat(),
            duration_ms=0.0,
            rules_triggered=rules,
            context_snapshot=self._entry_snapshot(entry, signals, new_state, entry.gex),
            direction=direction,
            rejection_reason=reason,
            rejection_details=details,
            recommendations=recommendations,
            base_quantity=sizing.base_quantity if sizing else 0,
            signal_scores=signals.scores,
            confluence=confluence,
            conflict=conflict,
            regime_gate=gate,
            position_sizing=sizing,
            confidence_breakdown=breakdown,
            regime_state=new_state,
        )
        return self._finish(decision, started)

    # ========== HOLD ==========

    def orchestrate_hold(self, hold: HoldInput, now: Optional[datetime] = None) -> HoldDecision:
        """Re-evaluate an open position for regime drift; never gated."""
        started = time.perf_counter()
        now = as_utc(now) if now else utc_now()
        position = hold.position
        cfg = self.config.hold
        rules: List[RuleTrigger] = []
        warnings: List[Dict] = []
        pnl_pct = position.unrealized_pnl_pct

        current_regime = hold.gex.market_regime.regime if hold.gex is not None else None
        entry_regime = position.entry_market_regime
        changed = bool(entry_regime and current_regime and current_regime != entry_regime)
        impact = regime_change_impact(position.option_type, current_regime, changed)

        rules.append(RuleTrigger(
            rule_id=C.RULE_REGIME_CHANGE_CHECK,
            category=C.CATEGORY_REGIME,
            condition=f"Regime: {entry_regime or 'N/A'} -> {current_regime or 'N/A'}",
            fired=changed,
            impact=-20 if impact == 'UNFAVORABLE' else 10 if impact == 'FAVORABLE' else 0,
        ))

        if position.dte <= cfg.dte_warning:
            warnings.append({
                'type': 'DTE_WARNING',
                'severity': 'HIGH' if position.dte <= cfg.dte_high_warning else 'MEDIUM',
                'message': f"Only {position.dte} day(s) to expiration",
            })
        rules.append(RuleTrigger(
            rule_id=C.RULE_HOLD_DTE,
            category=C.CATEGORY_RISK,
            condition=f"DTE {position.dte} vs warning {cfg.dte_warning}",
            fired=position.dte <= cfg.dte_warning,
            impact=0,
            threshold=cfg.dte_warning,
        ))

        if pnl_pct < cfg.drawdown_warning_percent:
            warnings.append({
                'type': 'DRAWDOWN_WARNING',
                'severity': 'HIGH',
                'message': f"Position down {abs(pnl_pct):.1f}%",
            })
        rules.append(RuleTrigger(
            rule_id=C.RULE_HOLD_DRAWDOWN,
            category=C.CATEGORY_RISK,
            condition=f"P&L {pnl_pct:.1f}% vs {cfg.drawdown_warning_percent}%",
            fired=pnl_pct < cfg.drawdown_warning_percent,
            impact=0,
            threshold=cfg.drawdown_warning_percent,
        ))

        if impact == 'UNFAVORABLE':
            warnings.append({
                'type': 'REGIME_WARNING',
                'severity': 'MEDIUM',
                'message': f"Regime changed to {current_regime} (unfavorable for {position.option_type})",
            })

        action = C.HOLD_ACTION_HOLD
        new_stop = None
        exit_pct = None
        reason = 'Position within parameters'
        details = f"P&L: {pnl_pct:.1f}%, DTE: {position.dte}"

        if position.dte <= cfg.dte_high_warning and pnl_pct < cfg.expiry_loss_exit_percent:
            action = C.HOLD_ACTION_EXIT
            reason = 'Critical DTE with loss'
            details = 'Expiring soon with negative P&L - close to prevent total loss'
        elif impact == 'UNFAVORABLE' and pnl_pct > cfg.regime_partial_profit_percent:
            action = C.HOLD_ACTION_PARTIAL_EXIT
            exit_pct = cfg.partial_exit_percent
            reason = 'Regime turned unfavorable but in profit'
            details = 'Taking partial profits as regime changed against position'
        elif pnl_pct >= cfg.tighten_stop_profit_percent and position.partial_exits_taken == 0:
            action = C.HOLD_ACTION_TIGHTEN_STOP
            new_stop = position.entry_price
            reason = 'In profit - tightening stop to breakeven'
            details = 'Protecting gains by moving stop to entry price'

        confidence = cfg.base_confidence
        if any(w['severity'] == 'HIGH' for w in warnings):
            confidence -= cfg.high_warning_penalty
        if any(w['severity'] == 'MEDIUM' for w in warnings):
            confidence -= cfg.medium_warning_penalty
        if impact == 'FAVORABLE':
            confidence += cfg.favorable_bonus

        remaining = position.remaining_quantity
        if action == C.HOLD_ACTION_EXIT:
            quantity = remaining
        elif exit_pct is not None:
            quantity = min(remaining, math.ceil(remaining * exit_pct / 100))
        else:
            quantity = 0

        decision = HoldDecision(
            decision_id=str(uuid.uuid4()),
            decision_type=C.DECISION_HOLD,
            ticker=position.ticker,
            action=action,
            confidence=round(_clamp(confidence), 2),
            quantity=quantity,
            price=position.current_price,
            reason=reason,
            timestamp=now.isoformat(),
            duration_ms=0.0,
            rules_triggered=rules,
            context_snapshot={
                'position': position.model_dump(mode='json'),
                'gex': hold.gex.model_dump(mode='json') if hold.gex is not None else None,
                'market_context': (
                    hold.market_context.model_dump(mode='json') if hold.market_context is not None else None
                ),
                'dealer_position': hold.gex.dealer_position if hold.gex is not None else None,
                'entry_dealer_position': position.entry_dealer_position,
                'config': self.config.hold.model_dump(),
            },
            warnings=warnings,
            regime_changed=changed,
            previous_regime=entry_regime,
            current_regime=current_regime,
            regime_change_impact=impact,
            new_stop_loss=new_stop,
            exit_quantity_pct=exit_pct,
            details=details,
        )
        return self._finish(decision, started)

    # ========== EXIT ==========

    def orchestrate_exit(self, exit_input: ExitInput, now: Optional[datetime] = None) -> ExitDecision:
        """Map the exit planner's evaluation onto an exit decision."""
        started = time.perf_counter()
        now = as_utc(now) if now else utc_now()
        position = exit_input.position
        rules: List[RuleTrigger] = []

        evaluation = self.exit_planner.evaluate_position(
            position, exit_input.atr, exit_input.atr_percentile,
        )
        action = evaluation.action
        trigger = None if action == C.EXIT_ACTION_HOLD else evaluation.trigger
        urgency = evaluation.exit_urgency
        quantity = evaluation.exit_quantity
        reason = evaluation.reason
        new_stop = evaluation.new_stop_loss

        rules.append(RuleTrigger(
            rule_id=C.RULE_EXIT_TRIGGER,
            category=C.CATEGORY_EXIT,
            condition=evaluation.reason,
            fired=action != C.EXIT_ACTION_HOLD,
            impact=100 if action == C.EXIT_ACTION_CLOSE_FULL else 50 if action == C.EXIT_ACTION_CLOSE_PARTIAL else 0,
            details=evaluation.time_decay.urgency,
        ))

        gex = exit_input.gex
        if self._gex_flip_against(position, gex):
            rules.append(RuleTrigger(
                rule_id=C.RULE_GEX_FLIP_EXIT,
                category=C.CATEGORY_EXIT,
                condition=f"GEX flipped {gex.gex_flip.direction} against position",
                fired=True,
                impact=100,
                details=f"With {position.unrealized_pnl_pct:.1f}% profit",
                threshold=self.config.exit.gex_flip_profit_percent,
            ))
            if action == C.EXIT_ACTION_HOLD:
                action = C.EXIT_ACTION_CLOSE_FULL
                urgency = C.EXIT_SOON
                trigger = C.TRIGGER_GEX_FLIP
                quantity = position.remaining_quantity
                new_stop = None
                reason = 'GEX regime flip against position'

        decision = ExitDecision(
            decision_id=str(uuid.uuid4()),
            decision_type=C.DECISION_EXIT,
            ticker=position.ticker,
            action=action,
            confidence=EXIT_URGENCY_CONFIDENCE[urgency],
            quantity=quantity,
            price=position.current_price,
            reason=reason,
            timestamp=now.isoformat(),
            duration_ms=0.0,
            rules_triggered=rules,
            context_snapshot={
                'position': position.model_dump(mode='json'),
                'gex_flip': gex.gex_flip.model_dump(mode='json') if gex is not None else None,
                'atr': exit_input.atr,
                'atr_percentile': exit_input.atr_percentile,
                'config': self.config.exit.model_dump(),
            },
            urgency=urgency,
            trigger=trigger,
            exit_quantity=quantity,
            new_stop_loss=new_stop,
            unrealized_pnl=position.unrealized_pnl,
            unrealized_pnl_pct=position.unrealized_pnl_pct,
            levels=evaluation.levels.to_dict(),
            time_decay=evaluation.time_decay.to_dict(),
            details=f"Action: {action}, Urgency: {urgency}",
        )
        return self._finish(decision, started)

    def _gex_flip_against(self, position, gex) -> bool:
        if gex is None or not gex.gex_flip.detected:
            return False
        if position.unrealized_pnl_pct <= self.config.exit.gex_flip_profit_percent:
            return False
        is_long = position.option_type == 'CALL'
        trade_action = gex.gex_flip.trade_action
        if trade_action == 'BUY_PUTS':
            return is_long
        if trade_action == 'BUY_CALLS':
            return not is_long
        return False

    # ========== COMMON ==========

    def _finish(self, decision: DecisionRecord, started: float) -> DecisionRecord:
        decision.seal()
        decision.duration_ms = round((time.perf_counter() - started) * 1000, 3)
        logger.info(
            "Decision made",
            decision_id=decision.decision_id,
            decision_type=decision.decision_type,
            ticker=decision.ticker,
            action=decision.action,
            confidence=decision.confidence,
            quantity=decision.quantity,
            duration_ms=decision.duration_ms,
        )
        return decision


# ========== ENTRY POINTS ==========

def _resolve(config_overrides, config: Optional[OrchestratorConfig]) -> OrchestratorConfig:
    if config is not None:
        return config
    return merge_config(config_overrides)


def orchestrate_entry_decision(
    entry: Union[EntryInput, Mapping],
    config_overrides: Optional[Mapping] = None,
    now: Optional[datetime] = None,
    regime_state: Optional[RegimeState] = None,
    kelly_stats: Optional[KellyStats] = None,
    config: Optional[OrchestratorConfig] = None
) -> EntryDecision:
    """Validate, resolve config, evaluate an entry. Raises only on bad input or config."""
    validated = validate_entry_input(entry)
    orchestrator = DecisionOrchestrator(_resolve(config_overrides, config))
    return orchestrator.orchestrate_entry(validated, now, regime_state, kelly_stats)


def orchestrate_hold_decision(
    hold: Union[HoldInput, Mapping],
    config_overrides: Optional[Mapping] = None,
    now: Optional[datetime] = None,
    config: Optional[OrchestratorConfig] = None
) -> HoldDecision:
    validated = validate_hold_input(hold)
    return DecisionOrchestrator(_resolve(config_overrides, config)).orchestrate_hold(validated, now)


def orchestrate_exit_decision(
    exit_input: Union[ExitInput, Mapping],
    config_overrides: Optional[Mapping] = None,
    now: Optional[datetime] = None,
    config: Optional[OrchestratorConfig] = None
) -> ExitDecision:
    validated = validate_exit_input(exit_input)
    return DecisionOrchestrator(_resolve(config_overrides, config)).orchestrate_exit(validated, now)
