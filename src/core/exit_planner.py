"""
Exit Planning System

This module implements volatility-aware exit management including:
- ATR-based stop losses widened/tightened by ATR percentile
- Reward:risk scaled profit targets with partial exit quantities
- Volatility-adjusted trailing stops
- Time-decay urgency as expiration approaches

Live evaluation checks, in strict priority order: stop breach, critical
time decay, trailing stop, target 1, target 2, then hold.
"""
import math
from dataclasses import dataclass, field, asdict
from typing import Dict, Optional

from src.core.config import OrchestratorConfig
from src.core.schemas import PositionSnapshot
from src.utils.constants import (
    EXIT_ACTION_HOLD, EXIT_ACTION_CLOSE_PARTIAL, EXIT_ACTION_CLOSE_FULL,
    URGENCY_NONE, URGENCY_MEDIUM, URGENCY_HIGH, URGENCY_CRITICAL,
    EXIT_IMMEDIATE, EXIT_SOON, EXIT_OPTIONAL,
    TRIGGER_STOP_LOSS, TRIGGER_TIME_DECAY, TRIGGER_TRAILING_STOP,
    TRIGGER_TARGET_1, TRIGGER_TARGET_2, TRIGGER_NONE,
)
from src.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ExitLevels:
    stop_loss: float
    stop_loss_percent: float
    target1: float
    target1_percent: float
    target2: float
    target2_percent: float
    trailing_stop_percent: float
    reasoning: str = ''

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class ExitPlan:
    stop_loss: float
    stop_loss_percent: float
    target1: float
    target1_percent: float
    target1_exit_quantity: int
    target2: float
    target2_percent: float
    target2_exit_quantity: int
    trailing_stop_percent: float
    max_hold_hours: float
    reasoning: str = ''

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class TimeDecayUrgency:
    urgency: str
    action: str
    target1_multiplier: float
    target2_multiplier: float

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class ExitEvaluation:
    action: str
    exit_quantity: int
    reason: str
    trigger: str
    exit_urgency: str
    new_stop_loss: Optional[float]
    levels: ExitLevels
    time_decay: TimeDecayUrgency
    adjusted_target1_percent: float = 0.0
    adjusted_target2_percent: float = 0.0
    trailing_stop_price: Optional[float] = None
    details: Dict = field(default_factory=dict)

    def to_dict(self) -> Dict:
        data = asdict(self)
        return data


def _round(value: float) -> float:
    return round(value, 2)


class ExitPlanner:
    """Derives exit levels and evaluates live positions against them."""

    def __init__(self, config: OrchestratorConfig):
        self.config = config.exit

    # ========== LEVELS ==========

    def calculate_exit_levels(
        self,
        entry_price: float,
        atr: Optional[float],
        atr_percentile: Optional[float] = 50.0
    ) -> ExitLevels:
        """
        Compute stop, targets and trailing stop from ATR.

        Falls back to fixed default levels when ATR stops are disabled
        or no usable ATR is available.
        """
        if not self.config.enable_atr_stops or not atr or atr <= 0 or entry_price <= 0:
            return self.default_exit_levels(entry_price)

        percentile = 50.0 if atr_percentile is None else atr_percentile
        notes = []

        # Step 1: Base stop distance from ATR
        stop_pct = atr * self.config.atr_multiplier_for_stop / entry_price * 100
        notes.append(f"base stop {stop_pct:.1f}%")

        # Step 2: Volatility percentile adjustment
        if percentile > 80:
            stop_pct *= 1.3
            notes.append("widened x1.3 (ATR > 80th pct)")
        elif percentile > 60:
            stop_pct *= 1.15
            notes.append("widened x1.15 (ATR > 60th pct)")
        elif percentile < 20:
            stop_pct *= 0.85
            notes.append("tightened x0.85 (ATR < 20th pct)")

        # Step 3: Clamp
        clamped = max(self.config.min_stop_percent, min(self.config.max_stop_percent, stop_pct))
        if clamped != stop_pct:
            notes.append(f"clamped to {clamped:.1f}%")
        stop_pct = clamped

        # Step 4: Targets at 1.5R / 3R under the default 2:1 ratio
        rr = self.config.reward_risk_ratio
        t1_pct = stop_pct * rr * self.config.target1_reward_fraction
        t2_pct = stop_pct * rr * self.config.target2_reward_fraction
        if percentile > 80:
            t1_pct *= 1.2
            t2_pct *= 1.3
        elif percentile < 20:
            t1_pct *= 0.8
            t2_pct *= 0.75

        # Step 5: Trailing stop
        trail_pct = self.config.trail_percent
        if percentile > 70:
            trail_pct *= 1.25
        elif percentile < 30:
            trail_pct *= 0.85

        return ExitLevels(
            stop_loss=_round(entry_price * (1 - stop_pct / 100)),
            stop_loss_percent=_round(stop_pct),
            target1=_round(entry_price * (1 + t1_pct / 100)),
            target1_percent=_round(t1_pct),
            target2=_round(entry_price * (1 + t2_pct / 100)),
            target2_percent=_round(t2_pct),
            trailing_stop_percent=_round(trail_pct),
            reasoning=f"ATR {atr:.2f} @ {percentile:.0f}th pct: " + ", ".join(notes),
        )

    def default_exit_levels(self, entry_price: float) -> ExitLevels:
        stop_pct = self.config.default_stop_percent
        t1_pct = self.config.default_target1_percent
        t2_pct = self.config.default_target2_percent
        return ExitLevels(
            stop_loss=_round(entry_price * (1 - stop_pct / 100)),
            stop_loss_percent=_round(stop_pct),
            target1=_round(entry_price * (1 + t1_pct / 100)),
            target1_percent=_round(t1_pct),
            target2=_round(entry_price * (1 + t2_pct / 100)),
            target2_percent=_round(t2_pct),
            trailing_stop_percent=_round(self.config.trail_percent),
            reasoning='Default fixed exit levels',
        )

    def target1_quantity(self, quantity: int) -> int:
        return math.ceil(quantity * self.config.target1_exit_percent / 100)

    def target2_quantity(self, quantity: int) -> int:
        return math.ceil(quantity * self.config.target2_exit_percent / 100)

    def build_exit_plan(
        self,
        entry_price: float,
        quantity: int,
        atr: Optional[float],
        atr_percentile: Optional[float] = 50.0
    ) -> ExitPlan:
        """Exit plan for a prospective entry of `quantity` contracts."""
        levels = self.calculate_exit_levels(entry_price, atr, atr_percentile)
        return ExitPlan(
            stop_loss=levels.stop_loss,
            stop_loss_percent=levels.stop_loss_percent,
            target1=levels.target1,
            target1_percent=levels.target1_percent,
            target1_exit_quantity=self.target1_quantity(quantity),
            target2=levels.target2,
            target2_percent=levels.target2_percent,
            target2_exit_quantity=self.target2_quantity(quantity),
            trailing_stop_percent=levels.trailing_stop_percent,
            max_hold_hours=self.config.max_hold_hours,
            reasoning=levels.reasoning,
        )

    def levels_for_position(
        self,
        position: PositionSnapshot,
        atr: Optional[float],
        atr_percentile: Optional[float]
    ) -> ExitLevels:
        """Planned levels stored on the position win over recomputed ones."""
        computed = self.calculate_exit_levels(position.entry_price, atr, atr_percentile)
        entry = position.entry_price

        stop = position.planned_stop_loss if position.planned_stop_loss is not None else computed.stop_loss
        t1 = position.planned_target1 if position.planned_target1 is not None else computed.target1
        t2 = position.planned_target2 if position.planned_target2 is not None else computed.target2
        trail = position.trailing_stop_pct if position.trailing_stop_pct is not None else computed.trailing_stop_percent

        planned = any(v is not None for v in (
            position.planned_stop_loss, position.planned_target1,
            position.planned_target2, position.trailing_stop_pct,
        ))
        return ExitLevels(
            stop_loss=_round(stop),
            stop_loss_percent=_round((entry - stop) / entry * 100),
            target1=_round(t1),
            target1_percent=_round((t1 / entry - 1) * 100),
            target2=_round(t2),
            target2_percent=_round((t2 / entry - 1) * 100),
            trailing_stop_percent=_round(trail),
            reasoning='Planned levels from entry' if planned else computed.reasoning,
        )

    # ========== TIME DECAY ==========

    def time_decay_urgency(self, dte: int, pnl_pct: float) -> TimeDecayUrgency:
        """Urgency from days to expiration and unrealized P&L percent."""
        if not self.config.enable_time_decay_urgency or dte > self.config.urgent_dte:
            return TimeDecayUrgency(URGENCY_NONE, 'Normal management', 1.0, 1.0)

        if dte > self.config.critical_dte:
            if pnl_pct < 0:
                return TimeDecayUrgency(
                    URGENCY_HIGH, 'Consider closing - losing position near expiration', 0.8, 0.7,
                )
            return TimeDecayUrgency(URGENCY_MEDIUM, 'Tighten targets - expiration approaching', 0.8, 0.7)

        if pnl_pct > 10:
            return TimeDecayUrgency(URGENCY_HIGH, 'Take profits immediately - expiration risk', 0.5, 0.5)
        if pnl_pct > 0:
            return TimeDecayUrgency(
                URGENCY_CRITICAL, 'Close position - any profit is good with 1 DTE', 0.3, 0.3,
            )
        return TimeDecayUrgency(
            URGENCY_CRITICAL, 'Close losing position immediately - will likely expire worthless', 0.0, 0.0,
        )

    # ========== LIVE EVALUATION ==========

    def evaluate_position(
        self,
        position: PositionSnapshot,
        atr: Optional[float] = None,
        atr_percentile: Optional[float] = 50.0
    ) -> ExitEvaluation:
        """
        Decide whether to hold, partially close or fully close a position.

        Args:
            position: Live position snapshot
            atr: Current ATR of the underlying, if known
            atr_percentile: Current ATR percentile rank

        Returns:
            ExitEvaluation with the action, quantity, reason and levels
        """
        levels = self.levels_for_position(position, atr, atr_percentile)
        decay = self.time_decay_urgency(position.dte, position.unrealized_pnl_pct)
        adj_t1 = _round(levels.target1_percent * decay.target1_multiplier)
        adj_t2 = _round(levels.target2_percent * decay.target2_multiplier)
        remaining = position.remaining_quantity
        pnl_pct = position.unrealized_pnl_pct
        price = position.current_price
        entry = position.entry_price

        def result(action, qty, reason, trigger, urgency, new_stop, trail_price=None):
            return ExitEvaluation(
                action=action,
                exit_quantity=max(0, min(qty, remaining)),
                reason=reason,
                trigger=trigger,
                exit_urgency=urgency,
                new_stop_loss=new_stop,
                levels=levels,
                time_decay=decay,
                adjusted_target1_percent=adj_t1,
                adjusted_target2_percent=adj_t2,
                trailing_stop_price=trail_price,
                details={'remaining_quantity': remaining, 'pnl_pct': pnl_pct, 'dte': position.dte},
            )

        if remaining == 0:
            return result(EXIT_ACTION_HOLD, 0, 'No open contracts remaining', TRIGGER_NONE,
                          EXIT_OPTIONAL, levels.stop_loss)

        # 1. Stop loss
        if price <= levels.stop_loss:
            return result(
                EXIT_ACTION_CLOSE_FULL, remaining,
                f"Stop loss hit: {price:.2f} <= {levels.stop_loss:.2f}",
                TRIGGER_STOP_LOSS, EXIT_IMMEDIATE, None,
            )

        # 2. Critical time decay
        if decay.urgency == URGENCY_CRITICAL:
            return result(
                EXIT_ACTION_CLOSE_FULL, remaining,
                f"Time decay: {decay.action} (DTE {position.dte})",
                TRIGGER_TIME_DECAY, EXIT_IMMEDIATE, None,
            )

        # 3. Trailing stop, armed once a partial exit has been taken
        highest = position.highest_price_since_entry
        if position.partial_exits_taken > 0 and highest is not None and highest > entry:
            trail_price = _round(highest * (1 - levels.trailing_stop_percent / 100))
            if price <= trail_price:
                return result(
                    EXIT_ACTION_CLOSE_FULL, remaining,
                    f"Trailing stop hit: {price:.2f} <= {trail_price:.2f} "
                    f"({levels.trailing_stop_percent:.1f}% off high {highest:.2f})",
                    TRIGGER_TRAILING_STOP, EXIT_IMMEDIATE, None, trail_price,
                )

        target_urgency = EXIT_IMMEDIATE if decay.urgency == URGENCY_HIGH else EXIT_SOON
        t1_qty = self.target1_quantity(position.quantity)

        # 4. Target 1: first partial, stop to breakeven
        if pnl_pct >= adj_t1 and position.partial_exits_taken == 0:
            qty = t1_qty if self.config.enable_partial_exits else remaining
            action = EXIT_ACTION_CLOSE_PARTIAL if qty < remaining else EXIT_ACTION_CLOSE_FULL
            return result(
                action, qty,
                f"Target 1 reached: {pnl_pct:.1f}% >= {adj_t1:.1f}%",
                TRIGGER_TARGET_1, target_urgency, _round(entry),
            )

        # 5. Target 2: close most of the remainder, raise the stop
        if pnl_pct >= adj_t2 and position.partial_exits_taken >= t1_qty:
            if self.config.enable_partial_exits:
                qty = math.ceil(remaining * self.config.target2_remaining_exit_percent / 100)
            else:
                qty = remaining
            action = EXIT_ACTION_CLOSE_PARTIAL if qty < remaining else EXIT_ACTION_CLOSE_FULL
            new_stop = _round(entry * (1 + levels.target1_percent / 100 * 0.5))
            return result(
                action, qty,
                f"Target 2 reached: {pnl_pct:.1f}% >= {adj_t2:.1f}%",
                TRIGGER_TARGET_2, target_urgency, new_stop,
            )

        return result(
            EXIT_ACTION_HOLD, 0,
            f"No exit trigger ({pnl_pct:.1f}% P&L, DTE {position.dte}, {decay.urgency} urgency)",
            TRIGGER_NONE, EXIT_OPTIONAL, levels.stop_loss,
        )
