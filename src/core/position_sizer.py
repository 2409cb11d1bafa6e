"""
Position Sizing System

This module sizes option entries in contracts with:
- Fixed-fraction risk cap (portfolio x max risk % / stop distance per contract)
- Half-Kelly scalar from historical win rate and payoff
- VIX scalar that only shrinks size in HIGH_VOL regimes
- Market regime / dealer positioning and confluence scalars

Every scalar is capped at 1.0, so adjustments can only reduce the
risk-capped quantity. Zero contracts is a valid "do not trade" size.
"""
import math
from dataclasses import dataclass, field, asdict
from decimal import Decimal, ROUND_FLOOR
from typing import Dict, List, Optional

from src.core.config import OrchestratorConfig
from src.core.schemas import KellyStats
from src.utils.constants import VIX_HIGH_VOL
from src.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class PositionSizeCalculation:
    requested_quantity: Optional[int]
    max_by_risk: int
    base_quantity: int
    adjusted_quantity: int
    kelly_fraction: Optional[float]
    kelly_scalar: float
    vix_scalar: float
    regime_scalar: float
    confluence_scalar: float
    total_multiplier: float
    risk_amount: float
    stop_distance_per_contract: float
    estimated_risk: float
    max_loss_percent: float
    risk_cap_applied: bool
    vix_level: Optional[str] = None
    adjustments: List[str] = field(default_factory=list)
    reason: str = ''

    def to_dict(self) -> Dict:
        return asdict(self)


def kelly_fraction(stats: KellyStats, max_fraction: float) -> float:
    """Full Kelly f = W - (1 - W) / R, clamped to [0, max_fraction]."""
    win_rate = stats.win_rate
    if stats.avg_loss <= 0:
        raw = win_rate if stats.avg_win > 0 else 0.0
    elif stats.avg_win <= 0:
        raw = 0.0
    else:
        payoff = stats.avg_win / stats.avg_loss
        raw = win_rate - (1 - win_rate) / payoff
    return max(0.0, min(max_fraction, raw))


class PositionSizer:
    """Risk-capped contract sizing with reduce-only scalars."""

    def __init__(self, config: OrchestratorConfig):
        self.config = config.sizing

        # Risk parameters
        self.MAX_RISK_PER_TRADE = Decimal(str(self.config.max_risk_per_trade_percent)) / Decimal('100')
        self.CONTRACT_MULTIPLIER = self.config.contract_multiplier

    def calculate_position_size(
        self,
        portfolio_value: float,
        entry_price: float,
        stop_loss: float,
        requested_quantity: Optional[int] = None,
        kelly_stats: Optional[KellyStats] = None,
        vix: Optional[float] = None,
        vix_regime: Optional[str] = None,
        market_regime: Optional[str] = None,
        dealer_position: Optional[str] = None,
        confluence_score: Optional[float] = None
    ) -> PositionSizeCalculation:
        """
        Calculate contract quantity for an entry.

        Args:
            portfolio_value: Account value in dollars
            entry_price: Option premium per share
            stop_loss: Planned stop price per share
            requested_quantity: Size asked for by the signal, if any
            kelly_stats: Historical statistics for the current regime

        Returns:
            PositionSizeCalculation with every scalar applied
        """
        adjustments = []

        # Step 1: Risk budget and per-contract stop distance
        risk_amount = Decimal(str(portfolio_value)) * self.MAX_RISK_PER_TRADE
        stop_distance = (Decimal(str(entry_price)) - Decimal(str(stop_loss))) * self.CONTRACT_MULTIPLIER

        if stop_distance <= 0:
            logger.warning(f"Non-positive stop distance for entry {entry_price} / stop {stop_loss}")
            return self._zero(requested_quantity, risk_amount, stop_distance, "Stop at or above entry price")

        # Step 2: Risk-cap maximum
        max_by_risk = int((risk_amount / stop_distance).to_integral_value(rounding=ROUND_FLOOR))

        # Step 3: Base quantity
        if requested_quantity is not None:
            base_quantity = min(requested_quantity, max_by_risk)
            risk_cap_applied = requested_quantity > max_by_risk
            if risk_cap_applied:
                adjustments.append(f"Risk cap: {requested_quantity} -> {max_by_risk}")
        else:
            base_quantity = max_by_risk
            risk_cap_applied = False

        # Step 4: Reduce-only scalars
        kelly, kelly_scalar = self._kelly_scalar(kelly_stats)
        if kelly_scalar < 1.0:
            adjustments.append(f"Kelly: x{kelly_scalar:.2f}")

        vix_scalar, vix_level = self._vix_scalar(vix, vix_regime)
        if vix_scalar < 1.0:
            adjustments.append(f"VIX {vix_regime}/{vix_level or 'n/a'}: x{vix_scalar:.2f}")

        regime_scalar = self._regime_scalar(market_regime, dealer_position)
        if regime_scalar < 1.0:
            adjustments.append(f"Regime {market_regime}/{dealer_position}: x{regime_scalar:.2f}")

        confluence_scalar = self._confluence_scalar(confluence_score)
        if confluence_scalar < 1.0:
            adjustments.append(f"Confluence {confluence_score:.0f}: x{confluence_scalar:.2f}")

        total_multiplier = kelly_scalar * vix_scalar * regime_scalar * confluence_scalar

        # Step 5: Final quantity, clamped to [0, max_by_risk]
        adjusted = math.floor(base_quantity * total_multiplier + 1e-9)
        adjusted = max(0, min(adjusted, max_by_risk))

        estimated_risk = Decimal(adjusted) * stop_distance
        max_loss_percent = (estimated_risk / Decimal(str(portfolio_value)) * 100) if portfolio_value else Decimal('0')

        if adjusted == 0:
            reason = "Sized to zero contracts"
        elif adjusted < base_quantity:
            reason = f"Reduced {base_quantity} -> {adjusted} contracts"
        else:
            reason = f"{adjusted} contracts within risk cap"

        logger.info(
            "Position sized",
            base_quantity=base_quantity,
            adjusted_quantity=adjusted,
            max_by_risk=max_by_risk,
            multiplier=round(total_multiplier, 4),
        )

        return PositionSizeCalculation(
            requested_quantity=requested_quantity,
            max_by_risk=max_by_risk,
            base_quantity=base_quantity,
            adjusted_quantity=adjusted,
            kelly_fraction=kelly,
            kelly_scalar=round(kelly_scalar, 4),
            vix_scalar=round(vix_scalar, 4),
            regime_scalar=round(regime_scalar, 4),
            confluence_scalar=round(confluence_scalar, 4),
            total_multiplier=round(total_multiplier, 4),
            risk_amount=float(risk_amount),
            stop_distance_per_contract=float(stop_distance),
            estimated_risk=float(estimated_risk),
            max_loss_percent=round(float(max_loss_percent), 4),
            risk_cap_applied=risk_cap_applied,
            vix_level=vix_level,
            adjustments=adjustments,
            reason=reason,
        )

    def _zero(self, requested_quantity, risk_amount, stop_distance, reason) -> PositionSizeCalculation:
        return PositionSizeCalculation(
            requested_quantity=requested_quantity,
            max_by_risk=0,
            base_quantity=0,
            adjusted_quantity=0,
            kelly_fraction=None,
            kelly_scalar=1.0,
            vix_scalar=1.0,
            regime_scalar=1.0,
            confluence_scalar=1.0,
            total_multiplier=1.0,
            risk_amount=float(risk_amount),
            stop_distance_per_contract=float(stop_distance),
            estimated_risk=0.0,
            max_loss_percent=0.0,
            risk_cap_applied=requested_quantity is not None and requested_quantity > 0,
            reason=reason,
        )

    def _kelly_scalar(self, stats: Optional[KellyStats]):
        """Half-Kelly relative to the baseline risk fraction, within [floor, 1]."""
        if not self.config.enable_kelly_sizing:
            return None, 1.0
        if stats is None or stats.total_trades < self.config.kelly_min_trades:
            return None, self.config.default_kelly_scalar

        full = kelly_fraction(stats, self.config.kelly_max_fraction)
        half = full / 2
        scalar = half / self.config.kelly_baseline_fraction
        scalar = max(self.config.kelly_floor, min(1.0, scalar))
        return round(full, 4), scalar

    def vix_band(self, vix: Optional[float]) -> Optional[Dict]:
        if vix is None:
            return None
        for band in self.config.vix_bands:
            upper = band.get('below')
            if upper is None or vix < upper:
                return band
        return None

    def _vix_scalar(self, vix: Optional[float], vix_regime: Optional[str]):
        band = self.vix_band(vix)
        level = band['label'] if band else None
        if not self.config.enable_vix_scaling or vix_regime != VIX_HIGH_VOL:
            return 1.0, level
        scalar = self.config.high_vol_scalar
        if band is not None:
            scalar = min(scalar, float(band.get('scalar', 1.0)))
        return min(1.0, scalar), level

    def _regime_scalar(self, market_regime: Optional[str], dealer_position: Optional[str]) -> float:
        if not self.config.enable_regime_scaling:
            return 1.0
        regime_mult = self.config.regime_multipliers.get(market_regime, 1.0) if market_regime else 1.0
        dealer_mult = self.config.dealer_multipliers.get(dealer_position, 1.0) if dealer_position else 1.0
        return max(0.0, min(1.0, regime_mult * dealer_mult))

    def _confluence_scalar(self, confluence_score: Optional[float]) -> float:
        if not self.config.enable_confluence_scaling or confluence_score is None:
            return 1.0
        return max(0.0, min(1.0, 0.5 + confluence_score / 100.0))
