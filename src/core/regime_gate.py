"""
Regime Stability Gate

Per-ticker state machine over the prevailing market regime:
- STABLE: regime unchanged and no cooldown pending
- FLIPPED: this observation changed the regime; cooldown starts
- COOLING_DOWN: regime changed recently and the cooldown has not expired

Only new entries are gated. Hold and Exit never consult this module.
The gate is pure: it takes the prior state and returns the next one;
persisting it is the caller's job.
"""
from dataclasses import dataclass, field, asdict, replace
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from src.core.config import OrchestratorConfig
from src.utils.clock import as_utc
from src.utils.constants import (
    REGIME_STABLE, REGIME_FLIPPED, REGIME_COOLING_DOWN,
    UNKNOWN_REGIME, VIX_NORMAL,
)


@dataclass(frozen=True)
class RegimeObservation:
    regime: str
    confidence: float
    dealer_position: Optional[str] = None
    vix_regime: Optional[str] = None
    market_regime: Optional[str] = None


@dataclass(frozen=True)
class RegimeState:
    """Persisted regime record for one ticker."""
    ticker: str
    current_regime: str
    previous_regime: Optional[str]
    regime_confidence: float
    regime_since: datetime
    last_observed_at: datetime
    last_flip_at: Optional[datetime] = None
    cooldown_until: Optional[datetime] = None
    consecutive_readings: int = 1
    flip_count: int = 0
    market_regime: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        for key in ('regime_since', 'last_observed_at', 'last_flip_at', 'cooldown_until'):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


@dataclass
class GateResult:
    state: str
    gated: bool
    can_enter: bool
    confidence_penalty: float
    stability_score: float
    block_reasons: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    cooldown_remaining_seconds: float = 0.0

    @property
    def is_stable(self) -> bool:
        return self.state == REGIME_STABLE

    @property
    def block_reason(self) -> Optional[str]:
        return '; '.join(self.block_reasons) if self.block_reasons else None

    def to_dict(self) -> dict:
        data = asdict(self)
        data['is_stable'] = self.is_stable
        return data


def classify_regime(dealer_position: Optional[str], vix_regime: Optional[str]) -> str:
    """Regime label from dealer positioning and VIX regime."""
    dealer = dealer_position or UNKNOWN_REGIME
    vix = vix_regime or VIX_NORMAL
    return f"{dealer}:{vix}"


def observation_from(gex, market_context) -> Optional[RegimeObservation]:
    """Build a regime reading; None when no gamma-exposure bundle reported."""
    if gex is None:
        return None
    vix_regime = market_context.vix_regime if market_context is not None else None
    return RegimeObservation(
        regime=classify_regime(gex.dealer_position, vix_regime),
        confidence=round(gex.market_regime.confidence / 100.0, 4),
        dealer_position=gex.dealer_position,
        vix_regime=vix_regime,
        market_regime=gex.market_regime.regime,
    )


def advance_state(
    prior: Optional[RegimeState],
    ticker: str,
    observation: RegimeObservation,
    now: datetime,
    cooldown_seconds: int
) -> Tuple[RegimeState, bool]:
    """
    Apply one observation to the prior record.

    Returns the new record and whether this observation flipped the regime.
    cooldown_until never moves backward and is never before last_flip_at.
    """
    now = as_utc(now)
    if prior is None:
        return RegimeState(
            ticker=ticker,
            current_regime=observation.regime,
            previous_regime=None,
            regime_confidence=observation.confidence,
            regime_since=now,
            last_observed_at=now,
            market_regime=observation.market_regime,
        ), False

    if observation.regime == prior.current_regime:
        return replace(
            prior,
            regime_confidence=observation.confidence,
            last_observed_at=now,
            consecutive_readings=prior.consecutive_readings + 1,
            market_regime=observation.market_regime,
        ), False

    new_cooldown = now + timedelta(seconds=cooldown_seconds)
    old_cooldown = as_utc(prior.cooldown_until)
    if old_cooldown is not None and old_cooldown > new_cooldown:
        new_cooldown = old_cooldown

    return replace(
        prior,
        previous_regime=prior.current_regime,
        current_regime=observation.regime,
        regime_confidence=observation.confidence,
        regime_since=now,
        last_observed_at=now,
        last_flip_at=now,
        cooldown_until=new_cooldown,
        consecutive_readings=1,
        flip_count=prior.flip_count + 1,
        market_regime=observation.market_regime,
    ), True


def gate_state(state: RegimeState, flipped: bool, now: datetime) -> str:
    if flipped:
        return REGIME_FLIPPED
    cooldown_until = as_utc(state.cooldown_until)
    if cooldown_until is not None and as_utc(now) < cooldown_until:
        return REGIME_COOLING_DOWN
    return REGIME_STABLE


def stability_score(state: RegimeState, now: datetime, cooldown_seconds: int) -> float:
    """
    0-100 durability score, reported only:
    readings (max 30) + time in regime (max 30) + confidence (max 40)
    minus a penalty that decays linearly over the cooldown (max 30).
    """
    now = as_utc(now)
    score = min(30.0, state.consecutive_readings * 10.0)
    seconds_in_regime = max(0.0, (now - as_utc(state.regime_since)).total_seconds())
    score += min(30.0, seconds_in_regime / 600.0 * 30.0)
    score += state.regime_confidence * 40.0

    cooldown_until = as_utc(state.cooldown_until)
    if cooldown_until is not None and now < cooldown_until and cooldown_seconds > 0:
        remaining = (cooldown_until - now).total_seconds()
        score -= min(1.0, remaining / cooldown_seconds) * 30.0

    return round(max(0.0, min(100.0, score)), 2)


def evaluate_regime(
    prior: Optional[RegimeState],
    ticker: str,
    observation: RegimeObservation,
    now: datetime,
    config: OrchestratorConfig
) -> Tuple[RegimeState, GateResult]:
    """Advance the regime record and decide whether an entry may proceed."""
    regime_config = config.regime
    cooldown_seconds = regime_config.regime_flip_cooldown_seconds

    state, flipped = advance_state(prior, ticker, observation, now, cooldown_seconds)
    current = gate_state(state, flipped, now)

    cooldown_until = as_utc(state.cooldown_until)
    remaining = 0.0
    if cooldown_until is not None:
        remaining = max(0.0, (cooldown_until - as_utc(now)).total_seconds())

    reasons = []
    recommendations = []
    if regime_config.require_stable_regime and current != REGIME_STABLE:
        if flipped:
            reasons.append(f"Regime flipped from {state.previous_regime} to {state.current_regime}")
        else:
            reasons.append(f"Regime flip cooldown: {remaining:.0f}s remaining")
        recommendations.append(f"Wait {remaining / 60:.0f} minutes for regime stabilization")
    if state.regime_confidence < regime_config.min_regime_confidence:
        reasons.append(
            f"Regime confidence {state.regime_confidence:.2f} below "
            f"{regime_config.min_regime_confidence:.2f}"
        )
        recommendations.append("Wait for a higher-confidence regime reading")

    gated = bool(reasons)
    penalize = regime_config.gate_mode == 'PENALIZE'

    return state, GateResult(
        state=current,
        gated=gated,
        can_enter=not gated or penalize,
        confidence_penalty=regime_config.gate_penalty if gated and penalize else 0.0,
        stability_score=stability_score(state, now, cooldown_seconds),
        block_reasons=reasons,
        recommendations=recommendations,
        cooldown_remaining_seconds=round(remaining, 1),
    )
