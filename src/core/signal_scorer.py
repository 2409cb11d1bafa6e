"""
Signal normalization and scoring.
Converts the primary trade signal and each optional context source into a
direction (LONG/SHORT/NEUTRAL) and a 0-100 strength.

Optional sources are carried as tagged readings:
- Present(source, payload): the source reported, even if its read is neutral
- Absent(source): the source did not report; it yields no score at all
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from src.core.config import OrchestratorConfig
from src.core.schemas import EntryInput
from src.utils.constants import (
    LONG, SHORT, NEUTRAL,
    SOURCE_TRADE_SIGNAL, SOURCE_GEX, SOURCE_MTF,
    SOURCE_MARKET_CONTEXT, SOURCE_POSITIONING, OPTIONAL_SOURCES,
    VIX_HIGH_VOL,
)
from src.utils.clock import as_utc
from src.utils.logging import get_logger

logger = get_logger(__name__)

_BIAS_TO_DIRECTION = {
    'BULLISH': LONG,
    'BEARISH': SHORT,
    'NEUTRAL': NEUTRAL,
    'MIXED': NEUTRAL,
}


@dataclass(frozen=True)
class Present:
    """A source that reported."""
    source: str
    payload: Any
    observed_at: Optional[datetime] = None


@dataclass(frozen=True)
class Absent:
    """A source that did not report."""
    source: str


SourceReading = Union[Present, Absent]


@dataclass
class SignalScore:
    """Normalized contribution of one source."""
    source: str
    direction: str
    score: float
    weight: float
    stale: bool = False
    reason: str = ''

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class NormalizedSignals:
    primary: SignalScore
    scores: List[SignalScore]
    absent_sources: List[str] = field(default_factory=list)

    def get(self, source: str) -> Optional[SignalScore]:
        for s in self.scores:
            if s.source == source:
                return s
        return None

    def to_dict(self) -> Dict:
        return {
            'scores': [s.to_dict() for s in self.scores],
            'absent_sources': list(self.absent_sources),
        }


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def trade_signal_direction(action: str, option_type: Optional[str]) -> str:
    """BUY a call or SELL a put is long; BUY a put or SELL a call is short."""
    if action == 'CLOSE':
        return NEUTRAL
    bullish = action == 'BUY'
    if option_type == 'PUT':
        bullish = not bullish
    return LONG if bullish else SHORT


def collect_readings(entry: EntryInput) -> Dict[str, SourceReading]:
    """Tag every optional source on an entry input as Present or Absent."""
    payloads = {
        SOURCE_GEX: (entry.gex, entry.gex.calculated_at if entry.gex else None),
        SOURCE_MTF: (entry.mtf_trend, entry.mtf_trend.timestamp if entry.mtf_trend else None),
        SOURCE_MARKET_CONTEXT: (
            entry.market_context,
            entry.market_context.timestamp if entry.market_context else None,
        ),
        SOURCE_POSITIONING: (
            entry.positioning,
            entry.positioning.timestamp if entry.positioning else None,
        ),
    }
    readings: Dict[str, SourceReading] = {}
    for source in OPTIONAL_SOURCES:
        payload, observed_at = payloads[source]
        readings[source] = Present(source, payload, observed_at) if payload is not None else Absent(source)
    return readings


class SignalScorer:
    """
    Scores each reporting source on a common 0-100 scale.

    Scoring Process:
    1. Map the primary trade signal to a direction and base score
    2. Normalize every Present optional source; skip Absent ones
    3. Down-weight sources older than the staleness window
    """

    def __init__(self, config: OrchestratorConfig):
        self.config = config.scoring
        self.WEIGHTS = dict(self.config.source_weights)
        self.BIAS_STRENGTH = dict(self.config.bias_strength_factors)

    def score_entry(self, entry: EntryInput, now: datetime) -> NormalizedSignals:
        """Score the primary signal plus every reporting context source."""
        primary = self._score_trade_signal(entry)
        scores = [primary]
        absent = []

        for source, reading in collect_readings(entry).items():
            if isinstance(reading, Absent):
                absent.append(source)
                continue
            score = self.score_reading(reading)
            if reading.observed_at is not None and self._is_stale(reading.observed_at, now):
                score.weight = round(score.weight * self.config.stale_weight_factor, 4)
                score.stale = True
                score.reason += ' (stale)'
            scores.append(score)

        logger.info(
            "Signals scored",
            ticker=entry.signal.ticker,
            present=[s.source for s in scores],
            absent=absent,
        )
        return NormalizedSignals(primary=primary, scores=scores, absent_sources=absent)

    def score_reading(self, reading: Present) -> SignalScore:
        """Normalize a single present source."""
        handlers = {
            SOURCE_GEX: self._score_gex,
            SOURCE_MTF: self._score_mtf,
            SOURCE_MARKET_CONTEXT: self._score_market_context,
            SOURCE_POSITIONING: self._score_positioning,
        }
        return handlers[reading.source](reading.payload)

    def _weight(self, source: str) -> float:
        return float(self.WEIGHTS.get(source, 0.5))

    def _is_stale(self, observed_at: datetime, now: datetime) -> bool:
        age_minutes = (as_utc(now) - as_utc(observed_at)).total_seconds() / 60
        return age_minutes > self.config.max_source_age_minutes

    def _score_trade_signal(self, entry: EntryInput) -> SignalScore:
        signal = entry.signal
        direction = trade_signal_direction(signal.action, signal.option_type)
        return SignalScore(
            source=SOURCE_TRADE_SIGNAL,
            direction=direction,
            score=_clamp(self.config.trade_signal_base_score),
            weight=self._weight(SOURCE_TRADE_SIGNAL),
            reason=f"{signal.action} {signal.option_type or ''}".strip(),
        )

    def _score_gex(self, gex) -> SignalScore:
        direction = _BIAS_TO_DIRECTION[gex.summary.overall_bias]
        strength = self.BIAS_STRENGTH.get(gex.summary.bias_strength, self.BIAS_STRENGTH.get('NONE', 0.5))
        return SignalScore(
            source=SOURCE_GEX,
            direction=direction,
            score=round(_clamp(gex.market_regime.confidence * strength), 2),
            weight=self._weight(SOURCE_GEX),
            reason=f"{gex.summary.overall_bias} ({gex.summary.bias_strength}), {gex.dealer_position}",
        )

    def _score_mtf(self, mtf) -> SignalScore:
        return SignalScore(
            source=SOURCE_MTF,
            direction=mtf.bias,
            score=round(_clamp(mtf.alignment_score), 2),
            weight=self._weight(SOURCE_MTF),
            reason=f"{mtf.bias} alignment {mtf.alignment_score:.0f}",
        )

    def _score_market_context(self, ctx) -> SignalScore:
        direction = _BIAS_TO_DIRECTION[ctx.market_bias]
        score = 50.0
        if (ctx.or_breakout == 'ABOVE' and direction == LONG) or \
                (ctx.or_breakout == 'BELOW' and direction == SHORT):
            score += self.config.context_breakout_bonus
        if ctx.vix_regime == VIX_HIGH_VOL:
            score -= self.config.context_high_vol_penalty
        return SignalScore(
            source=SOURCE_MARKET_CONTEXT,
            direction=direction,
            score=_clamp(score),
            weight=self._weight(SOURCE_MARKET_CONTEXT),
            reason=f"{ctx.market_bias}, VIX {ctx.vix_regime}, OR {ctx.or_breakout or 'none'}",
        )

    def _score_positioning(self, pos) -> SignalScore:
        direction = _BIAS_TO_DIRECTION[pos.pc_sentiment]
        return SignalScore(
            source=SOURCE_POSITIONING,
            direction=direction,
            score=round(_clamp(pos.confidence), 2),
            weight=self._weight(SOURCE_POSITIONING),
            reason=f"P/C {pos.pc_sentiment}, dealers {pos.dealer_position}",
        )
