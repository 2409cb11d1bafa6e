"""
Typed inputs for the decision orchestrator.

Raw payloads are validated into these models at the boundary
(see src.core.validation); the decision functions only ever see
well-formed instances.
"""
from datetime import date, datetime
from typing import Dict, Literal, Optional

from pydantic import BaseModel, Field

from src.utils.constants import LONG, SHORT

Direction = Literal['LONG', 'SHORT', 'NEUTRAL']
DealerPosition = Literal['LONG_GAMMA', 'SHORT_GAMMA', 'NEUTRAL']
VixRegime = Literal['LOW_VOL', 'NORMAL', 'HIGH_VOL']


class _Input(BaseModel):
    class Config:
        frozen = True
        extra = 'ignore'


class TradeSignal(_Input):
    """Primary signal that asks for an entry."""
    ticker: str = Field(min_length=1, max_length=10)
    action: Literal['BUY', 'SELL', 'CLOSE']
    underlying: Optional[str] = None
    strike: Optional[float] = Field(None, gt=0)
    expiration: Optional[date] = None
    option_type: Optional[Literal['CALL', 'PUT']] = None
    quantity: Optional[int] = Field(None, ge=1)
    source: str = 'tradingview'
    raw_payload: Dict = {}
    received_at: Optional[datetime] = None


class GexFlip(_Input):
    detected: bool = False
    direction: Optional[Literal['LONG_TO_SHORT', 'SHORT_TO_LONG']] = None
    trade_action: Optional[str] = None


class MarketRegimeAnalysis(_Input):
    regime: str = 'UNKNOWN'
    confidence: float = Field(0, ge=0, le=100)


class GexSummary(_Input):
    overall_bias: Literal['BULLISH', 'BEARISH', 'NEUTRAL'] = 'NEUTRAL'
    bias_strength: str = 'NONE'
    support: Optional[float] = None
    resistance: Optional[float] = None
    zero_gamma: Optional[float] = None
    max_pain: Optional[float] = None


class GexSignalBundle(_Input):
    """Dealer-positioning view derived from an options chain."""
    ticker: str
    expiration: Optional[date] = None
    underlying_price: Optional[float] = None
    net_gex: float = 0.0
    dealer_position: DealerPosition = 'NEUTRAL'
    previous_dealer_position: Optional[DealerPosition] = None
    gex_flip: GexFlip = GexFlip()
    market_regime: MarketRegimeAnalysis = MarketRegimeAnalysis()
    summary: GexSummary = GexSummary()
    pc_ratio: Optional[float] = None
    calculated_at: Optional[datetime] = None


class MarketContext(_Input):
    ticker: Optional[str] = None
    vix: Optional[float] = Field(None, ge=0)
    vix_regime: VixRegime = 'NORMAL'
    atr: Optional[float] = Field(None, ge=0)
    atr_percentile: Optional[float] = Field(None, ge=0, le=100)
    spy_trend: Optional[str] = None
    market_bias: Literal['BULLISH', 'BEARISH', 'MIXED'] = 'MIXED'
    or_breakout: Optional[Literal['ABOVE', 'BELOW']] = None
    is_market_open: bool = True
    timestamp: Optional[datetime] = None


class MtfTrend(_Input):
    ticker: Optional[str] = None
    bias: Direction = 'NEUTRAL'
    alignment_score: float = Field(0, ge=0, le=100)
    confluence_count: int = Field(0, ge=0)
    timeframe_bias: Dict[str, str] = {}
    timestamp: Optional[datetime] = None


class Positioning(_Input):
    ticker: Optional[str] = None
    max_pain: Optional[float] = None
    max_pain_distance: Optional[float] = None
    pc_ratio: Optional[float] = Field(None, ge=0)
    pc_sentiment: Literal['BULLISH', 'BEARISH', 'NEUTRAL'] = 'NEUTRAL'
    dealer_position: DealerPosition = 'NEUTRAL'
    confidence: float = Field(0, ge=0, le=100)
    timestamp: Optional[datetime] = None


class EntryInput(_Input):
    signal: TradeSignal
    gex: Optional[GexSignalBundle] = None
    market_context: Optional[MarketContext] = None
    mtf_trend: Optional[MtfTrend] = None
    positioning: Optional[Positioning] = None
    portfolio_value: float = Field(gt=0)
    option_price: float = Field(gt=0)


class PositionSnapshot(_Input):
    """
    Open option position as seen by Hold/Exit evaluation.

    quantity is the opened size; partial_exits_taken counts contracts
    already closed, so the live size is quantity - partial_exits_taken.
    """
    id: str
    ticker: str
    symbol: Optional[str] = None
    option_type: Literal['CALL', 'PUT']
    entry_price: float = Field(gt=0)
    current_price: float = Field(ge=0)
    quantity: int = Field(ge=0)
    partial_exits_taken: int = Field(0, ge=0)
    highest_price_since_entry: Optional[float] = Field(None, ge=0)
    dte: int
    hours_in_trade: float = Field(0, ge=0)
    unrealized_pnl: float = 0.0
    unrealized_pnl_pct: float = 0.0
    entry_market_regime: Optional[str] = None
    entry_dealer_position: Optional[DealerPosition] = None
    planned_stop_loss: Optional[float] = Field(None, ge=0)
    planned_target1: Optional[float] = Field(None, gt=0)
    planned_target2: Optional[float] = Field(None, gt=0)
    trailing_stop_pct: Optional[float] = Field(None, gt=0, lt=100)

    @property
    def direction(self) -> str:
        return LONG if self.option_type == 'CALL' else SHORT

    @property
    def remaining_quantity(self) -> int:
        return max(0, self.quantity - self.partial_exits_taken)


class HoldInput(_Input):
    position: PositionSnapshot
    gex: Optional[GexSignalBundle] = None
    market_context: Optional[MarketContext] = None


class ExitInput(_Input):
    position: PositionSnapshot
    gex: Optional[GexSignalBundle] = None
    atr: Optional[float] = Field(None, ge=0)
    atr_percentile: float = Field(50, ge=0, le=100)


class KellyStats(_Input):
    """Historical trade statistics feeding Kelly sizing."""
    win_rate: float = Field(0, ge=0, le=1)
    avg_win: float = Field(0, ge=0)
    avg_loss: float = Field(0, ge=0)
    total_trades: int = Field(0, ge=0)
