"""Shared fixtures: in-memory database, fake market data, payload builders."""
import os

# Must be set before config.settings is first read
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENV", "test")

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from src.core.errors import MarketDataError
from src.models.base import Base
from src.models.positions import Position
from src.models.decisions import DecisionLog  # noqa: F401
from src.models.rule_performance import RulePerformance  # noqa: F401
from src.models.regime_stability import RegimeStability  # noqa: F401
from src.models.regime_performance import RegimePerformance  # noqa: F401
from src.models.source_credibility import SourceCredibility  # noqa: F401

NOW = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)
EXPIRATION = date(2026, 3, 12)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    yield session
    session.close()


# ========== PAYLOADS ==========

def make_gex(
    ticker="SPY",
    dealer="LONG_GAMMA",
    regime="TRENDING_UP",
    regime_confidence=80,
    bias="BULLISH",
    strength="STRONG",
    flip=None,
):
    return {
        "ticker": ticker,
        "underlying_price": 450.0,
        "net_gex": 1.5e9,
        "dealer_position": dealer,
        "gex_flip": flip or {"detected": False},
        "market_regime": {"regime": regime, "confidence": regime_confidence},
        "summary": {"overall_bias": bias, "bias_strength": strength, "zero_gamma": 445.0},
    }


def make_entry(ticker="SPY", action="BUY", option_type="CALL", full=True, **overrides):
    """Entry payload; full=True adds every context source, all bullish."""
    payload = {
        "signal": {
            "ticker": ticker,
            "action": action,
            "option_type": option_type,
            "strike": 450,
            "expiration": EXPIRATION.isoformat(),
        },
        "portfolio_value": 100000,
        "option_price": 2.0,
    }
    if full:
        payload.update({
            "gex": make_gex(ticker),
            "mtf_trend": {"ticker": ticker, "bias": "LONG", "alignment_score": 80, "confluence_count": 3},
            "market_context": {
                "ticker": ticker,
                "vix": 15,
                "vix_regime": "NORMAL",
                "market_bias": "BULLISH",
                "or_breakout": "ABOVE",
            },
            "positioning": {"ticker": ticker, "pc_sentiment": "BULLISH", "confidence": 70},
        })
    payload.update(overrides)
    return payload


def make_position(**overrides):
    """Position snapshot payload: 2.00 entry call, 10 contracts, 10 DTE."""
    position = {
        "id": "pos-1",
        "ticker": "SPY",
        "symbol": "O:SPY260312C00450000",
        "option_type": "CALL",
        "entry_price": 2.0,
        "current_price": 2.1,
        "quantity": 10,
        "partial_exits_taken": 0,
        "highest_price_since_entry": 2.1,
        "dte": 10,
        "hours_in_trade": 20,
        "unrealized_pnl": 100.0,
        "unrealized_pnl_pct": 5.0,
        "entry_market_regime": "TRENDING_UP",
        "entry_dealer_position": "LONG_GAMMA",
        "planned_stop_loss": 1.5,
        "planned_target1": 2.6,
        "planned_target2": 3.2,
        "trailing_stop_pct": 20,
    }
    position.update(overrides)
    return position


@pytest.fixture
def entry_payload():
    return make_entry


@pytest.fixture
def position_payload():
    return make_position


@pytest.fixture
def gex_payload():
    return make_gex


# ========== DATABASE ROWS ==========

def make_position_row(position_id, ticker="SPY", expiration=EXPIRATION, **overrides):
    values = {
        "position_id": position_id,
        "ticker": ticker,
        "symbol": f"O:{ticker}260312C00450000-{position_id}",
        "option_type": "CALL",
        "strike": Decimal("450"),
        "expiration": expiration,
        "opened_at": NOW - timedelta(hours=20),
        "entry_price": Decimal("2.00"),
        "quantity": 10,
        "entry_market_regime": "TRENDING_UP",
        "entry_dealer_position": "LONG_GAMMA",
        "planned_stop_loss": Decimal("1.50"),
        "planned_target1": Decimal("2.60"),
        "planned_target2": Decimal("3.20"),
        "trailing_stop_pct": Decimal("20"),
        "partial_exits_taken": 0,
        "status": "OPEN",
    }
    values.update(overrides)
    return Position(**values)


@pytest.fixture
def position_row():
    return make_position_row


# ========== MARKET DATA ==========

def make_chain(ticker="SPY", expiration=EXPIRATION, spot=450.0):
    strikes = [440.0, 450.0, 460.0]
    return {
        "underlying": ticker,
        "underlying_price": spot,
        "expiration": expiration,
        "strikes": strikes,
        "calls": [
            {"strike": s, "open_interest": 20000, "volume": 1500, "gamma": 0.04} for s in strikes
        ],
        "puts": [
            {"strike": s, "open_interest": 8000, "volume": 900, "gamma": 0.03} for s in strikes
        ],
    }


class FakeMarketData:
    """Stands in for MarketDataProvider with canned chains and quotes."""

    def __init__(self, quotes=None, failing_chains=(), failing_quotes=(), atr=(0.4, 50.0)):
        self.quotes = dict(quotes or {})
        self.failing_chains = set(failing_chains)
        self.failing_quotes = set(failing_quotes)
        self.atr = atr
        self.chain_calls = []

    def get_options_chain(self, ticker, expiration):
        self.chain_calls.append((ticker, expiration))
        if ticker in self.failing_chains:
            raise MarketDataError("chain unavailable", ticker=ticker)
        return make_chain(ticker, expiration)

    def get_option_quote(self, ticker, option_symbol):
        if option_symbol in self.failing_quotes:
            raise MarketDataError("quote unavailable", ticker=ticker)
        return {"symbol": option_symbol, "mid": self.quotes.get(option_symbol, 2.1)}

    def get_atr(self, ticker, period=14, lookback=100):
        if self.atr is None:
            raise MarketDataError("no bars", ticker=ticker)
        return self.atr


@pytest.fixture
def chain_payload():
    return make_chain


@pytest.fixture
def fake_market_data():
    return FakeMarketData
