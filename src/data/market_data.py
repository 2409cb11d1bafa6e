"""
Market Data Integration

This module fetches option quotes, options chains and daily bars for ATR.
Uses a Polygon-style REST API; numpy does the volatility math.

Failures raise MarketDataError so batch callers can count them per
ticker group or per position.
"""
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Tuple

import numpy as np
import requests

from config.settings import get_settings
from src.core.errors import MarketDataError
from src.utils.constants import API_TIMEOUT_DEFAULT
from src.utils.logging import get_logger

logger = get_logger(__name__)


def true_ranges(highs: np.ndarray, lows: np.ndarray, closes: np.ndarray) -> np.ndarray:
    """True range for every bar after the first."""
    prev_close = closes[:-1]
    high = highs[1:]
    low = lows[1:]
    return np.maximum.reduce([high - low, np.abs(high - prev_close), np.abs(low - prev_close)])


def atr_series(highs, lows, closes, period: int = 14) -> np.ndarray:
    """Rolling simple-average ATR over `period` true ranges."""
    tr = true_ranges(np.asarray(highs, dtype=float), np.asarray(lows, dtype=float), np.asarray(closes, dtype=float))
    if len(tr) < period:
        return np.array([])
    kernel = np.ones(period) / period
    return np.convolve(tr, kernel, mode='valid')


def percentile_rank(values: np.ndarray, current: float) -> float:
    """Percent of values at or below current, 0-100."""
    if len(values) == 0:
        return 50.0
    return float(np.count_nonzero(values <= current) / len(values) * 100)


class MarketDataProvider:
    """Fetch option and stock data over HTTP."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[int] = None,
        session: Optional[requests.Session] = None
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.MARKET_DATA_BASE_URL).rstrip('/')
        self.api_key = api_key if api_key is not None else settings.MARKET_DATA_API_KEY
        self.timeout = timeout or settings.MARKET_DATA_TIMEOUT
        self.session = session or requests.Session()

    def _get(self, path: str, ticker: str, params: Optional[Dict] = None) -> Dict:
        params = dict(params or {})
        if self.api_key:
            params['apiKey'] = self.api_key
        url = f"{self.base_url}{path}"
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.RequestException as e:
            logger.warning(f"Market data request failed for {ticker}: {e}")
            raise MarketDataError(f"Request to {path} failed: {e}", ticker=ticker) from e
        except ValueError as e:
            raise MarketDataError(f"Invalid JSON from {path}", ticker=ticker) from e

    # ========== OPTIONS ==========

    def get_option_quote(self, ticker: str, option_symbol: str) -> Dict:
        """
        Current quote for one option contract.

        Returns:
            Dict with mid, bid, ask, last, delta, gamma, theta, iv
        """
        data = self._get(f"/v3/snapshot/options/{ticker}/{option_symbol}", ticker)
        result = data.get('results') or {}
        quote = result.get('last_quote') or {}
        greeks = result.get('greeks') or {}
        day = result.get('day') or {}

        bid = quote.get('bid')
        ask = quote.get('ask')
        mid = quote.get('midpoint')
        if mid is None and bid and ask:
            mid = (bid + ask) / 2
        last = (result.get('last_trade') or {}).get('price') or day.get('close')
        price = mid if mid else last
        if not price:
            raise MarketDataError(f"No price for {option_symbol}", ticker=ticker)

        return {
            'symbol': option_symbol,
            'mid': float(price),
            'bid': bid,
            'ask': ask,
            'last': last,
            'delta': greeks.get('delta'),
            'gamma': greeks.get('gamma'),
            'theta': greeks.get('theta'),
            'iv': result.get('implied_volatility'),
        }

    def get_options_chain(self, ticker: str, expiration: date) -> Dict:
        """
        Options chain for one expiration.

        Returns:
            Dict with underlying, underlying_price, expiration, strikes, calls, puts
        """
        params = {'expiration_date': expiration.isoformat(), 'limit': 250}
        data = self._get(f"/v3/snapshot/options/{ticker}", ticker, params)
        results = data.get('results') or []
        if not results:
            raise MarketDataError(f"Empty options chain for {expiration}", ticker=ticker)

        calls: List[Dict] = []
        puts: List[Dict] = []
        underlying_price = None
        for contract in results:
            details = contract.get('details') or {}
            strike = details.get('strike_price')
            if strike is None:
                continue
            row = {
                'strike': float(strike),
                'open_interest': contract.get('open_interest') or 0,
                'volume': (contract.get('day') or {}).get('volume') or 0,
                'gamma': (contract.get('greeks') or {}).get('gamma') or 0.0,
            }
            if details.get('contract_type') == 'call':
                calls.append(row)
            elif details.get('contract_type') == 'put':
                puts.append(row)
            underlying_price = underlying_price or (contract.get('underlying_asset') or {}).get('price')

        if not underlying_price:
            raise MarketDataError("Chain has no underlying price", ticker=ticker)

        strikes = sorted({c['strike'] for c in calls} | {p['strike'] for p in puts})
        logger.debug(f"Chain for {ticker} {expiration}: {len(calls)} calls, {len(puts)} puts")
        return {
            'underlying': ticker,
            'underlying_price': float(underlying_price),
            'expiration': expiration,
            'strikes': strikes,
            'calls': calls,
            'puts': puts,
        }

    # ========== VOLATILITY ==========

    def get_daily_bars(self, ticker: str, days: int) -> List[Dict]:
        end = datetime.utcnow().date()
        start = end - timedelta(days=int(days * 1.5) + 10)  # Buffer for weekends
        data = self._get(
            f"/v2/aggs/ticker/{ticker}/range/1/day/{start.isoformat()}/{end.isoformat()}",
            ticker,
            {'adjusted': 'true', 'sort': 'asc', 'limit': 5000},
        )
        return data.get('results') or []

    def get_atr(self, ticker: str, period: int = 14, lookback: int = 100) -> Tuple[float, float]:
        """
        Calculate Average True Range and its percentile rank.

        Returns:
            (atr, atr_percentile) where the percentile ranks the latest ATR
            against the ATR series over the lookback window.
        """
        bars = self.get_daily_bars(ticker, lookback + period + 1)
        if len(bars) < period + 1:
            raise MarketDataError(f"Need {period + 1} bars for ATR, got {len(bars)}", ticker=ticker)

        series = atr_series(
            [b['h'] for b in bars], [b['l'] for b in bars], [b['c'] for b in bars], period,
        )
        series = series[-lookback:]
        current = float(series[-1])
        return round(current, 4), round(percentile_rank(series, current), 2)


def get_market_data_provider() -> MarketDataProvider:
    return MarketDataProvider(timeout=get_settings().MARKET_DATA_TIMEOUT or API_TIMEOUT_DEFAULT)
