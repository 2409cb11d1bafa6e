"""Data transformation utilities.
Turns a raw options chain into the gamma-exposure bundle the orchestrator consumes."""
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from src.core.schemas import GexSignalBundle
from src.core.validation import validate_model
from src.utils.constants import (
    LONG_GAMMA, SHORT_GAMMA, DEALER_NEUTRAL, CONTRACT_MULTIPLIER,
    MARKET_BREAKOUT_IMMINENT, MARKET_RANGE_BOUND, MARKET_REVERSAL_UP,
    MARKET_REVERSAL_DOWN, MARKET_TRENDING_UP, MARKET_TRENDING_DOWN, MARKET_UNKNOWN,
)


class GexTransformer:
    """Transforms options chains into dealer-positioning bundles."""

    @staticmethod
    def gamma_by_strike(chain: Dict) -> Tuple[List[float], List[float]]:
        """Net GEX per strike: call gamma positive, put gamma negative.

        GEX = gamma * open interest * spot^2 * 0.01
        """
        spot = chain['underlying_price']
        calls = {c['strike']: c for c in chain['calls']}
        puts = {p['strike']: p for p in chain['puts']}
        strikes = list(chain['strikes'])
        by_strike = []
        for strike in strikes:
            call = calls.get(strike)
            put = puts.get(strike)
            call_gex = (call['gamma'] or 0) * (call['open_interest'] or 0) * spot * spot * 0.01 if call else 0.0
            put_gex = -(put['gamma'] or 0) * (put['open_interest'] or 0) * spot * spot * 0.01 if put else 0.0
            by_strike.append(call_gex + put_gex)
        return strikes, by_strike

    @staticmethod
    def zero_gamma_level(strikes: List[float], gex: List[float]) -> Optional[float]:
        """Interpolated strike where net GEX changes sign."""
        for i in range(len(strikes) - 1):
            if (gex[i] >= 0) != (gex[i + 1] >= 0):
                total = abs(gex[i]) + abs(gex[i + 1])
                ratio = abs(gex[i]) / total if total else 0.5
                return round(strikes[i] + ratio * (strikes[i + 1] - strikes[i]), 2)
        return None

    @staticmethod
    def dealer_position(net_gex: float, spot: float) -> str:
        threshold = spot * spot * 1000
        if net_gex > threshold:
            return LONG_GAMMA
        if net_gex < -threshold:
            return SHORT_GAMMA
        return DEALER_NEUTRAL

    @staticmethod
    def max_pain(chain: Dict) -> Optional[float]:
        """Strike at which open options expire with the least total value."""
        best_strike = None
        min_pain = None
        for close in chain['strikes']:
            pain = sum(
                (close - c['strike']) * (c['open_interest'] or 0) * CONTRACT_MULTIPLIER
                for c in chain['calls'] if close > c['strike']
            )
            pain += sum(
                (p['strike'] - close) * (p['open_interest'] or 0) * CONTRACT_MULTIPLIER
                for p in chain['puts'] if close < p['strike']
            )
            if min_pain is None or pain < min_pain:
                min_pain = pain
                best_strike = close
        return best_strike

    @staticmethod
    def put_call_ratio(chain: Dict) -> Optional[float]:
        call_volume = sum(c['volume'] or 0 for c in chain['calls'])
        put_volume = sum(p['volume'] or 0 for p in chain['puts'])
        if call_volume <= 0:
            return None
        return round(put_volume / call_volume, 2)

    @staticmethod
    def classify_market_regime(
        dealer: str,
        spot: float,
        zero_gamma: Optional[float],
        max_pain: Optional[float],
        pc_ratio: Optional[float],
        near_wall: Optional[str],
        vix: Optional[float],
        dte: Optional[int]
    ) -> Tuple[str, float]:
        """Composite regime with a 0-100 confidence."""
        zero_distance = abs(spot - zero_gamma) / spot * 100 if zero_gamma else None
        pain_distance = abs(spot - max_pain) / spot * 100 if max_pain else None
        ratio = pc_ratio if pc_ratio is not None else 1.0

        if dealer == SHORT_GAMMA and zero_distance is not None and zero_distance < 2 and (vix or 0) > 20:
            return MARKET_BREAKOUT_IMMINENT, 75.0
        if dealer == LONG_GAMMA and pain_distance is not None and pain_distance < 2 and dte is not None and dte <= 5:
            return MARKET_RANGE_BOUND, 70.0
        if ratio > 1.8 and near_wall == 'PUT':
            return MARKET_REVERSAL_UP, 65.0
        if ratio < 0.5 and near_wall == 'CALL':
            return MARKET_REVERSAL_DOWN, 65.0
        if dealer == LONG_GAMMA and zero_gamma and spot > zero_gamma and ratio < 0.8:
            return MARKET_TRENDING_UP, 60.0
        if dealer == LONG_GAMMA and zero_gamma and spot < zero_gamma and ratio > 1.2:
            return MARKET_TRENDING_DOWN, 60.0
        return MARKET_UNKNOWN, 30.0

    @classmethod
    def chain_to_bundle(
        cls,
        chain: Dict,
        previous_dealer_position: Optional[str] = None,
        vix: Optional[float] = None,
        now: Optional[datetime] = None
    ) -> GexSignalBundle:
        """
        Build a GexSignalBundle from a chain dict.

        Args:
            chain: Output of MarketDataProvider.get_options_chain
            previous_dealer_position: Dealer position from the prior bundle, for flip detection
            vix: Current VIX, used by the breakout regime
            now: Calculation time

        Returns:
            Validated GexSignalBundle
        """
        spot = chain['underlying_price']
        strikes, gex = cls.gamma_by_strike(chain)
        net_gex = sum(gex)
        dealer = cls.dealer_position(net_gex, spot)
        zero_gamma = cls.zero_gamma_level(strikes, gex)
        max_pain = cls.max_pain(chain)
        pc_ratio = cls.put_call_ratio(chain)

        # Walls: high positive GEX strikes below (support) and above (resistance) spot
        wall_threshold = spot * spot * 500
        support = [s for s, g in zip(strikes, gex) if g > wall_threshold and s < spot]
        resistance = [s for s, g in zip(strikes, gex) if g > wall_threshold and s > spot]
        support_level = support[-1] if support else None
        resistance_level = resistance[0] if resistance else None
        near_wall = None
        if support_level and (spot - support_level) / spot * 100 < 1:
            near_wall = 'PUT'
        elif resistance_level and (resistance_level - spot) / spot * 100 < 1:
            near_wall = 'CALL'

        now = now or datetime.utcnow()
        expiration = chain.get('expiration')
        dte = (expiration - now.date()).days if expiration else None
        regime, confidence = cls.classify_market_regime(
            dealer, spot, zero_gamma, max_pain, pc_ratio, near_wall, vix, dte,
        )

        flip = {'detected': False}
        if (
            previous_dealer_position
            and previous_dealer_position != dealer
            and DEALER_NEUTRAL not in (previous_dealer_position, dealer)
        ):
            if dealer == SHORT_GAMMA:
                above = zero_gamma is not None and spot > zero_gamma
                flip = {
                    'detected': True,
                    'direction': 'LONG_TO_SHORT',
                    'trade_action': 'BUY_PUTS' if above else 'BUY_CALLS',
                }
            else:
                flip = {'detected': True, 'direction': 'SHORT_TO_LONG', 'trade_action': 'SELL_STRADDLE'}

        # Bias votes
        bullish = bearish = 0
        if flip.get('trade_action') == 'BUY_CALLS':
            bullish += 2
        elif flip.get('trade_action') == 'BUY_PUTS':
            bearish += 2
        if zero_gamma is not None:
            bullish += spot > zero_gamma
            bearish += spot < zero_gamma
        if max_pain is not None:
            bullish += max_pain > spot
            bearish += max_pain < spot
        if regime in (MARKET_TRENDING_UP, MARKET_REVERSAL_UP):
            bullish += 2
        elif regime in (MARKET_TRENDING_DOWN, MARKET_REVERSAL_DOWN):
            bearish += 2

        net = bullish - bearish
        overall_bias = 'BULLISH' if net >= 2 else 'BEARISH' if net <= -2 else 'NEUTRAL'
        strength = 'STRONG' if abs(net) >= 4 else 'MODERATE' if abs(net) >= 2 else 'WEAK' if abs(net) >= 1 else 'NONE'

        return validate_model(GexSignalBundle, {
            'ticker': chain['underlying'],
            'expiration': expiration,
            'underlying_price': spot,
            'net_gex': round(net_gex, 2),
            'dealer_position': dealer,
            'previous_dealer_position': previous_dealer_position,
            'gex_flip': flip,
            'market_regime': {'regime': regime, 'confidence': confidence},
            'summary': {
                'overall_bias': overall_bias,
                'bias_strength': strength,
                'support': support_level,
                'resistance': resistance_level,
                'zero_gamma': zero_gamma,
                'max_pain': max_pain,
            },
            'pc_ratio': pc_ratio,
            'calculated_at': now,
        }, 'GexSignalBundle')
