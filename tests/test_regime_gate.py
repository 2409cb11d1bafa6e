from datetime import timedelta

import pytest

from src.core.config import merge_config
from src.core.regime_gate import (
    RegimeObservation, advance_state, classify_regime, evaluate_regime, stability_score,
)

LONG_NORMAL = RegimeObservation(regime='LONG_GAMMA:NORMAL', confidence=0.8, dealer_position='LONG_GAMMA')
SHORT_NORMAL = RegimeObservation(regime='SHORT_GAMMA:NORMAL', confidence=0.8, dealer_position='SHORT_GAMMA')


class TestAdvanceState:
    def test_first_observation_is_not_a_flip(self, now):
        state, flipped = advance_state(None, 'SPY', LONG_NORMAL, now, 900)
        assert flipped is False
        assert state.current_regime == 'LONG_GAMMA:NORMAL'
        assert state.cooldown_until is None
        assert state.flip_count == 0

    def test_same_regime_counts_readings(self, now):
        state, _ = advance_state(None, 'SPY', LONG_NORMAL, now, 900)
        state, flipped = advance_state(state, 'SPY', LONG_NORMAL, now + timedelta(minutes=1), 900)
        assert flipped is False
        assert state.consecutive_readings == 2
        assert state.regime_since == now

    def test_flip_starts_cooldown(self, now):
        state, _ = advance_state(None, 'SPY', LONG_NORMAL, now, 900)
        later = now + timedelta(minutes=5)
        state, flipped = advance_state(state, 'SPY', SHORT_NORMAL, later, 900)

        assert flipped is True
        assert state.previous_regime == 'LONG_GAMMA:NORMAL'
        assert state.last_flip_at == later
        assert state.cooldown_until == later + timedelta(seconds=900)
        assert state.flip_count == 1
        assert state.consecutive_readings == 1

    def test_cooldown_never_moves_backward(self, now):
        state, _ = advance_state(None, 'SPY', LONG_NORMAL, now, 900)
        cooldowns = []
        observations = [SHORT_NORMAL, LONG_NORMAL, SHORT_NORMAL, SHORT_NORMAL, LONG_NORMAL]
        for i, observation in enumerate(observations):
            at = now + timedelta(seconds=30 * (i + 1))
            # Shorter cooldown later in the sequence must not pull the deadline in
            state, _ = advance_state(state, 'SPY', observation, at, 900 if i < 2 else 10)
            if state.cooldown_until is not None:
                cooldowns.append(state.cooldown_until)
                assert state.cooldown_until >= state.last_flip_at

        assert cooldowns == sorted(cooldowns)


class TestEvaluateRegime:
    def test_stable_reading_passes(self, now):
        config = merge_config()
        state, gate = evaluate_regime(None, 'SPY', LONG_NORMAL, now, config)
        assert gate.state == 'STABLE'
        assert gate.gated is False
        assert gate.can_enter is True
        assert gate.confidence_penalty == 0

    def test_flip_rejects_in_reject_mode(self, now):
        config = merge_config()
        state, _ = evaluate_regime(None, 'SPY', LONG_NORMAL, now, config)
        state, gate = evaluate_regime(state, 'SPY', SHORT_NORMAL, now + timedelta(minutes=1), config)

        assert gate.state == 'FLIPPED'
        assert gate.can_enter is False
        assert gate.cooldown_remaining_seconds == 900
        assert 'flipped' in gate.block_reason

    def test_cooling_down_then_stable(self, now):
        config = merge_config()
        state, _ = evaluate_regime(None, 'SPY', LONG_NORMAL, now, config)
        state, _ = evaluate_regime(state, 'SPY', SHORT_NORMAL, now, config)

        _, gate = evaluate_regime(state, 'SPY', SHORT_NORMAL, now + timedelta(minutes=5), config)
        assert gate.state == 'COOLING_DOWN'
        assert gate.can_enter is False

        _, gate = evaluate_regime(state, 'SPY', SHORT_NORMAL, now + timedelta(minutes=16), config)
        assert gate.state == 'STABLE'
        assert gate.can_enter is True

    def test_penalize_mode_allows_entry(self, now):
        config = merge_config({'regime': {'gate_mode': 'PENALIZE'}})
        state, _ = evaluate_regime(None, 'SPY', LONG_NORMAL, now, config)
        _, gate = evaluate_regime(state, 'SPY', SHORT_NORMAL, now, config)
        assert gate.gated is True
        assert gate.can_enter is True
        assert gate.confidence_penalty == 20

    def test_low_confidence_gated_even_when_stable(self, now):
        weak = RegimeObservation(regime='LONG_GAMMA:NORMAL', confidence=0.3)
        _, gate = evaluate_regime(None, 'SPY', weak, now, merge_config())
        assert gate.state == 'STABLE'
        assert gate.can_enter is False

    def test_stability_not_required(self, now):
        config = merge_config({'requireStableRegime': False})
        state, _ = evaluate_regime(None, 'SPY', LONG_NORMAL, now, config)
        _, gate = evaluate_regime(state, 'SPY', SHORT_NORMAL, now, config)
        assert gate.state == 'FLIPPED'
        assert gate.can_enter is True


class TestHelpers:
    def test_classify_regime(self):
        assert classify_regime('SHORT_GAMMA', 'HIGH_VOL') == 'SHORT_GAMMA:HIGH_VOL'
        assert classify_regime(None, None) == 'UNKNOWN:NORMAL'

    def test_stability_score_bounds(self, now):
        state, _ = advance_state(None, 'SPY', LONG_NORMAL, now, 900)
        # 1 reading (10) + no time (0) + 0.8 confidence (32)
        assert stability_score(state, now, 900) == pytest.approx(42.0)
        state, _ = advance_state(state, 'SPY', SHORT_NORMAL, now, 900)
        assert 0 <= stability_score(state, now, 900) <= 100
