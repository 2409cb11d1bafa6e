import pytest
from pydantic import ValidationError

from config.settings import get_orchestrator_defaults
from src.core.config import deep_merge, merge_config
from src.core.errors import ConfigError


class TestMergeConfig:
    def test_defaults_load_from_yaml(self):
        config = merge_config()
        assert config.orchestrator.min_confidence_to_execute == 60
        assert config.regime.regime_flip_cooldown_seconds == 900
        assert config.sizing.regime_multipliers['RANGE_BOUND'] == 0.7
        assert config.sizing.vix_bands[-1]['label'] == 'EXTREME'

    def test_flat_override_does_not_touch_defaults(self):
        config = merge_config({'minConfidenceToExecute': 70, 'regimeFlipCooldownSeconds': 60})
        assert config.orchestrator.min_confidence_to_execute == 70
        assert config.regime.regime_flip_cooldown_seconds == 60

        assert merge_config().orchestrator.min_confidence_to_execute == 60
        assert get_orchestrator_defaults()['orchestrator']['min_confidence_to_execute'] == 60

    def test_nested_override_keeps_sibling_keys(self):
        config = merge_config({'regime': {'gate_mode': 'PENALIZE'}})
        assert config.regime.gate_mode == 'PENALIZE'
        assert config.regime.gate_penalty == 20
        assert config.regime.require_stable_regime is True

    def test_nested_dict_override_merges(self):
        config = merge_config({'sizing': {'dealer_multipliers': {'SHORT_GAMMA': 0.5}}})
        assert config.sizing.dealer_multipliers['SHORT_GAMMA'] == 0.5
        assert config.sizing.dealer_multipliers['LONG_GAMMA'] == 1.0

    def test_unknown_key_rejected(self):
        with pytest.raises(ConfigError) as exc:
            merge_config({'minConfidence': 70})
        assert exc.value.key == 'minConfidence'

    def test_unknown_nested_field_rejected(self):
        with pytest.raises(ConfigError) as exc:
            merge_config({'regime': {'cooldown': 5}})
        assert exc.value.key.startswith('regime')

    def test_out_of_range_value_rejected(self):
        with pytest.raises(ConfigError):
            merge_config({'minConfidenceToExecute': 140})

    def test_bad_gate_mode_rejected(self):
        with pytest.raises(ConfigError) as exc:
            merge_config({'regime': {'gate_mode': 'IGNORE'}})
        assert exc.value.key == 'regime.gate_mode'

    def test_inverted_stop_band_rejected(self):
        with pytest.raises(ConfigError):
            merge_config({'minStopPercent': 30, 'maxStopPercent': 20})

    def test_resolved_config_is_frozen(self):
        config = merge_config()
        with pytest.raises(ValidationError):
            config.orchestrator.min_confidence_to_execute = 10


class TestDeepMerge:
    def test_returns_new_dict(self):
        base = {'a': {'b': 1, 'c': 2}}
        merged = deep_merge(base, {'a': {'b': 5}})
        assert merged == {'a': {'b': 5, 'c': 2}}
        assert base == {'a': {'b': 1, 'c': 2}}

    def test_non_mapping_replaces(self):
        assert deep_merge({'a': {'b': 1}}, {'a': [1, 2]}) == {'a': [1, 2]}
