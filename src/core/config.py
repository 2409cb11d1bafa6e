"""
Orchestrator configuration.

Process-wide defaults live in config/orchestrator.yaml and config/sizing.yaml.
Each orchestration call resolves its own immutable OrchestratorConfig by
deep-merging a partial override over a copy of those defaults:

    config = merge_config({'regime': {'gate_mode': 'PENALIZE'}})
    config = merge_config({'minConfidenceToExecute': 70})

Shared defaults are never mutated.
"""
import copy
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError

from config.settings import get_orchestrator_defaults, get_sizing_config
from src.core.errors import ConfigError


class _Section(BaseModel):
    class Config:
        frozen = True
        extra = 'forbid'


class OrchestratorSection(_Section):
    min_confidence_to_execute: float = Field(60, ge=0, le=100)
    log_all_decisions: bool = True
    enable_learning: bool = True
    dry_run: bool = False


class ScoringSection(_Section):
    base_confidence: float = Field(50, ge=0, le=100)
    trade_signal_base_score: float = Field(75, ge=0, le=100)
    max_source_age_minutes: float = Field(240, gt=0)
    stale_weight_factor: float = Field(0.5, ge=0, le=1)
    source_weights: Dict[str, float]
    bias_strength_factors: Dict[str, float]
    context_breakout_bonus: float = 20
    context_high_vol_penalty: float = 10
    impact_weights: Dict[str, float]
    gex_aligned_bonus: float = 10
    gex_conflict_penalty: float = 15
    market_regime_aligned_bonus: float = 8
    market_regime_conflict_penalty: float = 12


class ConfluenceSection(_Section):
    min_confluence_score: float = Field(50, ge=0, le=100)
    min_agreeing_sources_for_alignment: int = Field(2, ge=1)


class ConflictSection(_Section):
    strategy_order: List[str] = ['MAJORITY', 'CREDIBILITY']
    min_agreeing_sources: int = Field(3, ge=1)
    allow_conflict_override: bool = True
    credibility_override_threshold: float = Field(0.85, ge=0, le=1)
    unresolved_penalty: float = Field(15, ge=0, le=100)
    source_credibility: Dict[str, float]
    credibility_prior_strength: float = Field(20, ge=0)
    credibility_recent_window: int = Field(50, ge=1)
    credibility_recent_weight: float = Field(0.7, ge=0, le=1)


class RegimeSection(_Section):
    require_stable_regime: bool = True
    regime_flip_cooldown_seconds: int = Field(900, ge=0)
    min_regime_confidence: float = Field(0.75, ge=0, le=1)
    gate_mode: str = 'REJECT'
    gate_penalty: float = Field(20, ge=0, le=100)
    stable_bonus_confidence: float = 0.8
    stable_bonus: float = 10
    low_stability_score: float = 50
    low_stability_penalty: float = 10


class SizingSection(_Section):
    max_risk_per_trade_percent: float = Field(2.0, gt=0, le=100)
    contract_multiplier: int = Field(100, gt=0)
    enable_kelly_sizing: bool = True
    enable_vix_scaling: bool = True
    enable_regime_scaling: bool = True
    enable_confluence_scaling: bool = True
    kelly_min_trades: int = Field(20, ge=0)
    kelly_max_fraction: float = Field(0.25, gt=0, le=1)
    kelly_baseline_fraction: float = Field(0.02, gt=0, le=1)
    kelly_floor: float = Field(0.25, ge=0, le=1)
    default_kelly_scalar: float = Field(1.0, ge=0, le=1)
    high_vol_scalar: float = Field(0.5, ge=0, le=1)
    vix_bands: List[Dict[str, Any]] = []
    regime_multipliers: Dict[str, float] = {}
    dealer_multipliers: Dict[str, float] = {}


class ExitSection(_Section):
    enable_atr_stops: bool = True
    enable_partial_exits: bool = True
    enable_time_decay_urgency: bool = True
    atr_multiplier_for_stop: float = Field(2.0, gt=0)
    min_stop_percent: float = Field(15, gt=0, lt=100)
    max_stop_percent: float = Field(40, gt=0, lt=100)
    reward_risk_ratio: float = Field(2.0, gt=0)
    target1_reward_fraction: float = 0.75
    target2_reward_fraction: float = 1.5
    target1_exit_percent: float = Field(25, gt=0, le=100)
    target2_exit_percent: float = Field(50, gt=0, le=100)
    target2_remaining_exit_percent: float = Field(67, gt=0, le=100)
    trail_percent: float = Field(20, gt=0, lt=100)
    max_hold_hours: float = Field(168, gt=0)
    urgent_dte: int = Field(3, ge=0)
    critical_dte: int = Field(1, ge=0)
    default_stop_percent: float = Field(25, gt=0, lt=100)
    default_target1_percent: float = Field(30, gt=0)
    default_target2_percent: float = Field(60, gt=0)
    gex_flip_profit_percent: float = 10


class HoldSection(_Section):
    dte_warning: int = 3
    dte_high_warning: int = 1
    drawdown_warning_percent: float = -20
    expiry_loss_exit_percent: float = -10
    regime_partial_profit_percent: float = 10
    partial_exit_percent: float = Field(50, gt=0, le=100)
    tighten_stop_profit_percent: float = 25
    base_confidence: float = Field(70, ge=0, le=100)
    high_warning_penalty: float = 20
    medium_warning_penalty: float = 10
    favorable_bonus: float = 10


class ObservabilitySection(_Section):
    tuning_min_triggers: int = Field(30, ge=1)
    recommendation_min_triggers: int = Field(20, ge=1)
    loosen_below_accuracy: float = Field(0.45, ge=0, le=1)
    tighten_above_accuracy: float = Field(0.65, ge=0, le=1)
    loosen_factor: float = Field(0.8, gt=0)
    tighten_factor: float = Field(1.2, gt=0)
    base_tune_confidence: float = Field(0.6, ge=0, le=1)
    recent_decisions_limit: int = Field(50, ge=1)


class OrchestratorConfig(_Section):
    """Fully resolved configuration for one orchestration call."""
    orchestrator: OrchestratorSection
    scoring: ScoringSection
    confluence: ConfluenceSection
    conflict: ConflictSection
    regime: RegimeSection
    sizing: SizingSection
    exit: ExitSection
    hold: HoldSection
    observability: ObservabilitySection

    def as_dict(self) -> dict:
        return self.model_dump()


# Flat camelCase names accepted as overrides, mapped to (section, field)
FLAT_OVERRIDE_KEYS = {
    'minConfidenceToExecute': ('orchestrator', 'min_confidence_to_execute'),
    'logAllDecisions': ('orchestrator', 'log_all_decisions'),
    'enableLearning': ('orchestrator', 'enable_learning'),
    'dryRun': ('orchestrator', 'dry_run'),
    'minConfluenceScore': ('confluence', 'min_confluence_score'),
    'minAgreeingSources': ('conflict', 'min_agreeing_sources'),
    'allowConflictOverride': ('conflict', 'allow_conflict_override'),
    'requireStableRegime': ('regime', 'require_stable_regime'),
    'regimeFlipCooldownSeconds': ('regime', 'regime_flip_cooldown_seconds'),
    'minRegimeConfidence': ('regime', 'min_regime_confidence'),
    'enableKellySizing': ('sizing', 'enable_kelly_sizing'),
    'enableVixScaling': ('sizing', 'enable_vix_scaling'),
    'maxRiskPerTradePercent': ('sizing', 'max_risk_per_trade_percent'),
    'enableAtrStops': ('exit', 'enable_atr_stops'),
    'enablePartialExits': ('exit', 'enable_partial_exits'),
    'enableTimeDecayUrgency': ('exit', 'enable_time_decay_urgency'),
    'atrMultiplierForStop': ('exit', 'atr_multiplier_for_stop'),
    'minStopPercent': ('exit', 'min_stop_percent'),
    'maxStopPercent': ('exit', 'max_stop_percent'),
    'trailPercent': ('exit', 'trail_percent'),
    'urgentDTE': ('exit', 'urgent_dte'),
    'criticalDTE': ('exit', 'critical_dte'),
}

GATE_MODES = ('REJECT', 'PENALIZE')
STRATEGIES = ('MAJORITY', 'CREDIBILITY')


def deep_merge(base: Mapping[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    """Return a new dict with overrides merged into base, recursing into dicts."""
    merged = copy.deepcopy(dict(base))
    for key, value in overrides.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _nest_flat_keys(overrides: Mapping[str, Any]) -> Dict[str, Any]:
    """Translate flat camelCase keys into nested sections."""
    nested: Dict[str, Any] = {}
    for key, value in overrides.items():
        if key in FLAT_OVERRIDE_KEYS:
            section, field = FLAT_OVERRIDE_KEYS[key]
            nested.setdefault(section, {})[field] = value
        elif key in OrchestratorConfig.model_fields:
            if not isinstance(value, Mapping):
                raise ConfigError(f"Section '{key}' override must be a mapping", key=key)
            nested[key] = deep_merge(nested.get(key, {}), value)
        else:
            raise ConfigError(f"Unknown configuration key '{key}'", key=key)
    return nested


def default_config_dict() -> Dict[str, Any]:
    """Fresh copy of the process-wide defaults."""
    defaults = copy.deepcopy(get_orchestrator_defaults())
    sizing_tables = copy.deepcopy(get_sizing_config())
    defaults['sizing'] = deep_merge(sizing_tables, defaults.get('sizing', {}))
    return defaults


def merge_config(overrides: Optional[Mapping[str, Any]] = None) -> OrchestratorConfig:
    """
    Resolve an immutable configuration for one call.

    Args:
        overrides: Partial nested dict, flat camelCase keys, or both

    Returns:
        Frozen OrchestratorConfig

    Raises:
        ConfigError: unknown key or out-of-range value
    """
    resolved = default_config_dict()
    if overrides:
        resolved = deep_merge(resolved, _nest_flat_keys(overrides))

    try:
        config = OrchestratorConfig.model_validate(resolved)
    except ValidationError as e:
        first = e.errors()[0]
        key = '.'.join(str(p) for p in first['loc'])
        raise ConfigError(f"Invalid configuration at '{key}': {first['msg']}", key=key) from e

    if config.regime.gate_mode not in GATE_MODES:
        raise ConfigError(f"gate_mode must be one of {GATE_MODES}", key='regime.gate_mode')
    unknown = [s for s in config.conflict.strategy_order if s not in STRATEGIES]
    if unknown:
        raise ConfigError(f"Unknown conflict strategies: {unknown}", key='conflict.strategy_order')
    if config.exit.min_stop_percent > config.exit.max_stop_percent:
        raise ConfigError("min_stop_percent exceeds max_stop_percent", key='exit.min_stop_percent')

    return config
