"""Prometheus metrics exporters."""
from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry

# Create registry
registry = CollectorRegistry()

# ========== DECISION METRICS ==========
decisions_made = Counter(
    'decisions_made_total',
    'Total number of orchestrator decisions',
    ['decision_type', 'action'],
    registry=registry
)

decision_latency = Histogram(
    'decision_latency_seconds',
    'Time to evaluate one decision',
    ['decision_type'],
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0),
    registry=registry
)

entry_rejections = Counter(
    'entry_rejections_total',
    'Entry decisions rejected',
    ['reason'],
    registry=registry
)

# ========== RULE METRICS ==========
rule_triggers = Counter(
    'rule_triggers_total',
    'Rules fired across logged decisions',
    ['rule_id'],
    registry=registry
)

outcomes_recorded = Counter(
    'decision_outcomes_total',
    'Trade outcomes attached to decisions',
    ['correct'],
    registry=registry
)

rules_needing_tuning = Gauge(
    'rules_needing_tuning',
    'Rules with a non-KEEP tuning recommendation',
    registry=registry
)

# ========== REGIME METRICS ==========
regime_flips = Counter(
    'regime_flips_total',
    'Regime changes observed per ticker',
    ['ticker'],
    registry=registry
)

# ========== BATCH METRICS ==========
positions_monitored = Counter(
    'positions_monitored_total',
    'Open positions evaluated by the monitor',
    ['outcome'],
    registry=registry
)

monitor_errors = Counter(
    'monitor_errors_total',
    'Position monitor failures',
    ['stage'],
    registry=registry
)

monitor_duration = Histogram(
    'monitor_run_seconds',
    'Position monitor run time in seconds',
    registry=registry
)

# ========== HELPER FUNCTIONS ==========
def record_decision(decision_type: str, action: str, duration_ms: float):
    """Record one orchestrator decision."""
    decisions_made.labels(decision_type=decision_type, action=action).inc()
    decision_latency.labels(decision_type=decision_type).observe(duration_ms / 1000.0)

def record_entry_rejection(reason: str):
    """Record a rejected entry."""
    entry_rejections.labels(reason=reason).inc()

def record_rule_trigger(rule_id: str):
    """Record a fired rule."""
    rule_triggers.labels(rule_id=rule_id).inc()

def record_outcome(was_correct: bool):
    """Record a trade outcome."""
    outcomes_recorded.labels(correct=str(bool(was_correct)).lower()).inc()

def update_rules_needing_tuning(count: int):
    """Update the number of rules awaiting a threshold change."""
    rules_needing_tuning.set(count)

def record_regime_flip(ticker: str):
    """Record a regime flip."""
    regime_flips.labels(ticker=ticker).inc()

def record_position_monitored(outcome: str):
    """Record one monitored position."""
    positions_monitored.labels(outcome=outcome).inc()

def record_monitor_error(stage: str, count: int = 1):
    """Record monitor failures for a stage (chain, quote, position)."""
    monitor_errors.labels(stage=stage).inc(count)
