"""
Learned source credibility.

Each signal source keeps outcome counts. Credibility blends lifetime and
recent accuracy, shrunk toward the configured prior until enough outcomes
have arrived. The learned credibility replaces conflict.source_credibility
and rescales scoring.source_weights for an entry decision.
"""
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from src.core.config import OrchestratorConfig


@dataclass
class SourceStats:
    source: str
    total_signals: int = 0
    correct_signals: int = 0
    recent_total: int = 0
    recent_correct: float = 0.0

    @property
    def accuracy(self) -> Optional[float]:
        return self.correct_signals / self.total_signals if self.total_signals else None

    @property
    def recent_accuracy(self) -> Optional[float]:
        return self.recent_correct / self.recent_total if self.recent_total else None


def record_outcome(stats: SourceStats, was_correct: bool, window: int) -> SourceStats:
    """
    Counts after one more outcome.

    Once the recent window is full, the recent correct count decays by one
    window share before the new outcome is added.
    """
    recent_correct = stats.recent_correct
    if stats.recent_total >= window:
        recent_correct *= (window - 1) / window
    recent_correct += 1.0 if was_correct else 0.0
    recent_total = min(window, stats.recent_total + 1)

    return SourceStats(
        source=stats.source,
        total_signals=stats.total_signals + 1,
        correct_signals=stats.correct_signals + (1 if was_correct else 0),
        recent_total=recent_total,
        recent_correct=min(recent_correct, float(recent_total)),
    )


def learned_credibility(stats: SourceStats, prior: float, config: OrchestratorConfig) -> float:
    """Credibility in [0, 1]; equals the prior when nothing has been learned."""
    if not stats.total_signals:
        return prior
    conflict = config.conflict
    recent = stats.recent_accuracy if stats.recent_accuracy is not None else stats.accuracy
    observed = (
        (1 - conflict.credibility_recent_weight) * stats.accuracy
        + conflict.credibility_recent_weight * recent
    )
    k = conflict.credibility_prior_strength
    n = stats.total_signals
    return max(0.0, min(1.0, (prior * k + observed * n) / (k + n)))


def adjusted_weight(base_weight: float, credibility: float, prior: float) -> float:
    """Source weight scaled by credibility relative to its prior."""
    return base_weight * (0.5 + credibility) / (0.5 + prior)


def apply_learned_credibility(
    config: OrchestratorConfig,
    stats: Mapping[str, SourceStats]
) -> OrchestratorConfig:
    """
    Config with learned credibility and source weights.

    Sources without stats keep their configured values.
    """
    if not stats:
        return config

    credibility: Dict[str, float] = dict(config.conflict.source_credibility)
    weights: Dict[str, float] = dict(config.scoring.source_weights)
    for source, source_stats in stats.items():
        if not source_stats.total_signals:
            continue
        prior = credibility.get(source, 0.5)
        learned = learned_credibility(source_stats, prior, config)
        credibility[source] = round(learned, 4)
        if source in weights:
            weights[source] = round(adjusted_weight(weights[source], learned, prior), 4)

    return config.model_copy(update={
        'conflict': config.conflict.model_copy(update={'source_credibility': credibility}),
        'scoring': config.scoring.model_copy(update={'source_weights': weights}),
    })
