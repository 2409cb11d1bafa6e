"""
Confluence scoring and conflict resolution across signal sources.

Disagreement between sources is data, not a fault: resolve_conflicts
always returns a direction and never raises.
"""
from collections import Counter
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional

from src.core.config import OrchestratorConfig
from src.core.signal_scorer import NormalizedSignals, SignalScore
from src.utils.constants import (
    LONG, SHORT, NEUTRAL,
    RESOLUTION_MAJORITY, RESOLUTION_CREDIBILITY, RESOLUTION_NONE,
)


@dataclass
class ConfluenceScore:
    score: float
    confluence_count: int
    majority_direction: str
    is_aligned: bool
    agreeing_sources: List[str] = field(default_factory=list)
    dissenting_sources: List[str] = field(default_factory=list)
    reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class ConflictResolution:
    has_conflict: bool
    method: Optional[str]
    resolved_direction: str
    resolved: bool
    confidence_penalty: float = 0.0
    overridden_sources: List[str] = field(default_factory=list)
    reason: str = ''

    def to_dict(self) -> Dict:
        return asdict(self)


def _directional(scores: List[SignalScore]) -> List[SignalScore]:
    return [s for s in scores if s.direction != NEUTRAL]


def majority_direction(signals: NormalizedSignals) -> str:
    """Direction with the most sources; ties go to weight, then the primary."""
    directional = _directional(signals.scores)
    if not directional:
        return signals.primary.direction

    counts = Counter(s.direction for s in directional)
    if counts[LONG] != counts[SHORT]:
        return LONG if counts[LONG] > counts[SHORT] else SHORT

    weights = {
        d: sum(s.weight for s in directional if s.direction == d)
        for d in (LONG, SHORT)
    }
    if weights[LONG] != weights[SHORT]:
        return LONG if weights[LONG] > weights[SHORT] else SHORT
    return signals.primary.direction


def calculate_confluence(signals: NormalizedSignals, config: OrchestratorConfig) -> ConfluenceScore:
    """
    Weighted agreement of sources with the majority direction.

    score = (weighted mean score of agreeing sources)
            x (agreeing weight / total weight of all reporting sources)
    """
    direction = majority_direction(signals)
    agreeing = [s for s in signals.scores if direction != NEUTRAL and s.direction == direction]
    dissenting = [s for s in _directional(signals.scores) if s.direction != direction]

    total_weight = sum(s.weight for s in signals.scores)
    agree_weight = sum(s.weight for s in agreeing)

    if agreeing and total_weight > 0 and agree_weight > 0:
        weighted_mean = sum(s.score * s.weight for s in agreeing) / agree_weight
        score = weighted_mean * (agree_weight / total_weight)
    else:
        score = 0.0
    score = round(max(0.0, min(100.0, score)), 2)

    count = len(agreeing)
    is_aligned = (
        score >= config.confluence.min_confluence_score
        and count >= config.confluence.min_agreeing_sources_for_alignment
    )

    reasons = [f"{s.source}: {s.direction} {s.score:.0f}" for s in signals.scores]
    if signals.absent_sources:
        reasons.append(f"absent: {', '.join(signals.absent_sources)}")

    return ConfluenceScore(
        score=score,
        confluence_count=count,
        majority_direction=direction,
        is_aligned=is_aligned,
        agreeing_sources=[s.source for s in agreeing],
        dissenting_sources=[s.source for s in dissenting],
        reasons=reasons,
    )


def _resolve_by_majority(directional: List[SignalScore], min_agreeing: int) -> Optional[str]:
    counts = Counter(s.direction for s in directional)
    long_count, short_count = counts[LONG], counts[SHORT]
    if long_count == short_count:
        return None
    winner, winner_count = (LONG, long_count) if long_count > short_count else (SHORT, short_count)
    if winner_count >= min_agreeing:
        return winner
    return None


def _resolve_by_credibility(
    directional: List[SignalScore],
    credibility: Dict[str, float],
    threshold: float
) -> Optional[str]:
    trusted = {s.direction for s in directional if credibility.get(s.source, 0.0) >= threshold}
    if len(trusted) == 1:
        return trusted.pop()
    return None


def resolve_conflicts(signals: NormalizedSignals, config: OrchestratorConfig) -> ConflictResolution:
    """Pick a direction when directional sources disagree."""
    conflict_config = config.conflict
    directional = _directional(signals.scores)
    directions = {s.direction for s in directional}

    if len(directions) < 2:
        direction = directions.pop() if directions else signals.primary.direction
        return ConflictResolution(
            has_conflict=False,
            method=None,
            resolved_direction=direction,
            resolved=True,
            reason='No conflicting sources',
        )

    resolved_direction = None
    method = None
    for strategy in conflict_config.strategy_order:
        if strategy == RESOLUTION_MAJORITY:
            resolved_direction = _resolve_by_majority(directional, conflict_config.min_agreeing_sources)
        elif strategy == RESOLUTION_CREDIBILITY and conflict_config.allow_conflict_override:
            resolved_direction = _resolve_by_credibility(
                directional,
                conflict_config.source_credibility,
                conflict_config.credibility_override_threshold,
            )
        if resolved_direction is not None:
            method = strategy
            break

    if resolved_direction is None:
        fallback = signals.primary.direction
        counts = Counter(s.direction for s in directional)
        return ConflictResolution(
            has_conflict=True,
            method=RESOLUTION_NONE,
            resolved_direction=fallback,
            resolved=False,
            confidence_penalty=conflict_config.unresolved_penalty,
            overridden_sources=[s.source for s in directional if s.direction != fallback],
            reason=(
                f"Unresolved: {counts[LONG]} LONG vs {counts[SHORT]} SHORT, "
                f"falling back to primary {fallback}"
            ),
        )

    return ConflictResolution(
        has_conflict=True,
        method=method,
        resolved_direction=resolved_direction,
        resolved=True,
        overridden_sources=[s.source for s in directional if s.direction != resolved_direction],
        reason=f"{method} resolved to {resolved_direction}",
    )
