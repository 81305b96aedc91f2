"""Damage scoring for returned items.

Turns the per-face issue tags picked during a return inspection into a point
total and a good/damaged verdict. The server repeats this computation during
the check call and its answer is the one that gets submitted; this copy only
drives the live preview on the station, so it must never fail or block.
"""
from collections import Counter
from typing import Dict, Iterable, Mapping, Optional, Union

from app.schemas.damage import (
    NO_ISSUE,
    Condition,
    DamageAssessment,
    DamageObservation,
    DamagePolicyEntry,
)

DAMAGED_POINTS_THRESHOLD = 12

# issue tag -> highest count that is still acceptable
ISSUE_COUNT_LIMITS = {
    "scratch_heavy": 3,
    "dent_small": 3,
    "dent_large": 1,
    "crack_small": 1,
    "crack_large": 0,
    "deformed": 0,
    "broken": 0,
}

PolicyTable = Mapping[str, float]
PolicySource = Union[PolicyTable, Iterable[DamagePolicyEntry], None]


def policy_table(policy: PolicySource) -> Dict[str, float]:
    """Normalize a damage policy into an issue -> points dict."""
    if not policy:
        return {}
    if isinstance(policy, Mapping):
        return {str(issue): float(points) for issue, points in policy.items()}
    return {entry.issue: float(entry.points) for entry in policy}


def _issue_of(item: Union[DamageObservation, Optional[str]]) -> Optional[str]:
    if isinstance(item, DamageObservation):
        return item.issue
    return item


def score_damage(
    observations: Union[Mapping[str, Optional[str]], Iterable[Union[DamageObservation, Optional[str]]]],
    policy: PolicySource,
) -> DamageAssessment:
    """Compute total damage points and the resulting condition.

    Args:
        observations: face -> issue mapping, or an iterable of observations
            (or bare issue tags). Empty issues and "none" are ignored.
        policy: the damage policy as an issue -> points mapping or a list of
            policy entries. May be empty while it is still loading.

    Returns:
        DamageAssessment with the summed points and "good" or "damaged".
        Issue tags missing from the policy add no points and are not counted
        toward any rule.
    """
    table = policy_table(policy)
    if isinstance(observations, Mapping):
        issues = list(observations.values())
    else:
        issues = [_issue_of(item) for item in observations]

    counts: Counter = Counter(
        issue for issue in issues
        if issue and issue != NO_ISSUE and issue in table
    )
    total_points = sum(table[issue] * count for issue, count in counts.items())

    damaged = total_points > DAMAGED_POINTS_THRESHOLD
    if not damaged:
        damaged = any(counts[issue] > limit for issue, limit in ISSUE_COUNT_LIMITS.items())
    if not damaged:
        # a large dent next to any small dent fails even though neither count does
        damaged = counts["dent_large"] > 0 and counts["dent_small"] > 0

    return DamageAssessment(
        totalPoints=total_points,
        condition=Condition.DAMAGED if damaged else Condition.GOOD,
    )
