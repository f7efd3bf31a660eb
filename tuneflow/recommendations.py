"""Recommendation conflict resolution.

Different rules can ask for the same parameter to move in different
directions (bounceback wants less P, tracking wants more).  Conflicts are
resolved per (parameter, axis) across every recommendation, so two
recommendations with different titles still cannot both touch the same
slider.

Change strings use one of three forms:

    "+5%" / "-10%"      relative, percent
    "+0.3" / "-50"      relative, absolute units
    "32"                absolute target, no direction
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass, replace
from typing import Optional

from .config import AnalysisConfig, DEFAULT_CONFIG

_PERCENT = re.compile(r"^([+-])(\d+(?:\.\d+)?)%$")
_RELATIVE = re.compile(r"^([+-])(\d+(?:\.\d+)?)$")
_ABSOLUTE = re.compile(r"^(\d+(?:\.\d+)?)$")

PARAMETER_DISPLAY_NAMES = {
    "pidMasterMultiplier": "Master multiplier",
    "pidPGain": "P gain",
    "pidIGain": "I gain",
    "pidDGain": "D gain",
    "pidDMinGain": "D min",
    "pidFeedforward": "Feedforward",
    "gyroFilterMultiplier": "Gyro filter multiplier",
    "dtermFilterMultiplier": "D-term filter multiplier",
    "dynamicNotchCount": "Dynamic notch count",
    "dynamicNotchQ": "Dynamic notch Q",
    "dynamicNotchMinHz": "Dynamic notch min Hz",
    "dynamicNotchMaxHz": "Dynamic notch max Hz",
    "rpmFilterHarmonics": "RPM filter harmonics",
    "rpmFilterMinHz": "RPM filter min Hz",
    "feedforwardTransition": "Feedforward transition",
    "feedforwardJitterFactor": "Feedforward jitter reduction",
    "feedforwardSmoothFactor": "Feedforward smoothing",
    "dynamicIdle": "Dynamic idle",
    "tpaRate": "TPA rate",
    "tpaBreakpoint": "TPA breakpoint",
    "itermRelaxCutoff": "I-term relax cutoff",
}


@dataclass(frozen=True)
class ChangeDirection:
    sign: int               # +1, -1, or 0 for an absolute target
    magnitude: float        # percent changes as a fraction (5% -> 0.05)


def parse_change_direction(text: str) -> Optional[ChangeDirection]:
    """Sign and magnitude of a change string, or None if it has no known form."""
    text = text.strip()
    m = _PERCENT.match(text)
    if m:
        return ChangeDirection(1 if m.group(1) == "+" else -1, float(m.group(2)) / 100)
    m = _RELATIVE.match(text)
    if m:
        return ChangeDirection(1 if m.group(1) == "+" else -1, float(m.group(2)))
    m = _ABSOLUTE.match(text)
    if m:
        return ChangeDirection(0, float(m.group(1)))
    return None


def round_to_increment(value: float, increment: float) -> float:
    """Nearest multiple of ``increment``; halves round up (towards +inf)."""
    return math.floor(value / increment + 0.5) * increment


def _change_key(change) -> tuple:
    return (change.parameter, change.axis)


def _weighted_merge(entries, increment: float):
    """Confidence-weighted net change, or None when the changes cancel."""
    valid = [(c, d, rec) for c, d, rec in entries if d is not None and d.sign != 0]
    numerator = sum(d.sign * d.magnitude * rec.confidence for _, d, rec in valid)
    denominator = sum(rec.confidence for _, _, rec in valid)
    if denominator == 0:
        return None

    net = round_to_increment(numerator / denominator, increment)
    if abs(net) < 1e-9:
        return None

    sign = "+" if net > 0 else "-"
    magnitude = abs(net)
    if any("%" in c.recommended_change for c, _, _ in valid):
        text = f"{sign}{magnitude * 100:.0f}%"
    else:
        text = f"{sign}{magnitude:.2f}"

    first = valid[0][0]
    return replace(
        first,
        recommended_change=text,
        explanation=f"Balanced from {len(valid)} recommendations",
    )


def _pick_winner(indices, recommendations) -> int:
    best = indices[0]
    for idx in indices[1:]:
        cur, top = recommendations[idx], recommendations[best]
        if cur.priority > top.priority or (
            cur.priority == top.priority and cur.confidence > top.confidence
        ):
            best = idx
    return best


def _describe_changes(changes) -> str:
    names = []
    for c in changes:
        name = PARAMETER_DISPLAY_NAMES.get(c.parameter, c.parameter)
        names.append(f"{name} on {c.axis}" if c.axis else name)
    return ", ".join(names)


def deduplicate_recommendations(recommendations, config: AnalysisConfig = DEFAULT_CONFIG) -> list:
    """Resolve parameter conflicts so each (parameter, axis) is changed once.

    Parameters
    ----------
    recommendations : sequence of Recommendation
        Rule output in generation order.  Not modified.
    config : AnalysisConfig
        ``change_increment`` is the rounding step for merged values.

    Returns
    -------
    list of Recommendation
        Surviving recommendations in their original order.  For every
        (parameter, axis) touched more than once the highest priority (then
        confidence) recommendation keeps it.  When the touching changes
        disagree on direction the winner gets their confidence-weighted net
        change instead, or loses the key entirely if the net rounds to zero.
        Losers' issue ids move to the winner's ``related_issue_ids``.
        Recommendations left without changes are dropped; change-less ones
        are deduplicated by title.
    """
    recommendations = list(recommendations)
    if not recommendations:
        return []

    by_key = {}
    for idx, rec in enumerate(recommendations):
        for c in rec.changes:
            by_key.setdefault(_change_key(c), []).append(
                (c, parse_change_direction(c.recommended_change), idx)
            )

    resolved = {}
    absorbed = {}
    for entries in by_key.values():
        if len(entries) == 1:
            c, _, idx = entries[0]
            resolved.setdefault(idx, []).append(c)
            continue

        indices = [idx for _, _, idx in entries]
        winner = _pick_winner(indices, recommendations)

        signs = {d.sign for _, d, _ in entries if d is not None and d.sign != 0}
        if 1 in signs and -1 in signs:
            merged = _weighted_merge(
                [(c, d, recommendations[idx]) for c, d, idx in entries],
                config.change_increment,
            )
            if merged is not None:
                resolved.setdefault(winner, []).append(merged)
        else:
            winner_change = next(c for c, _, idx in entries if idx == winner)
            resolved.setdefault(winner, []).append(winner_change)

        for _, _, idx in entries:
            if idx == winner:
                continue
            loser = recommendations[idx]
            ids = absorbed.setdefault(winner, {})
            ids[loser.issue_id] = None
            for related in loser.related_issue_ids or ():
                ids[related] = None

    result = []
    seen_titles = set()
    for idx, rec in enumerate(recommendations):
        if not rec.changes:
            if rec.title in seen_titles:
                continue
            seen_titles.add(rec.title)
            result.append(rec)
            continue

        changes = resolved.get(idx)
        if not changes:
            continue

        related = dict.fromkeys(rec.related_issue_ids or ())
        for issue_id in absorbed.get(idx, ()):
            if issue_id != rec.issue_id:
                related[issue_id] = None

        originals = {(c.parameter, c.axis, c.recommended_change) for c in rec.changes}
        modified = any(
            (c.parameter, c.axis, c.recommended_change) not in originals for c in changes
        )

        if modified:
            rec = replace(
                rec,
                title=f"Adjust {_describe_changes(changes)}",
                description="Balanced adjustment based on multiple recommendations.",
                conflict_context=(
                    "This value was merged from conflicting recommendations that "
                    "disagreed on direction."
                ),
            )
        result.append(replace(
            rec,
            changes=changes,
            related_issue_ids=list(related) if related else None,
        ))

    return result
