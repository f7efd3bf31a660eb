"""Cross-axis correlation of deduplicated issues.

Which axes an issue shows up on says a lot about its cause: the same
problem on all three axes is usually frame-wide, a single axis points at
that axis's tune, and an odd pair (roll+yaw, pitch+yaw) often means
physical asymmetry.
"""
from __future__ import annotations

from dataclasses import replace

from .config import AnalysisConfig, DEFAULT_CONFIG
from .dedup import SEVERITY_RANK
from .ids import IdGenerator
from .models import (
    AXES,
    BEARING_NOISE,
    CG_OFFSET,
    CrossAxisContext,
    ESC_DESYNC,
    FRAME_RESONANCE,
    HARDWARE_CHECK,
    MECHANICAL_EVENT,
    MOTOR_IMBALANCE,
    MOTOR_SATURATION,
    Recommendation,
    THERMAL_DEGRADATION,
    VOLTAGE_SAG,
)

# Only ever detected on one axis, so there is nothing to correlate
GLOBAL_ISSUE_TYPES = frozenset({
    CG_OFFSET,
    MOTOR_IMBALANCE,
    ESC_DESYNC,
    VOLTAGE_SAG,
    MOTOR_SATURATION,
    THERMAL_DEGRADATION,
    MECHANICAL_EVENT,
})

FREQUENCY_MERGE_TYPES = frozenset({FRAME_RESONANCE, BEARING_NOISE})

ISSUE_TYPE_LABELS = {
    "bounceback": "Bounceback",
    "propwash": "Propwash",
    "midThrottleWobble": "Mid-throttle wobble",
    "highFrequencyNoise": "High-frequency noise",
    "lowFrequencyOscillation": "Low-frequency oscillation",
    "gyroNoise": "Gyro noise",
    "dtermNoise": "D-term noise",
    "feedforwardNoise": "Feedforward noise",
    "highThrottleOscillation": "High-throttle oscillation",
    "underdamped": "Underdamped tracking",
    "overdamped": "Overdamped tracking",
    "overFiltering": "Over-filtering",
    "bearingNoise": "Bearing noise",
    "frameResonance": "Frame resonance",
    "electricalNoise": "Electrical noise",
    "filterMismatch": "Filter mismatch",
}


def format_issue_type(issue_type: str) -> str:
    """Human label for an issue type; unknown types come back unchanged."""
    return ISSUE_TYPE_LABELS.get(issue_type, issue_type)


def _axis_order(axes) -> tuple:
    return tuple(sorted(axes, key=AXES.index))


def classify_pattern(affected_axes) -> CrossAxisContext:
    """Name the pattern formed by the set of axes an issue type appears on."""
    axes = tuple(affected_axes)
    count = len(axes)

    if count == 3:
        return CrossAxisContext(
            "allAxes", axes,
            "Same issue on all three axes - likely a frame-wide or global configuration problem",
        )
    if count == 2 and "roll" in axes and "pitch" in axes:
        return CrossAxisContext(
            "rollPitchOnly", axes,
            "Affects roll and pitch equally - likely a systematic issue (vibration, filtering, PID balance)",
        )
    if count == 1 and axes[0] == "yaw":
        return CrossAxisContext(
            "yawOnly", axes,
            "Only affects yaw - likely yaw-specific (motor timing, prop torque, yaw PID)",
        )
    if count == 1:
        return CrossAxisContext(
            "singleAxis", axes,
            f"Only affects {axes[0]} - check for physical asymmetry or axis-specific PID issues",
        )
    return CrossAxisContext(
        "asymmetric", axes,
        f"Asymmetric pattern ({', '.join(axes)}) - check for physical damage or weight imbalance",
    )


def _cross_axis_recommendation(issue_type, issues, context, ids):
    if context.pattern not in ("allAxes", "asymmetric"):
        return None

    anchor = issues[0]
    for issue in issues[1:]:
        if SEVERITY_RANK[issue.severity] > SEVERITY_RANK[anchor.severity]:
            anchor = issue

    label = format_issue_type(issue_type)
    if context.pattern == "allAxes":
        return Recommendation(
            id=ids.recommendation(),
            issue_id=anchor.id,
            type=HARDWARE_CHECK,
            priority=5,
            confidence=min(0.85, anchor.confidence * 0.9),
            title=f"{label} detected on all axes",
            description=context.description,
            rationale=(
                "When the same issue appears on all three axes at once it usually "
                "points to a frame-wide cause: vibration, loose hardware or a global "
                "configuration problem rather than an axis-specific tune issue."
            ),
            risks=["May require physical inspection", "Could be normal for certain frame types"],
            expected_improvement="Finding the root cause can resolve the issue on all axes at once",
            category="hardware",
        )
    return Recommendation(
        id=ids.recommendation(),
        issue_id=anchor.id,
        type=HARDWARE_CHECK,
        priority=4,
        confidence=min(0.75, anchor.confidence * 0.8),
        title=f"Asymmetric {label} pattern",
        description=context.description,
        rationale=(
            "An asymmetric pattern, where one axis is affected but its counterpart is "
            "not, often means physical asymmetry: a bent prop, a damaged motor, a loose "
            "arm or uneven weight distribution."
        ),
        risks=["Requires physical inspection", "May be normal for asymmetric builds"],
        expected_improvement="Fixing the mechanical issue removes the root cause",
        category="hardware",
    )


def correlate_axes(issues, ids: IdGenerator = None):
    """Annotate issues with their cross-axis pattern.

    Returns ``(annotated_issues, cross_axis_recommendations)``.  Issues are
    regrouped by type (first-seen order); severities are untouched.
    Global types pass through without a context.  ``allAxes`` and
    ``asymmetric`` groups each get one hardware-check recommendation
    anchored to the group's most severe issue.
    """
    if ids is None:
        ids = IdGenerator()

    by_type = {}
    for issue in issues:
        by_type.setdefault(issue.type, []).append(issue)

    annotated = []
    recommendations = []
    for issue_type, group in by_type.items():
        if issue_type in GLOBAL_ISSUE_TYPES:
            annotated.extend(group)
            continue

        affected = list(dict.fromkeys(i.axis for i in group))
        context = classify_pattern(affected)
        annotated.extend(replace(i, cross_axis_context=context) for i in group)

        rec = _cross_axis_recommendation(issue_type, group, context, ids)
        if rec is not None:
            recommendations.append(rec)

    return annotated, recommendations


# ── Frequency merge ──────────────────────────────────────────────────────────

def _cluster_by_frequency(issues, tolerance: float) -> list:
    ordered = sorted(issues, key=lambda i: i.metrics.frequency)
    clusters = [[ordered[0]]]
    mean = ordered[0].metrics.frequency
    for issue in ordered[1:]:
        freq = issue.metrics.frequency
        if mean > 0 and abs(freq - mean) / mean <= tolerance:
            clusters[-1].append(issue)
            mean = sum(i.metrics.frequency for i in clusters[-1]) / len(clusters[-1])
        else:
            clusters.append([issue])
            mean = freq
    return clusters


def _pick_winner(cluster):
    """Highest severity, then amplitude, then confidence."""
    best = cluster[0]
    for issue in cluster[1:]:
        sev_diff = SEVERITY_RANK[issue.severity] - SEVERITY_RANK[best.severity]
        if sev_diff:
            if sev_diff > 0:
                best = issue
            continue
        amp_diff = (issue.metrics.amplitude or 0.0) - (best.metrics.amplitude or 0.0)
        if amp_diff:
            if amp_diff > 0:
                best = issue
            continue
        if issue.confidence > best.confidence:
            best = issue
    return best


def _merged_context(winner_axis: str, axes: tuple) -> CrossAxisContext:
    if len(axes) == 3:
        pattern = "allAxes"
        description = f"Strongest on {winner_axis}, but present on all axes"
    else:
        pattern = "rollPitchOnly" if len(axes) == 2 and "yaw" not in axes else "asymmetric"
        others = ", ".join(a for a in axes if a != winner_axis)
        description = f"Strongest on {winner_axis}, also on {others}"
    return CrossAxisContext(pattern, axes, description)


def _remap(recommendations, id_map: dict) -> list:
    if not id_map:
        return list(recommendations)
    remapped = []
    for rec in recommendations:
        related = rec.related_issue_ids
        if related is not None:
            related = [id_map.get(i, i) for i in related]
        remapped.append(replace(
            rec,
            issue_id=id_map.get(rec.issue_id, rec.issue_id),
            related_issue_ids=related,
        ))
    return remapped


def merge_frequency_issues(issues, recommendations, config: AnalysisConfig = DEFAULT_CONFIG):
    """Collapse same-frequency structural issues reported on several axes.

    Frame resonance and bearing noise shake every gyro axis.  Issues of
    those types whose frequencies sit within ``frequency_cluster_tolerance``
    of their cluster's running mean collapse to the most affected one,
    and recommendations that pointed at a removed issue are re-pointed at
    the survivor.

    Returns ``(issues, recommendations)``.  Non-mergeable issues keep their
    order and come first; survivors follow.
    """
    passthrough = []
    eligible = {}
    for issue in issues:
        if issue.type in FREQUENCY_MERGE_TYPES and issue.metrics.frequency is not None:
            eligible.setdefault(issue.type, []).append(issue)
        else:
            passthrough.append(issue)

    if not eligible:
        return list(issues), list(recommendations)

    id_map = {}
    survivors = []
    for group in eligible.values():
        for cluster in _cluster_by_frequency(group, config.frequency_cluster_tolerance):
            if len(cluster) == 1:
                survivors.append(cluster[0])
                continue
            winner = _pick_winner(cluster)
            axes = _axis_order(i.axis for i in cluster)
            survivors.append(replace(winner, cross_axis_context=_merged_context(winner.axis, axes)))
            for loser in cluster:
                if loser.id != winner.id:
                    id_map[loser.id] = winner.id

    return passthrough + survivors, _remap(recommendations, id_map)
