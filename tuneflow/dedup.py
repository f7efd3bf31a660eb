"""Issue deduplication.

Overlapping windows (50% overlap, three axes) mean one physical problem
is usually detected many times.  ``deduplicate_issues`` reduces the raw
detections to at most one issue per (type, axis):

1. Temporal merge -- within a (type, axis) group, issues closer than
   ``merge_gap_us`` merge into one spanning issue.
2. Group collapse -- whatever survives pass 1 collapses into a single
   representative carrying worst-case metrics and the occurrence list.
"""
from __future__ import annotations

from dataclasses import replace

from .config import AnalysisConfig, DEFAULT_CONFIG
from .models import DetectedIssue

SEVERITY_RANK = {"low": 0, "medium": 1, "high": 2}

# Metrics where the larger value is the worse one
_WORST_CASE_METRICS = (
    "overshoot",
    "settling_time",
    "amplitude",
    "rms_error",
    "dterm_activity",
    "motor_saturation",
    "noise_floor",
)


def max_severity(a: str, b: str) -> str:
    """The higher of two severities (``a`` on a tie)."""
    return a if SEVERITY_RANK[a] >= SEVERITY_RANK[b] else b


def group_by_type_axis(issues) -> dict:
    """(type, axis) -> issues, in first-seen order."""
    groups = {}
    for issue in issues:
        groups.setdefault((issue.type, issue.axis), []).append(issue)
    return groups


def _merge_pair(current: DetectedIssue, nxt: DetectedIssue) -> DetectedIssue:
    if nxt.confidence > current.confidence:
        better, other = nxt, current
    else:
        better, other = current, nxt
    peak_time = better.metrics.peak_time
    if peak_time is None:
        peak_time = other.metrics.peak_time
    return replace(
        better,
        time_range=(current.time_range[0], nxt.time_range[1]),
        severity=max_severity(current.severity, nxt.severity),
        confidence=(current.confidence + nxt.confidence) / 2,
        metrics=replace(better.metrics, peak_time=peak_time),
    )


def _temporal_merge(group, merge_gap_us: float) -> list:
    ordered = sorted(group, key=lambda i: i.time_range[0])
    merged = []
    current = ordered[0]
    for nxt in ordered[1:]:
        if nxt.time_range[0] - current.time_range[1] < merge_gap_us:
            current = _merge_pair(current, nxt)
        else:
            merged.append(current)
            current = nxt
    merged.append(current)
    return merged


def _peak_time(issue: DetectedIssue) -> float:
    if issue.metrics.peak_time is not None:
        return issue.metrics.peak_time
    return (issue.time_range[0] + issue.time_range[1]) / 2


def _collapse(group, max_displayed: int) -> DetectedIssue:
    # Highest severity, then highest confidence, keeps its description
    representative = group[0]
    for issue in group[1:]:
        rank, best_rank = SEVERITY_RANK[issue.severity], SEVERITY_RANK[representative.severity]
        if rank > best_rank or (rank == best_rank and issue.confidence > representative.confidence):
            representative = issue

    count = len(group)
    severity = "low"
    for issue in group:
        severity = max_severity(severity, issue.severity)

    worst = {}
    for name in _WORST_CASE_METRICS:
        values = [getattr(i.metrics, name) for i in group if getattr(i.metrics, name) is not None]
        if values:
            base = getattr(representative.metrics, name)
            worst[name] = max(values + ([base] if base is not None else []))

    if count > max_displayed:
        displayed = sorted(group, key=lambda i: i.confidence, reverse=True)[:max_displayed]
        displayed.sort(key=lambda i: i.time_range[0])
    else:
        displayed = list(group)

    return replace(
        representative,
        severity=severity,
        confidence=sum(i.confidence for i in group) / count,
        time_range=(
            min(i.time_range[0] for i in group),
            max(i.time_range[1] for i in group),
        ),
        description=f"{representative.description} (×{count})",
        metrics=replace(representative.metrics, **worst),
        occurrences=[i.time_range for i in group],
        displayed_occurrences=[i.time_range for i in displayed],
        peak_times=[_peak_time(i) for i in displayed],
        total_occurrences=count,
    )


def deduplicate_issues(issues, config: AnalysisConfig = DEFAULT_CONFIG) -> list:
    """Reduce raw detections to at most one issue per (type, axis).

    Parameters
    ----------
    issues : sequence of DetectedIssue
        Raw per-window detections, in detection order.  Not modified.
    config : AnalysisConfig
        ``merge_gap_us`` and ``max_displayed_occurrences``.

    Returns
    -------
    list of DetectedIssue
        One issue per (type, axis) group, groups in first-seen order.
        Collapsed issues carry the full occurrence list (``occurrences``),
        the most confident few re-sorted by time
        (``displayed_occurrences``/``peak_times``) and ``total_occurrences``.
    """
    result = []
    for group in group_by_type_axis(issues).values():
        merged = _temporal_merge(group, config.merge_gap_us)
        if len(merged) == 1:
            result.append(merged[0])
        else:
            result.append(_collapse(merged, config.max_displayed_occurrences))
    return result
