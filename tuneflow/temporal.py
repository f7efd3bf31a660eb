"""Temporal progression -- how each issue develops over the flight.

Works on the raw per-window detections (before deduplication throws away
the timing) and annotates the deduplicated issues with a trend.  Flights
shorter than ``min_flight_duration_us`` are too short for a trend to mean
anything and pass through untouched.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Optional

import numpy as np

from .config import AnalysisConfig, DEFAULT_CONFIG
from .dedup import group_by_type_axis
from .ids import IdGenerator
from .models import (
    BEARING_NOISE,
    DetectedIssue,
    ESC_DESYNC,
    FRAME_RESONANCE,
    HIGH_FREQUENCY_NOISE,
    IssueMetrics,
    MECHANICAL_EVENT,
    MOTOR_IMBALANCE,
    TemporalPattern,
    THERMAL_DEGRADATION,
)

logger = logging.getLogger(__name__)

MECHANICAL_ISSUE_TYPES = frozenset({
    BEARING_NOISE,
    FRAME_RESONANCE,
    MOTOR_IMBALANCE,
    ESC_DESYNC,
    HIGH_FREQUENCY_NOISE,
})

_STABLE = TemporalPattern(
    trend="stable",
    description="Issue severity is consistent throughout the flight",
    confidence=0.5,
)

_DEMOTE = {"high": "medium", "medium": "low", "low": "low"}


def _midpoint(issue: DetectedIssue) -> float:
    return (issue.time_range[0] + issue.time_range[1]) / 2


def severity_proxy(issue: DetectedIssue) -> float:
    """The metric that best tracks how bad one detection was."""
    m = issue.metrics
    for value in (m.amplitude, m.noise_floor, m.overshoot, m.rms_error, m.motor_saturation):
        if value is not None:
            return value
    return issue.confidence


def normalized_slope(t, values) -> Optional[float]:
    """Least-squares slope of ``values`` over ``t``, divided by the mean value.

    Dividing by the mean makes slopes of differently scaled metrics
    comparable.  Returns None for fewer than three points, a degenerate
    time axis or a zero mean.
    """
    t = np.asarray(t, dtype=np.float64)
    values = np.asarray(values, dtype=np.float64)
    n = len(t)
    if n < 3:
        return None

    denom = n * np.sum(t * t) - np.sum(t) ** 2
    if abs(denom) < 1e-10:
        return None
    raw = (n * np.sum(t * values) - np.sum(t) * np.sum(values)) / denom

    mean = values.mean()
    if abs(mean) < 1e-10:
        return None
    return float(raw / mean)


def classify_trend(group, flight_start: float, flight_duration: float,
                   config: AnalysisConfig = DEFAULT_CONFIG) -> TemporalPattern:
    """Trend of one (type, axis) group of raw detections.

    Quartile occupancy is checked first (sudden onset, early only, late
    onset); otherwise the normalized regression slope of the severity
    proxy decides between worsening, improving and stable.
    """
    ordered = sorted(group, key=lambda i: i.time_range[0])
    mids = np.array([_midpoint(i) for i in ordered])

    q1_end = flight_start + flight_duration * 0.25
    half_end = flight_start + flight_duration * 0.5
    q3_end = flight_start + flight_duration * 0.75

    q1 = int(np.count_nonzero(mids < q1_end))
    first_half = int(np.count_nonzero(mids < half_end))
    q4 = int(np.count_nonzero(mids >= q3_end))
    total = len(ordered)
    second_half = total - first_half

    if first_half <= 1 and second_half >= config.min_temporal_occurrences:
        return TemporalPattern(
            trend="suddenOnset",
            description="Issues appeared suddenly mid-flight, suggesting something changed during the flight",
            confidence=0.7,
            likely_cause="mechanical",
        )
    if first_half > total * 0.7 and q4 == 0:
        return TemporalPattern(
            trend="earlyOnly",
            description="Issues present mainly at the start of the flight and fade away, likely a warmup effect",
            confidence=0.65,
            likely_cause="coldStart",
        )
    if second_half > total * 0.7 and q1 == 0:
        return TemporalPattern(
            trend="lateOnset",
            description="Issues appeared later in the flight, could indicate thermal buildup or battery sag",
            confidence=0.65,
            likely_cause="thermal",
        )

    t = (mids - flight_start) / flight_duration
    slope = normalized_slope(t, [severity_proxy(i) for i in ordered])
    if slope is None:
        return _STABLE

    threshold = config.trend_slope_threshold
    if slope > threshold:
        return TemporalPattern(
            trend="worsening",
            description=(
                "This issue gets progressively worse over the flight, may indicate "
                "thermal degradation or battery sag"
            ),
            confidence=min(0.85, 0.5 + abs(slope) * 0.3),
            likely_cause="thermal",
        )
    if slope < -threshold:
        return TemporalPattern(
            trend="improving",
            description="This issue improves over the flight, likely a cold-start or warmup effect",
            confidence=min(0.85, 0.5 + abs(slope) * 0.3),
            likely_cause="coldStart",
        )
    return _STABLE


def _meta_issues(patterns: dict, groups: dict, flight_start: float, flight_end: float,
                 ids: IdGenerator) -> list:
    meta = []

    worsening = {}
    for (issue_type, axis), pattern in patterns.items():
        if pattern.trend == "worsening":
            worsening.setdefault(axis, []).append(issue_type)

    for axis, types in worsening.items():
        if len(types) < 2:
            continue
        meta.append(DetectedIssue(
            id=ids.issue(),
            type=THERMAL_DEGRADATION,
            severity="medium",
            axis=axis,
            time_range=(flight_start, flight_end),
            description=(
                f"Multiple issues worsening over flight on {axis}: "
                f"{', '.join(types)}, likely thermal degradation"
            ),
            metrics=IssueMetrics(),
            confidence=0.7,
            temporal_pattern=TemporalPattern(
                trend="worsening",
                description="Multiple issues degrading together suggests a thermal root cause",
                confidence=0.7,
                likely_cause="thermal",
            ),
        ))

    sudden = {}
    for (issue_type, axis), pattern in patterns.items():
        if pattern.trend == "suddenOnset" and issue_type in MECHANICAL_ISSUE_TYPES:
            sudden.setdefault(axis, []).append(issue_type)

    for axis, types in sudden.items():
        earliest = min(i.time_range[0] for t in types for i in groups[(t, axis)])
        meta.append(DetectedIssue(
            id=ids.issue(),
            type=MECHANICAL_EVENT,
            severity="high",
            axis=axis,
            time_range=(earliest, flight_end),
            description=(
                f"Sudden onset of {', '.join(types)} on {axis} mid-flight, "
                "inspect for physical damage"
            ),
            metrics=IssueMetrics(),
            confidence=0.65,
            temporal_pattern=TemporalPattern(
                trend="suddenOnset",
                description="Mechanical issue appeared suddenly, suggesting physical damage or a prop strike",
                confidence=0.65,
                likely_cause="mechanical",
            ),
        ))

    return meta


def analyze_temporal_progression(raw_issues, issues, time, ids: IdGenerator = None,
                                 config: AnalysisConfig = DEFAULT_CONFIG):
    """Classify per-(type, axis) trends and synthesize flight-long meta-issues.

    Parameters
    ----------
    raw_issues : sequence of DetectedIssue
        Detections before deduplication.
    issues : sequence of DetectedIssue
        Deduplicated issues to annotate.
    time : 1-D array
        Frame timestamps (µs).
    ids : IdGenerator
        Source of ids for meta-issues.
    config : AnalysisConfig

    Returns
    -------
    (annotated, meta_issues)
        ``annotated`` matches ``issues`` one-to-one, with
        ``temporal_pattern`` set where a trend was computed.  Early-only
        cold-start issues are demoted one severity level.
    """
    if ids is None:
        ids = IdGenerator()
    time = np.asarray(time, dtype=np.float64)
    if time.size == 0:
        return list(issues), []

    flight_start, flight_end = float(time[0]), float(time[-1])
    duration = flight_end - flight_start
    if duration < config.min_flight_duration_us:
        logger.debug("Flight %.1f s too short for trend analysis", duration / 1e6)
        return list(issues), []

    groups = group_by_type_axis(raw_issues)
    patterns = {
        key: classify_trend(group, flight_start, duration, config)
        for key, group in groups.items()
        if len(group) >= config.min_temporal_occurrences
    }

    annotated = []
    for issue in issues:
        pattern = patterns.get((issue.type, issue.axis))
        if pattern is None:
            annotated.append(issue)
            continue
        severity = issue.severity
        if pattern.trend == "earlyOnly" and pattern.likely_cause == "coldStart":
            severity = _DEMOTE[severity]
        annotated.append(replace(issue, temporal_pattern=pattern, severity=severity))

    meta = _meta_issues(patterns, groups, flight_start, flight_end, ids)
    return annotated, meta
