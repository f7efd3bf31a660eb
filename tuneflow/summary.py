"""Result summary and flight timeline."""
from __future__ import annotations

import numpy as np

from .config import AnalysisConfig, DEFAULT_CONFIG
from .models import AnalysisSummary, FlightSegment


def overall_health(high: int, medium: int, low: int) -> str:
    if high > 3:
        return "poor"
    if high > 0 or medium > 5:
        return "needsWork"
    if medium > 0 or low > 3:
        return "good"
    return "excellent"


def generate_summary(issues, recommendations) -> AnalysisSummary:
    """Severity counts, health bucket and the titles of the top 3 recommendations.

    ``recommendations`` should already be sorted by priority.
    """
    high = sum(1 for i in issues if i.severity == "high")
    medium = sum(1 for i in issues if i.severity == "medium")
    low = sum(1 for i in issues if i.severity == "low")
    return AnalysisSummary(
        overall_health=overall_health(high, medium, low),
        high_issue_count=high,
        medium_issue_count=medium,
        low_issue_count=low,
        top_priorities=[r.title for r in recommendations[:3]],
    )


def segment_phase(avg_throttle: float) -> str:
    """Coarse phase from throttle alone (the timeline has no per-axis view)."""
    if avg_throttle < 1050:
        return "idle"
    if avg_throttle > 1700:
        return "punch"
    if avg_throttle < 1300:
        return "hover"
    return "cruise"


def format_segment_description(phase: str, start_time: float, end_time: float) -> str:
    """E.g. ``"Hover (4.2s)"`` or ``"Cruise (1m:05s)"``."""
    seconds = (end_time - start_time) / 1_000_000
    if seconds >= 60:
        duration = f"{int(seconds // 60)}m:{int(seconds % 60):02d}s"
    else:
        duration = f"{seconds:.1f}s"
    return f"{phase.capitalize()} ({duration})"


def _overlapping(time_ranges, start: float, end: float) -> int:
    return sum(1 for lo, hi in time_ranges if lo <= end and hi >= start)


def generate_flight_segments(frames, issues, config: AnalysisConfig = DEFAULT_CONFIG) -> list:
    """Fixed-size frame blocks classified by throttle, adjacent equal phases merged.

    Issue counts are taken against the merged ranges and use each issue's
    full occurrence list, so a collapsed issue counts once per occurrence
    it had inside the segment.
    """
    n = len(frames)
    size = config.segment_frames
    segments = []
    for start in range(0, n, size):
        stop = min(start + size, n)
        start_time = float(frames.time[start])
        end_time = float(frames.time[stop - 1])
        phase = segment_phase(float(np.mean(frames.throttle[start:stop])))

        if segments and segments[-1].phase == phase:
            last = segments[-1]
            last.end_time = end_time
            last.description = format_segment_description(phase, last.start_time, end_time)
            continue
        segments.append(FlightSegment(
            id=f"segment-{start}",
            start_time=start_time,
            end_time=end_time,
            phase=phase,
            description=format_segment_description(phase, start_time, end_time),
        ))

    for seg in segments:
        seg.issue_count = sum(
            _overlapping(issue.occurrences or [issue.time_range], seg.start_time, seg.end_time)
            for issue in issues
        )
    return segments
