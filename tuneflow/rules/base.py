"""Shared rule contract and helpers.

A rule is any object with the attributes and three methods of
``TuningRule``.  Rules hold no state between calls: ``condition`` gates a
window cheaply, ``detect`` turns one window into zero or more issues, and
``recommend`` turns the deduplicated issues it owns into recommendations.

Everything a rule needs beyond the frames travels in ``RuleContext``:
the quad profile, the log metadata (may be None) and the id generator
for the current run.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

import numpy as np

from ..ids import IdGenerator
from ..models import (
    AXIS_INDEX,
    AnalysisWindow,
    DetectedIssue,
    FrameData,
    IssueMetrics,
    LogMetadata,
    ParameterChange,
    Recommendation,
)
from ..profiles import DEFAULT_PROFILE, QuadProfile
from ..analyzers.events import derive_sample_rate


@dataclass
class RuleContext:
    profile: QuadProfile = DEFAULT_PROFILE
    metadata: Optional[LogMetadata] = None
    ids: Optional[IdGenerator] = None

    def __post_init__(self):
        if self.ids is None:
            self.ids = IdGenerator()


class TuningRule(Protocol):
    id: str
    name: str
    description: str
    base_confidence: float
    issue_types: tuple
    applicable_axes: tuple

    def condition(self, window: AnalysisWindow, frames: FrameData) -> bool:
        ...

    def detect(self, window: AnalysisWindow, frames: FrameData, context: RuleContext) -> list:
        ...

    def recommend(self, issues: Sequence[DetectedIssue], frames: FrameData,
                  context: RuleContext) -> list:
        ...


@dataclass
class AxisSlice:
    """One axis of a frame range, as plain arrays."""
    time: np.ndarray
    gyro: np.ndarray
    setpoint: np.ndarray
    p_term: np.ndarray
    i_term: np.ndarray
    d_term: np.ndarray
    pid_sum: np.ndarray
    throttle: np.ndarray
    motors: np.ndarray                  # (num_motors, n)
    feedforward: Optional[np.ndarray] = None

    def __len__(self) -> int:
        return len(self.time)

    @property
    def sample_rate(self) -> float:
        return derive_sample_rate(self.time)


def axis_slice(frames: FrameData, axis: str, start: int, stop: int) -> AxisSlice:
    a = AXIS_INDEX[axis]
    ff = frames.feedforward[a, start:stop] if frames.feedforward is not None else None
    return AxisSlice(
        time=frames.time[start:stop],
        gyro=frames.gyro[a, start:stop],
        setpoint=frames.setpoint[a, start:stop],
        p_term=frames.pid_p[a, start:stop],
        i_term=frames.pid_i[a, start:stop],
        d_term=frames.pid_d[a, start:stop],
        pid_sum=frames.pid_sum[a, start:stop],
        throttle=frames.throttle[start:stop],
        motors=frames.motors[:, start:stop],
        feedforward=ff,
    )


def window_slice(frames: FrameData, window: AnalysisWindow) -> AxisSlice:
    return axis_slice(frames, window.axis, window.start_index, window.end_index)


def make_issue(
    context: RuleContext,
    issue_type: str,
    severity: str,
    window: AnalysisWindow,
    description: str,
    metrics: IssueMetrics,
    confidence: float,
    axis: Optional[str] = None,
) -> DetectedIssue:
    return DetectedIssue(
        id=context.ids.issue(),
        type=issue_type,
        severity=severity,
        axis=axis or window.axis,
        time_range=(window.start_time, window.end_time),
        description=description,
        metrics=metrics,
        confidence=float(min(1.0, max(0.0, confidence))),
    )


def make_recommendation(
    context: RuleContext,
    issue: DetectedIssue,
    rec_type: str,
    priority: int,
    confidence: float,
    title: str,
    description: str,
    rationale: str,
    risks: Sequence[str] = (),
    changes: Sequence[ParameterChange] = (),
    expected_improvement: str = "",
    category: str = "software",
) -> Recommendation:
    return Recommendation(
        id=context.ids.recommendation(),
        issue_id=issue.id,
        type=rec_type,
        priority=priority,
        confidence=float(min(1.0, max(0.0, confidence))),
        title=title,
        description=description,
        rationale=rationale,
        risks=list(risks),
        changes=list(changes),
        expected_improvement=expected_improvement,
        category=category,
    )


def change(parameter: str, recommended_change: str, explanation: str,
           axis: Optional[str] = None) -> ParameterChange:
    return ParameterChange(
        parameter=parameter,
        recommended_change=recommended_change,
        explanation=explanation,
        axis=axis,
    )


def no_stick_input(window: AnalysisWindow) -> bool:
    return not window.metadata.has_stick_input


def throttle_between(window: AnalysisWindow, low: float, high: float) -> bool:
    return low <= window.metadata.avg_throttle <= high
