"""Shared synthetic-flight builders."""
import numpy as np
import pytest

from tuneflow.models import (
    AnalysisWindow,
    DetectedIssue,
    FrameData,
    IssueMetrics,
    LogMetadata,
    ParameterChange,
    Recommendation,
    WindowMetadata,
)


def build_flight(
    n=2000,
    sample_rate=1000,
    throttle=1400.0,
    gyro=None,
    setpoint=None,
    dterm=None,
    motors=None,
    feedforward=None,
    rc_command=None,
):
    """Column-wise flight with quiet defaults.

    Per-axis arguments may be a (3, n) array or a single (n,) array that
    is used for roll with zeros on pitch and yaw.  ``throttle`` may be a
    scalar or an (n,) array; motors default to the throttle on all four.
    """

    def _axes(value):
        if value is None:
            return np.zeros((3, n))
        value = np.asarray(value, dtype=np.float64)
        if value.ndim == 1:
            out = np.zeros((3, n))
            out[0] = value
            return out
        return value

    throttle = np.broadcast_to(np.asarray(throttle, dtype=np.float64), (n,)).copy()
    gyro = _axes(gyro)
    setpoint = _axes(setpoint)
    dterm = _axes(dterm)
    if motors is None:
        motors = np.tile(throttle, (4, 1))
    return FrameData(
        time=np.arange(n) / sample_rate * 1e6,
        gyro=gyro,
        setpoint=setpoint,
        pid_p=gyro * 0.3,
        pid_i=np.zeros((3, n)),
        pid_d=dterm,
        pid_sum=gyro * 0.3 + dterm,
        motors=motors,
        rc_command=_axes(rc_command),
        throttle=throttle,
        feedforward=None if feedforward is None else _axes(feedforward),
    )


def build_window(frames, axis="roll", start=0, stop=None, avg_throttle=None,
                 max_setpoint=0.0, rms_setpoint=0.0, has_stick_input=False,
                 flight_phase="hover"):
    """Window over ``frames[start:stop]`` with explicit metadata."""
    if stop is None:
        stop = len(frames)
    if avg_throttle is None:
        avg_throttle = float(frames.throttle[start:stop].mean())
    return AnalysisWindow(
        axis=axis,
        start_index=start,
        end_index=stop,
        start_time=float(frames.time[start]),
        end_time=float(frames.time[stop - 1]),
        metadata=WindowMetadata(
            avg_throttle=avg_throttle,
            max_setpoint=max_setpoint,
            rms_setpoint=rms_setpoint,
            has_stick_input=has_stick_input,
            flight_phase=flight_phase,
        ),
    )


def build_issue(issue_type="propwash", axis="roll", severity="medium", start=0.0,
                end=100_000.0, confidence=0.8, issue_id="issue-1", description=None,
                **metrics):
    """Hand-made issue; extra keyword arguments become IssueMetrics fields."""
    return DetectedIssue(
        id=issue_id,
        type=issue_type,
        severity=severity,
        axis=axis,
        time_range=(float(start), float(end)),
        description=description or f"{issue_type} on {axis}",
        metrics=IssueMetrics(**metrics),
        confidence=confidence,
    )


def build_rec(issue_id="issue-1", changes=(), priority=5, confidence=0.8, title="Test",
              rec_type="increasePID", rec_id="rec-1", category="software"):
    """Hand-made recommendation; ``changes`` holds (parameter, change, axis) tuples."""
    return Recommendation(
        id=rec_id,
        issue_id=issue_id,
        type=rec_type,
        priority=priority,
        confidence=confidence,
        title=title,
        description="test",
        rationale="test",
        changes=[
            ParameterChange(parameter=p, recommended_change=c, explanation="test", axis=a)
            for p, c, a in changes
        ],
        category=category,
    )


@pytest.fixture
def flight():
    return build_flight


@pytest.fixture
def issue():
    return build_issue


@pytest.fixture
def rec():
    return build_rec


@pytest.fixture
def window():
    return build_window


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def metadata():
    return LogMetadata(sample_rate=1000)
