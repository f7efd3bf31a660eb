"""Data models for tuneflow.

Frames come in two shapes: ``Frame`` is one sampled instant as a log
decoder would hand it over, ``FrameData`` is the same flight stored
column-wise as numpy arrays.  Every analysis function works on
``FrameData``; the engine converts a ``Frame`` sequence once on entry.
"""
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from typing import Optional, Sequence

import numpy as np


AXES = ("roll", "pitch", "yaw")
AXIS_INDEX = {axis: i for i, axis in enumerate(AXES)}

SEVERITIES = ("low", "medium", "high")

# Issue categories
BOUNCEBACK = "bounceback"
PROPWASH = "propwash"
MID_THROTTLE_WOBBLE = "midThrottleWobble"
HIGH_FREQUENCY_NOISE = "highFrequencyNoise"
LOW_FREQUENCY_OSCILLATION = "lowFrequencyOscillation"
MOTOR_SATURATION = "motorSaturation"
GYRO_NOISE = "gyroNoise"
DTERM_NOISE = "dtermNoise"
FEEDFORWARD_NOISE = "feedforwardNoise"
HIGH_THROTTLE_OSCILLATION = "highThrottleOscillation"
UNDERDAMPED = "underdamped"
OVERDAMPED = "overdamped"
OVER_FILTERING = "overFiltering"
CG_OFFSET = "cgOffset"
MOTOR_IMBALANCE = "motorImbalance"
BEARING_NOISE = "bearingNoise"
FRAME_RESONANCE = "frameResonance"
ELECTRICAL_NOISE = "electricalNoise"
ESC_DESYNC = "escDesync"
VOLTAGE_SAG = "voltageSag"
FILTER_MISMATCH = "filterMismatch"
THERMAL_DEGRADATION = "thermalDegradation"
MECHANICAL_EVENT = "mechanicalEvent"

# Recommendation types
INCREASE_PID = "increasePID"
DECREASE_PID = "decreasePID"
ADJUST_FILTERING = "adjustFiltering"
ADJUST_DYNAMIC_IDLE = "adjustDynamicIdle"
ADJUST_TPA = "adjustTPA"
ADJUST_RPM_FILTER = "adjustRPMFilter"
ADJUST_MASTER_MULTIPLIER = "adjustMasterMultiplier"
ADJUST_FEEDFORWARD = "adjustFeedforward"
HARDWARE_CHECK = "hardwareCheck"

# Tunable parameters
PARAMETERS = (
    "pidMasterMultiplier",
    "pidPGain",
    "pidIGain",
    "pidDGain",
    "pidDMinGain",
    "pidFeedforward",
    "gyroFilterMultiplier",
    "dtermFilterMultiplier",
    "dynamicNotchCount",
    "dynamicNotchQ",
    "dynamicNotchMinHz",
    "dynamicNotchMaxHz",
    "rpmFilterHarmonics",
    "rpmFilterMinHz",
    "feedforwardTransition",
    "feedforwardJitterFactor",
    "feedforwardSmoothFactor",
    "dynamicIdle",
    "tpaRate",
    "tpaBreakpoint",
    "itermRelaxCutoff",
)

FLIGHT_PHASES = ("hover", "cruise", "flip", "roll", "punch", "propwash", "idle", "unknown")


# ── Log input ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Frame:
    """One sampled instant of flight-controller telemetry."""
    time: float                     # µs since log start
    gyro: tuple                     # (roll, pitch, yaw) deg/s
    setpoint: tuple                 # (roll, pitch, yaw) deg/s
    pid_p: tuple
    pid_i: tuple
    pid_d: tuple
    pid_sum: tuple
    motors: tuple                   # 1000-2000 per motor
    rc_command: tuple               # (roll, pitch, yaw) in ±500, then throttle
    throttle: float
    feedforward: Optional[tuple] = None


@dataclass
class FrameData:
    """Column-wise flight data.  Per-axis arrays have shape (3, N)."""
    time: np.ndarray                # µs, shape (N,)
    gyro: np.ndarray
    setpoint: np.ndarray
    pid_p: np.ndarray
    pid_i: np.ndarray
    pid_d: np.ndarray
    pid_sum: np.ndarray
    motors: np.ndarray              # shape (num_motors, N)
    rc_command: np.ndarray          # roll/pitch/yaw stick, shape (3, N)
    throttle: np.ndarray            # shape (N,)
    feedforward: Optional[np.ndarray] = None

    def __post_init__(self):
        self.time = np.asarray(self.time, dtype=np.float64)
        n = len(self.time)
        for name in ("gyro", "setpoint", "pid_p", "pid_i", "pid_d", "pid_sum", "rc_command"):
            arr = np.asarray(getattr(self, name), dtype=np.float64).reshape(3, -1)
            if arr.shape[1] != n:
                raise ValueError(f"{name} has {arr.shape[1]} samples, expected {n}")
            setattr(self, name, arr)
        self.motors = np.atleast_2d(np.asarray(self.motors, dtype=np.float64))
        if self.motors.size and self.motors.shape[1] != n:
            raise ValueError(f"motors has {self.motors.shape[1]} samples, expected {n}")
        self.throttle = np.asarray(self.throttle, dtype=np.float64)
        if len(self.throttle) != n:
            raise ValueError(f"throttle has {len(self.throttle)} samples, expected {n}")
        if self.feedforward is not None:
            self.feedforward = np.asarray(self.feedforward, dtype=np.float64).reshape(3, -1)
            if self.feedforward.shape[1] != n:
                raise ValueError(
                    f"feedforward has {self.feedforward.shape[1]} samples, expected {n}"
                )

    def __len__(self) -> int:
        return len(self.time)

    @property
    def motor_count(self) -> int:
        return self.motors.shape[0] if self.motors.size else 0

    @classmethod
    def from_frames(cls, frames: Sequence[Frame]) -> "FrameData":
        """Stack a sequence of ``Frame`` records into arrays."""
        if len(frames) == 0:
            empty3 = np.zeros((3, 0))
            return cls(
                time=np.zeros(0), gyro=empty3, setpoint=empty3, pid_p=empty3,
                pid_i=empty3, pid_d=empty3, pid_sum=empty3,
                motors=np.zeros((4, 0)), rc_command=empty3, throttle=np.zeros(0),
            )

        def _stack(attr):
            return np.array([getattr(f, attr) for f in frames], dtype=np.float64).T

        has_ff = all(f.feedforward is not None for f in frames)
        return cls(
            time=np.array([f.time for f in frames], dtype=np.float64),
            gyro=_stack("gyro"),
            setpoint=_stack("setpoint"),
            pid_p=_stack("pid_p"),
            pid_i=_stack("pid_i"),
            pid_d=_stack("pid_d"),
            pid_sum=_stack("pid_sum"),
            motors=_stack("motors"),
            rc_command=np.array([f.rc_command[:3] for f in frames], dtype=np.float64).T,
            throttle=np.array([f.throttle for f in frames], dtype=np.float64),
            feedforward=_stack("feedforward") if has_ff else None,
        )


@dataclass
class PidProfile:
    """Active PID profile values as read from the log header."""
    roll_p: Optional[float] = None
    roll_i: Optional[float] = None
    roll_d: Optional[float] = None
    roll_d_min: Optional[float] = None
    roll_ff: Optional[float] = None
    pitch_p: Optional[float] = None
    pitch_i: Optional[float] = None
    pitch_d: Optional[float] = None
    pitch_d_min: Optional[float] = None
    pitch_ff: Optional[float] = None
    yaw_p: Optional[float] = None
    yaw_i: Optional[float] = None
    yaw_d: Optional[float] = None
    yaw_d_min: Optional[float] = None
    yaw_ff: Optional[float] = None
    tpa_rate: Optional[float] = None
    tpa_breakpoint: Optional[float] = None
    dynamic_idle: Optional[float] = None
    master_multiplier: Optional[float] = None

    def axis_value(self, axis: str, term: str) -> Optional[float]:
        """Per-axis lookup, e.g. ``axis_value("roll", "ff")``."""
        return getattr(self, f"{axis}_{term}", None)


@dataclass
class FilterSettings:
    """Betaflight filter configuration from the log header."""
    gyro_lpf1_cutoff: Optional[float] = None
    gyro_lpf2_cutoff: Optional[float] = None
    dterm_lpf1_cutoff: Optional[float] = None
    dterm_lpf2_cutoff: Optional[float] = None
    dynamic_notch_count: Optional[int] = None
    dynamic_notch_q: Optional[int] = None
    dynamic_notch_min_hz: Optional[float] = None
    dynamic_notch_max_hz: Optional[float] = None
    rpm_filter_harmonics: Optional[int] = None
    rpm_filter_min_hz: Optional[float] = None
    gyro_filter_multiplier: Optional[float] = None
    dterm_filter_multiplier: Optional[float] = None
    iterm_relax_cutoff: Optional[float] = None


@dataclass
class LogMetadata:
    """Static descriptors of one log.  Read-only for the whole analysis."""
    sample_rate: float              # Hz
    craft_name: Optional[str] = None
    gyro_rate: Optional[float] = None
    motor_count: int = 4
    pid_profile: Optional[PidProfile] = None
    filter_settings: Optional[FilterSettings] = None
    frame_count: int = 0
    duration_us: float = 0.0


# ── Analysis windows ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class WindowMetadata:
    avg_throttle: float
    max_setpoint: float
    rms_setpoint: float
    has_stick_input: bool
    flight_phase: str


@dataclass(frozen=True)
class AnalysisWindow:
    """Contiguous frame slice [start_index, end_index) for one axis."""
    axis: str
    start_index: int
    end_index: int
    start_time: float
    end_time: float
    metadata: WindowMetadata

    @property
    def frame_indices(self) -> range:
        return range(self.start_index, self.end_index)

    @property
    def size(self) -> int:
        return self.end_index - self.start_index


# ── Issues ───────────────────────────────────────────────────────────────────

@dataclass
class IssueMetrics:
    """Supporting measurements for a detected issue.  Unset fields are None."""
    overshoot: Optional[float] = None
    settling_time: Optional[float] = None       # ms
    frequency: Optional[float] = None           # Hz
    amplitude: Optional[float] = None
    rms_error: Optional[float] = None
    dterm_activity: Optional[float] = None
    motor_saturation: Optional[float] = None    # percent
    noise_floor: Optional[float] = None
    dominant_band: Optional[str] = None         # low / mid / high
    normalized_error: Optional[float] = None    # percent of setpoint RMS
    amplitude_ratio: Optional[float] = None     # percent
    signal_to_noise: Optional[float] = None
    phase_lag_ms: Optional[float] = None
    peak_time: Optional[float] = None           # µs
    feedforward_rms: Optional[float] = None
    feedforward_contribution: Optional[float] = None
    suggested_cutoff_hz: Optional[float] = None
    current_cutoff_hz: Optional[float] = None
    filter_direction: Optional[str] = None      # over / under

    def as_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(frozen=True)
class TemporalPattern:
    trend: str                      # worsening, improving, stable, suddenOnset, earlyOnly, lateOnset
    description: str
    confidence: float
    likely_cause: Optional[str] = None      # thermal, coldStart, mechanical


@dataclass(frozen=True)
class CrossAxisContext:
    pattern: str                    # allAxes, rollPitchOnly, yawOnly, singleAxis, asymmetric
    affected_axes: tuple
    description: str


@dataclass
class DetectedIssue:
    id: str
    type: str
    severity: str
    axis: str
    time_range: tuple               # (start µs, end µs)
    description: str
    metrics: IssueMetrics
    confidence: float
    occurrences: Optional[list] = None
    displayed_occurrences: Optional[list] = None
    peak_times: Optional[list] = None
    total_occurrences: Optional[int] = None
    cross_axis_context: Optional[CrossAxisContext] = None
    temporal_pattern: Optional[TemporalPattern] = None


# ── Recommendations ──────────────────────────────────────────────────────────

@dataclass
class ParameterChange:
    parameter: str
    recommended_change: str         # "+5%", "-0.3", or "32"
    explanation: str
    axis: Optional[str] = None
    current_value: Optional[float] = None


@dataclass
class Recommendation:
    id: str
    issue_id: str
    type: str
    priority: int                   # 1-10
    confidence: float
    title: str
    description: str
    rationale: str
    risks: list = field(default_factory=list)
    changes: list = field(default_factory=list)
    expected_improvement: str = ""
    category: str = "software"      # software / hardware
    related_issue_ids: Optional[list] = None
    conflict_context: Optional[str] = None


# ── Results ──────────────────────────────────────────────────────────────────

@dataclass
class AnalysisSummary:
    overall_health: str             # excellent, good, needsWork, poor
    high_issue_count: int
    medium_issue_count: int
    low_issue_count: int
    top_priorities: list


@dataclass
class FlightSegment:
    id: str
    start_time: float
    end_time: float
    phase: str
    description: str
    issue_count: int = 0


@dataclass
class AnalysisResult:
    """Everything one analysis run produces."""
    issues: list                    # list of DetectedIssue
    recommendations: list           # list of Recommendation
    summary: AnalysisSummary
    segments: list                  # list of FlightSegment
