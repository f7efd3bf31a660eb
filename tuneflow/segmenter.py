"""Split a flight into overlapping per-axis analysis windows.

Windows are 100 ms long (never fewer than 50 frames) and step by half a
window.  The same index ranges are produced for roll, pitch and yaw, so
every stretch of flight is looked at three times, once per axis.
"""
from __future__ import annotations

import logging

import numpy as np

from .config import DEFAULT_CONFIG, AnalysisConfig
from .models import AXES, AnalysisWindow, FrameData, LogMetadata, WindowMetadata

logger = logging.getLogger(__name__)

SETPOINT_PRESENT_DPS = 5.0      # below this the setpoint field is treated as unlogged
STICK_INPUT_SETPOINT_RMS = 30.0
STICK_INPUT_RC_RMS = 10.0


def window_size_for(sample_rate: float, config: AnalysisConfig = DEFAULT_CONFIG) -> int:
    return max(config.min_window_frames, int(sample_rate * config.window_duration_ms / 1000.0))


def classify_flight_phase(
    avg_throttle: float,
    max_setpoint: float,
    has_stick_input: bool,
    max_throttle_drop: float,
    axis: str,
) -> str:
    """Ordered decision list; the first matching phase wins."""
    if avg_throttle < 1050:
        return "idle"
    if max_setpoint > 400:
        return "roll" if axis == "roll" else "flip"
    if avg_throttle > 1700 and has_stick_input:
        return "punch"
    # Propwash needs an actual chop, not just low throttle
    if max_throttle_drop > 80 and not has_stick_input:
        return "propwash"
    if avg_throttle < 1300:
        return "hover"
    return "cruise"


def _max_throttle_drop(throttle: np.ndarray) -> float:
    step = max(1, len(throttle) // 10)
    if len(throttle) <= step:
        return 0.0
    drops = throttle[:-step:step] - throttle[step::step]
    return float(max(0.0, drops.max()))


def segment_log(
    frames: FrameData,
    metadata: LogMetadata,
    config: AnalysisConfig = DEFAULT_CONFIG,
) -> list:
    """Build the analysis windows for a whole log.

    Parameters
    ----------
    frames : FrameData
    metadata : LogMetadata
        Only ``sample_rate`` is used.
    config : AnalysisConfig
        Window duration and minimum size.

    Returns
    -------
    list of AnalysisWindow
        All roll windows first, then pitch, then yaw.  Empty when the log is
        not longer than one window.
    """
    size = window_size_for(metadata.sample_rate, config)
    step = max(1, size // 2)
    n = len(frames)
    starts = range(0, n - size, step)
    logger.debug("Segmenting %d frames: window %d frames, step %d", n, size, step)

    windows = []
    for axis_idx, axis in enumerate(AXES):
        setpoint_abs = np.abs(frames.setpoint[axis_idx])
        rc_abs = np.abs(frames.rc_command[axis_idx])
        for start in starts:
            stop = start + size
            throttle = frames.throttle[start:stop]
            avg_throttle = float(throttle.mean())

            # Some logs carry an all-zero setpoint field; fall back to stick command
            sp = setpoint_abs[start:stop]
            using_setpoint = sp.max() > SETPOINT_PRESENT_DPS
            values = sp if using_setpoint else rc_abs[start:stop]
            max_setpoint = float(values.max())
            rms_setpoint = float(np.sqrt(np.mean(values ** 2)))
            threshold = STICK_INPUT_SETPOINT_RMS if using_setpoint else STICK_INPUT_RC_RMS
            has_input = rms_setpoint > threshold

            phase = classify_flight_phase(
                avg_throttle, max_setpoint, has_input, _max_throttle_drop(throttle), axis,
            )
            windows.append(AnalysisWindow(
                axis=axis,
                start_index=start,
                end_index=stop,
                start_time=float(frames.time[start]),
                end_time=float(frames.time[stop - 1]),
                metadata=WindowMetadata(
                    avg_throttle=avg_throttle,
                    max_setpoint=max_setpoint,
                    rms_setpoint=rms_setpoint,
                    has_stick_input=bool(has_input),
                    flight_phase=phase,
                ),
            ))

    return windows
