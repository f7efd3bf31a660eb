"""Time-domain event detectors for a single axis slice.

Each detector finds a triggering event inside the slice (a stick release,
a throttle chop, motors pinned at full output), measures the response,
and reports ``detected`` plus the measurements.  Windows are sized in
milliseconds and converted with the log's sample rate, so an 8 kHz log
and a 1 kHz log look at the same stretch of time.

Nothing here raises for short or flat input; it just reports
``detected=False``.
"""
from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .spectral import analyze_frequency, calculate_rms, classify_band

MOTOR_SATURATION_LEVEL = 1990   # motor command treated as pinned (1000-2000 scale)


@dataclass
class BouncebackMetrics:
    detected: bool
    overshoot: float = 0.0          # deg/s past setpoint in the opposite direction
    settling_time: float = 0.0      # ms after release
    peak_time: float = 0.0          # ms after release
    peak_timestamp: float = 0.0     # µs, absolute
    oscillation_count: int = 0


@dataclass
class PropwashMetrics:
    detected: bool
    frequency: float = 0.0          # Hz
    amplitude: float = 0.0          # deg/s peak-to-peak error
    duration: float = 0.0           # ms
    dterm_activity: float = 0.0     # D-term RMS


@dataclass
class WobbleMetrics:
    detected: bool
    frequency: float = 0.0
    amplitude: float = 0.0          # gyro RMS, deg/s
    frequency_band: str = "mid"


@dataclass
class MotorSaturationMetrics:
    detected: bool
    saturation_percentage: float = 0.0
    average_motor_output: float = 0.0
    asymmetry: float = 0.0          # coefficient of variation across motors


def detect_bounceback(time, gyro, setpoint, sample_rate: float) -> BouncebackMetrics:
    """Overshoot and settling after the stick snaps back to centre.

    Parameters
    ----------
    time : 1-D array
        Frame timestamps in µs.
    gyro, setpoint : 1-D arrays
        One axis, deg/s.
    sample_rate : float
        Hz.  Sets the 200 ms analysis window and the 15 ms minimum.

    Returns
    -------
    BouncebackMetrics
        ``detected`` when the opposite-direction overshoot exceeds 10 deg/s.
    """
    time = np.asarray(time, dtype=np.float64)
    gyro = np.asarray(gyro, dtype=np.float64)
    setpoint = np.asarray(setpoint, dtype=np.float64)
    n = len(setpoint)
    threshold = 50.0    # deg/s, "significant move"

    # Stick release: setpoint leaves a big deflection and crosses through zero
    release = -1
    for i in range(10, n - 10):
        prev, curr = setpoint[i - 1], setpoint[i]
        if abs(prev) > threshold and np.sign(prev) != np.sign(curr) and abs(curr) < threshold:
            release = i
            break
    if release == -1:
        return BouncebackMetrics(detected=False)

    window_frames = max(50, int(sample_rate * 0.2))
    min_frames = max(20, int(sample_rate * 0.015))
    stop = min(n, release + window_frames)
    if stop - release < min_frames:
        return BouncebackMetrics(detected=False)

    w_time = time[release:stop]
    w_gyro = gyro[release:stop]
    w_sp = setpoint[release:stop]
    error = w_gyro - w_sp

    initial_direction = np.sign(gyro[release - 5])
    peak_overshoot = 0.0
    peak_idx = 0
    for i in range(5, len(error)):
        if np.sign(error[i]) == -initial_direction and abs(error[i]) > peak_overshoot:
            peak_overshoot = abs(error[i])
            peak_idx = i

    # Settled once 10 consecutive samples stay inside 5% of the move (min 5 deg/s)
    band = max(5.0, abs(gyro[release - 5]) * 0.05)
    outside = np.abs(error) > band
    settle_idx = -1
    for i in range(peak_idx, len(error) - 10):
        if not outside[i:i + 10].any():
            settle_idx = i
            break

    release_time = time[release]
    if settle_idx != -1:
        settling_time = (w_time[settle_idx] - release_time) / 1000.0
    else:
        settling_time = (w_time[-1] - release_time) / 1000.0

    signs = np.sign(error)
    oscillations = int(np.count_nonzero(signs[1:] != signs[:-1])) // 2

    return BouncebackMetrics(
        detected=peak_overshoot > 10.0,
        overshoot=float(peak_overshoot),
        settling_time=float(settling_time),
        peak_time=float((w_time[peak_idx] - release_time) / 1000.0),
        peak_timestamp=float(w_time[peak_idx]),
        oscillation_count=oscillations,
    )


def detect_propwash(time, throttle, gyro, setpoint, dterm, sample_rate: float) -> PropwashMetrics:
    """Oscillation in the 150 ms after a throttle chop with centred sticks.

    Trigger: throttle falls by more than 100 over a 30 ms lookback.  The
    error (gyro - setpoint) after the drop is then measured; a 3-80 Hz
    dominant frequency with RMS above 5 deg/s counts as propwash.
    """
    time = np.asarray(time, dtype=np.float64)
    throttle = np.asarray(throttle, dtype=np.float64)
    n = len(throttle)

    drop_threshold = 100.0
    lookback = max(10, int(sample_rate * 0.03))
    trailing = max(50, int(sample_rate * 0.05))

    drop_start = -1
    if n - trailing > lookback:
        drops = throttle[:n - trailing - lookback] - throttle[lookback:n - trailing]
        hits = np.flatnonzero(drops > drop_threshold)
        if hits.size:
            drop_start = int(hits[0]) + lookback
    if drop_start == -1:
        return PropwashMetrics(detected=False)

    window = max(50, int(sample_rate * 0.15))
    min_frames = max(20, int(sample_rate * 0.015))
    stop = min(n, drop_start + window)
    if stop - drop_start < min_frames:
        return PropwashMetrics(detected=False)

    w_gyro = np.asarray(gyro, dtype=np.float64)[drop_start:stop]
    w_sp = np.asarray(setpoint, dtype=np.float64)[drop_start:stop]
    w_d = np.asarray(dterm, dtype=np.float64)[drop_start:stop]

    # Pilot is still steering, not propwash
    if calculate_rms(w_sp) > 50.0:
        return PropwashMetrics(detected=False)

    error = w_gyro - w_sp
    error_rms = calculate_rms(error)
    frequency = analyze_frequency(error, sample_rate).dominant_frequency
    duration = (time[stop - 1] - time[drop_start]) / 1000.0

    return PropwashMetrics(
        detected=error_rms > 5.0 and 3.0 < frequency < 80.0,
        frequency=frequency,
        amplitude=float(error.max() - error.min()),
        duration=float(duration),
        dterm_activity=calculate_rms(w_d),
    )


def detect_mid_throttle_wobble(throttle, gyro, setpoint, sample_rate: float) -> WobbleMetrics:
    """Gyro oscillation at steady mid throttle with no stick input."""
    throttle = np.asarray(throttle, dtype=np.float64)
    if throttle.size == 0:
        return WobbleMetrics(detected=False)

    avg_throttle = throttle.mean()
    if avg_throttle < 1200 or avg_throttle > 1800:
        return WobbleMetrics(detected=False)
    if calculate_rms(setpoint) > 30.0:
        return WobbleMetrics(detected=False)

    gyro_rms = calculate_rms(gyro)
    frequency = analyze_frequency(gyro, sample_rate).dominant_frequency

    return WobbleMetrics(
        # 8 deg/s keeps healthy quads from tripping it
        detected=gyro_rms > 8.0 and 5.0 < frequency < 100.0,
        frequency=frequency,
        amplitude=gyro_rms,
        frequency_band=classify_band(frequency),
    )


def detect_motor_saturation(motors) -> MotorSaturationMetrics:
    """Share of frames where any motor is pinned, and motor-average spread.

    Parameters
    ----------
    motors : 2-D array, shape (num_motors, N)
    """
    motors = np.atleast_2d(np.asarray(motors, dtype=np.float64))
    if motors.size == 0:
        return MotorSaturationMetrics(detected=False)

    saturated = np.any(motors >= MOTOR_SATURATION_LEVEL, axis=0)
    pct = float(saturated.mean() * 100.0)

    averages = motors.mean(axis=1)
    mean = float(averages.mean())
    asymmetry = float(averages.std() / mean) if mean != 0 else 0.0

    return MotorSaturationMetrics(
        detected=pct > 5.0,
        saturation_percentage=pct,
        average_motor_output=mean,
        asymmetry=asymmetry,
    )


def derive_sample_rate(time) -> float:
    """Sample rate implied by µs timestamps; 1000 Hz when it cannot be told."""
    time = np.asarray(time, dtype=np.float64)
    if len(time) < 2:
        return 1000.0
    span = time[-1] - time[0]
    if span <= 0:
        return 1000.0
    return (len(time) - 1) / span * 1e6
