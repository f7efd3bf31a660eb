"""Tests for tuneflow.analyzers.events -- bounceback, propwash, wobble, saturation."""
import numpy as np
import pytest

from tuneflow.analyzers.events import (
    derive_sample_rate,
    detect_bounceback,
    detect_mid_throttle_wobble,
    detect_motor_saturation,
    detect_propwash,
)

SAMPLE_RATE = 1000


def _time(n, sample_rate=SAMPLE_RATE):
    return np.arange(n) / sample_rate * 1e6


def _make_flip_release(n=1000, release=300, overshoot=40.0):
    """Helper: 200 deg/s roll held, released at ``release``, gyro swings past zero."""
    setpoint = np.zeros(n)
    setpoint[:release] = 200.0
    gyro = np.zeros(n)
    gyro[:release] = 200.0
    k = np.arange(n - release)
    gyro[release:] = -overshoot * np.sin(np.pi * k / 40) * np.exp(-k / 60)
    return setpoint, gyro


# ── bounceback ───────────────────────────────────────────────────────────────

class TestBounceback:
    """Tests for detect_bounceback()."""

    def test_overshoot_after_release(self):
        """Gyro swinging opposite after the stick centres is detected."""
        setpoint, gyro = _make_flip_release()
        result = detect_bounceback(_time(1000), gyro, setpoint, SAMPLE_RATE)
        assert result.detected
        assert 15.0 < result.overshoot < 40.0
        assert result.peak_time > 0
        assert result.peak_timestamp == pytest.approx(300_000 + result.peak_time * 1000)
        assert result.settling_time >= result.peak_time

    def test_clean_release_not_detected(self):
        """Gyro that follows the setpoint straight to zero has no bounceback."""
        setpoint = np.zeros(1000)
        setpoint[:300] = 200.0
        gyro = setpoint.copy()
        result = detect_bounceback(_time(1000), gyro, setpoint, SAMPLE_RATE)
        assert not result.detected
        assert result.overshoot == 0.0

    def test_no_release(self):
        """Constant setpoint has no release event."""
        setpoint = np.full(1000, 200.0)
        result = detect_bounceback(_time(1000), setpoint, setpoint, SAMPLE_RATE)
        assert not result.detected

    def test_release_too_close_to_end(self):
        setpoint, gyro = _make_flip_release(n=310, release=295)
        result = detect_bounceback(_time(310), gyro, setpoint, SAMPLE_RATE)
        assert not result.detected


# ── propwash ─────────────────────────────────────────────────────────────────

class TestPropwash:
    """Tests for detect_propwash()."""

    @staticmethod
    def _make_chop(n=1000, drop_at=300, osc_amp=30.0, osc_hz=20.0, setpoint_level=0.0):
        throttle = np.full(n, 1600.0)
        throttle[drop_at:] = 1300.0
        t = np.arange(n) / SAMPLE_RATE
        gyro = np.zeros(n)
        gyro[drop_at:] = osc_amp * np.sin(2 * np.pi * osc_hz * t[drop_at:])
        setpoint = np.full(n, setpoint_level)
        dterm = gyro * 0.2
        return throttle, gyro, setpoint, dterm

    def test_oscillation_after_chop(self):
        throttle, gyro, setpoint, dterm = self._make_chop()
        result = detect_propwash(_time(1000), throttle, gyro, setpoint, dterm, SAMPLE_RATE)
        assert result.detected
        assert 10.0 < result.frequency < 30.0
        assert result.amplitude > 40.0
        assert result.dterm_activity > 0
        assert result.duration == pytest.approx(149.0)

    def test_no_throttle_drop(self):
        throttle, gyro, setpoint, dterm = self._make_chop()
        throttle[:] = 1500.0
        result = detect_propwash(_time(1000), throttle, gyro, setpoint, dterm, SAMPLE_RATE)
        assert not result.detected

    def test_stick_input_vetoes(self):
        """Large setpoint after the chop means the pilot is flying, not propwash."""
        throttle, gyro, setpoint, dterm = self._make_chop(setpoint_level=100.0)
        result = detect_propwash(_time(1000), throttle, gyro, setpoint, dterm, SAMPLE_RATE)
        assert not result.detected

    def test_quiet_recovery(self):
        throttle, gyro, setpoint, dterm = self._make_chop(osc_amp=2.0)
        result = detect_propwash(_time(1000), throttle, gyro, setpoint, dterm, SAMPLE_RATE)
        assert not result.detected


# ── wobble ───────────────────────────────────────────────────────────────────

class TestMidThrottleWobble:
    """Tests for detect_mid_throttle_wobble()."""

    def test_mid_band_wobble(self):
        t = np.arange(1000) / SAMPLE_RATE
        gyro = 15.0 * np.sin(2 * np.pi * 40 * t)
        result = detect_mid_throttle_wobble(np.full(1000, 1400.0), gyro, np.zeros(1000), SAMPLE_RATE)
        assert result.detected
        assert abs(result.frequency - 40) < 2
        assert result.frequency_band == "mid"
        assert result.amplitude == pytest.approx(15.0 / np.sqrt(2), rel=0.02)

    def test_low_throttle_skipped(self):
        t = np.arange(1000) / SAMPLE_RATE
        gyro = 15.0 * np.sin(2 * np.pi * 40 * t)
        result = detect_mid_throttle_wobble(np.full(1000, 1100.0), gyro, np.zeros(1000), SAMPLE_RATE)
        assert not result.detected

    def test_quiet_gyro(self, rng):
        gyro = rng.normal(0, 1, 1000)
        result = detect_mid_throttle_wobble(np.full(1000, 1400.0), gyro, np.zeros(1000), SAMPLE_RATE)
        assert not result.detected

    def test_empty(self):
        assert not detect_mid_throttle_wobble([], [], [], SAMPLE_RATE).detected


# ── motor saturation ─────────────────────────────────────────────────────────

class TestMotorSaturation:
    """Tests for detect_motor_saturation()."""

    def test_pinned_motor(self):
        motors = np.full((4, 100), 1500.0)
        motors[0, :20] = 2000.0
        result = detect_motor_saturation(motors)
        assert result.detected
        assert result.saturation_percentage == pytest.approx(20.0)
        assert result.asymmetry > 0

    def test_no_saturation(self):
        result = detect_motor_saturation(np.full((4, 100), 1500.0))
        assert not result.detected
        assert result.saturation_percentage == 0.0
        assert result.average_motor_output == pytest.approx(1500.0)
        assert result.asymmetry == 0.0

    def test_threshold_is_strict(self):
        """Exactly 5% pinned is not enough."""
        motors = np.full((4, 100), 1500.0)
        motors[2, :5] = 1995.0
        assert not detect_motor_saturation(motors).detected


class TestDeriveSampleRate:
    """Tests for derive_sample_rate()."""

    def test_from_timestamps(self):
        assert derive_sample_rate(np.arange(1001) * 125.0) == pytest.approx(8000.0)

    def test_degenerate_input_defaults(self):
        assert derive_sample_rate([0.0]) == 1000.0
        assert derive_sample_rate([5.0, 5.0]) == 1000.0
