"""Tests for the control-loop rules in tuneflow.rules.control."""
import numpy as np
import pytest

from tuneflow.models import (
    ADJUST_DYNAMIC_IDLE,
    ADJUST_FEEDFORWARD,
    ADJUST_FILTERING,
    ADJUST_MASTER_MULTIPLIER,
    ADJUST_TPA,
    BOUNCEBACK,
    DECREASE_PID,
    FilterSettings,
    HIGH_THROTTLE_OSCILLATION,
    INCREASE_PID,
    LOW_FREQUENCY_OSCILLATION,
    LogMetadata,
    MID_THROTTLE_WOBBLE,
    MOTOR_SATURATION,
    OVER_FILTERING,
    OVERDAMPED,
    PidProfile,
    PROPWASH,
    UNDERDAMPED,
)
from tuneflow.profiles import get_profile
from tuneflow.rules import (
    BouncebackRule,
    HighThrottleOscillationRule,
    MotorSaturationRule,
    PropwashRule,
    RuleContext,
    TrackingQualityRule,
    WobbleRule,
)
from tuneflow.rules.control import tracking_recommendation

SAMPLE_RATE = 1000


def _sine(freq_hz, n, amplitude):
    t = np.arange(n) / SAMPLE_RATE
    return amplitude * np.sin(2 * np.pi * freq_hz * t)


def _params(recs):
    return [c.parameter for r in recs for c in r.changes]


# ── Bounceback ───────────────────────────────────────────────────────────────

class TestBouncebackRule:
    """Tests for BouncebackRule."""

    @staticmethod
    def _make_release(flight):
        n, release = 1000, 300
        setpoint = np.zeros(n)
        setpoint[:release] = 200.0
        gyro = setpoint.copy()
        k = np.arange(n - release)
        gyro[release:] = -40.0 * np.sin(np.pi * k / 40) * np.exp(-k / 60)
        return flight(n=n, gyro=gyro, setpoint=setpoint)

    def test_condition_needs_stick_input(self, flight, window):
        frames = self._make_release(flight)
        rule = BouncebackRule()
        assert rule.condition(window(frames, start=250, stop=500, max_setpoint=200, has_stick_input=True), frames)
        assert not rule.condition(window(frames, start=250, stop=500, max_setpoint=200), frames)

    def test_detects_overshoot(self, flight, window):
        frames = self._make_release(flight)
        w = window(frames, start=250, stop=500, max_setpoint=200, has_stick_input=True)
        issues = BouncebackRule().detect(w, frames, RuleContext())
        assert len(issues) == 1
        found = issues[0]
        assert found.type == BOUNCEBACK
        assert found.axis == "roll"
        assert found.severity == "medium"
        assert 25 < found.metrics.overshoot < 40
        assert found.metrics.peak_time == pytest.approx(frames.time[318], abs=3000)
        assert found.time_range == (w.start_time, w.end_time)
        assert 0.6 <= found.confidence <= 0.95

    def test_quiet_window_gives_nothing(self, flight, window):
        frames = flight(n=500)
        w = window(frames, max_setpoint=200, has_stick_input=True)
        assert BouncebackRule().detect(w, frames, RuleContext()) == []

    def test_large_fast_overshoot_reduces_p(self, issue):
        recs = BouncebackRule().recommend(
            [issue(BOUNCEBACK, overshoot=60.0, settling_time=50.0)], None, RuleContext(),
        )
        assert len(recs) == 1
        assert recs[0].type == DECREASE_PID
        assert recs[0].priority == 8
        assert recs[0].changes[0].parameter == "pidPGain"
        assert recs[0].changes[0].recommended_change == "-0.3"
        assert recs[0].changes[0].axis == "roll"

    def test_feedforward_driven_overshoot(self, issue):
        """A large FF trace gives a transition change and a FF gain change."""
        recs = BouncebackRule().recommend(
            [issue(BOUNCEBACK, overshoot=40.0, settling_time=60.0, feedforward_rms=30.0)],
            None, RuleContext(),
        )
        assert [r.type for r in recs] == [ADJUST_FEEDFORWARD, ADJUST_FEEDFORWARD]
        assert _params(recs) == ["feedforwardTransition", "pidFeedforward"]
        assert recs[0].priority > recs[1].priority

    def test_moderate_overshoot_without_ff_trace(self, issue):
        recs = BouncebackRule().recommend(
            [issue(BOUNCEBACK, overshoot=35.0, settling_time=50.0)], None, RuleContext(),
        )
        assert _params(recs) == ["pidFeedforward"]
        assert recs[0].changes[0].recommended_change == "-8%"

    def test_zero_feedforward_not_reduced(self, issue):
        """With FF already 0 the rule falls through to the P/D balance advice."""
        meta = LogMetadata(sample_rate=1000, pid_profile=PidProfile(roll_ff=0))
        recs = BouncebackRule().recommend(
            [issue(BOUNCEBACK, overshoot=35.0, settling_time=50.0)], None, RuleContext(metadata=meta),
        )
        assert _params(recs) == ["pidDGain"]

    def test_slow_settling_raises_d_min(self, issue):
        recs = BouncebackRule().recommend(
            [issue(BOUNCEBACK, overshoot=20.0, settling_time=200.0)], None, RuleContext(),
        )
        assert _params(recs) == ["pidDMinGain"]
        assert recs[0].type == INCREASE_PID

    def test_zero_d_gives_no_d_advice(self, issue):
        meta = LogMetadata(sample_rate=1000, pid_profile=PidProfile(roll_d=0))
        recs = BouncebackRule().recommend(
            [issue(BOUNCEBACK, overshoot=20.0, settling_time=60.0)], None, RuleContext(metadata=meta),
        )
        assert recs == []


# ── Propwash ─────────────────────────────────────────────────────────────────

class TestPropwashRule:
    """Tests for PropwashRule."""

    @staticmethod
    def _make_chop(flight, n=1000, drop_at=300):
        throttle = np.full(n, 1600.0)
        throttle[drop_at:] = 1300.0
        gyro = np.zeros(n)
        gyro[drop_at:] = _sine(20, n, 30.0)[drop_at:]
        return flight(n=n, throttle=throttle, gyro=gyro, dterm=gyro * 0.2)

    def test_detects_after_chop(self, flight, window):
        """The window reaches back far enough to see the drop leading in."""
        frames = self._make_chop(flight)
        w = window(frames, start=300, stop=400)
        rule = PropwashRule()
        assert rule.condition(w, frames)
        issues = rule.detect(w, frames, RuleContext())
        assert len(issues) == 1
        assert issues[0].type == PROPWASH
        assert issues[0].severity == "high"
        assert 5 < issues[0].metrics.frequency < 30

    def test_high_throttle_window_skipped(self, flight, window):
        frames = self._make_chop(flight)
        assert not PropwashRule().condition(window(frames, start=0, stop=100), frames)

    def test_severe_propwash_recommendations(self, issue):
        recs = PropwashRule().recommend(
            [issue(PROPWASH, severity="high", frequency=20.0, amplitude=70.0, dterm_activity=50.0)],
            None, RuleContext(),
        )
        assert [r.type for r in recs] == [INCREASE_PID, ADJUST_DYNAMIC_IDLE, ADJUST_FILTERING]
        assert _params(recs) == ["pidDMinGain", "dynamicIdle", "itermRelaxCutoff"]

    def test_fast_propwash_without_rpm_filter(self, issue):
        recs = PropwashRule().recommend(
            [issue(PROPWASH, frequency=40.0, amplitude=40.0, dterm_activity=150.0)],
            None, RuleContext(),
        )
        assert recs[0].title.startswith("Enable RPM filter")
        assert recs[0].changes[0].recommended_change == "3"

    def test_fast_propwash_with_few_harmonics(self, issue):
        meta = LogMetadata(sample_rate=1000, filter_settings=FilterSettings(rpm_filter_harmonics=2))
        recs = PropwashRule().recommend(
            [issue(PROPWASH, frequency=40.0, amplitude=40.0, dterm_activity=150.0)],
            None, RuleContext(metadata=meta),
        )
        assert recs[0].title.startswith("Increase RPM filter harmonics")

    @pytest.mark.parametrize("harmonics, expected", [
        (0, ["rpmFilterHarmonics"]),
        (3, []),
    ])
    def test_fast_propwash_follows_header_rpm_filter(self, issue, harmonics, expected):
        """Zero harmonics counts as off; three is already enough."""
        meta = LogMetadata(sample_rate=1000, filter_settings=FilterSettings(rpm_filter_harmonics=harmonics))
        recs = PropwashRule().recommend(
            [issue(PROPWASH, frequency=40.0, amplitude=40.0, dterm_activity=150.0)],
            None, RuleContext(metadata=meta),
        )
        assert _params(recs) == expected

    def test_large_quad_prefers_iterm_relax(self, issue):
        """On a 7" profile the I-term relax advice comes first with its own cutoff."""
        context = RuleContext(profile=get_profile("seven_inch"))
        recs = PropwashRule().recommend(
            [issue(PROPWASH, severity="high", frequency=20.0, amplitude=40.0)], None, context,
        )
        assert recs[0].changes[0].parameter == "itermRelaxCutoff"
        assert recs[0].changes[0].recommended_change == "7"
        # No second, generic I-term relax change
        assert _params(recs).count("itermRelaxCutoff") == 1


# ── Wobble ───────────────────────────────────────────────────────────────────

class TestWobbleRule:
    """Tests for WobbleRule."""

    def test_mid_band_wobble(self, flight, window):
        frames = flight(n=200, gyro=_sine(40, 200, 15.0))
        issues = WobbleRule().detect(window(frames), frames, RuleContext())
        assert len(issues) == 1
        assert issues[0].type == MID_THROTTLE_WOBBLE
        assert issues[0].severity == "low"
        assert issues[0].metrics.dominant_band == "mid"

    def test_low_band_wobble(self, flight, window):
        frames = flight(n=200, gyro=_sine(10, 200, 20.0))
        issues = WobbleRule().detect(window(frames), frames, RuleContext())
        assert issues[0].type == LOW_FREQUENCY_OSCILLATION
        assert issues[0].metrics.dominant_band == "low"

    def test_condition_excludes_stick_input(self, flight, window):
        frames = flight(n=200)
        assert WobbleRule().condition(window(frames), frames)
        assert not WobbleRule().condition(window(frames, has_stick_input=True), frames)

    def test_low_band_recommendations(self, issue):
        recs = WobbleRule().recommend(
            [issue(LOW_FREQUENCY_OSCILLATION, amplitude=25.0, dominant_band="low")], None, RuleContext(),
        )
        assert _params(recs) == ["pidPGain", "pidFeedforward", "dynamicNotchCount"]

    def test_high_band_recommendations(self, issue):
        recs = WobbleRule().recommend(
            [issue("highFrequencyNoise", amplitude=10.0, dominant_band="high")], None, RuleContext(),
        )
        assert _params(recs) == ["gyroFilterMultiplier", "dtermFilterMultiplier", "pidDGain"]


# ── Tracking quality ─────────────────────────────────────────────────────────

class TestTrackingQualityRule:
    """Tests for TrackingQualityRule."""

    @staticmethod
    def _tracking_window(flight, window, gain):
        setpoint = _sine(5, 200, 200.0)
        frames = flight(n=200, setpoint=setpoint, gyro=setpoint * gain)
        rms = float(np.sqrt(np.mean(setpoint ** 2)))
        return frames, window(frames, max_setpoint=200.0, rms_setpoint=rms, has_stick_input=True)

    def test_gyro_falling_short_is_overdamped(self, flight, window):
        frames, w = self._tracking_window(flight, window, 0.4)
        rule = TrackingQualityRule()
        assert rule.condition(w, frames)
        issues = rule.detect(w, frames, RuleContext())
        assert len(issues) == 1
        assert issues[0].type == OVERDAMPED
        assert issues[0].severity == "high"
        assert issues[0].metrics.normalized_error == pytest.approx(60.0, rel=1e-3)
        assert issues[0].metrics.amplitude_ratio == pytest.approx(40.0, rel=1e-3)

    def test_gyro_overshooting_is_underdamped(self, flight, window):
        frames, w = self._tracking_window(flight, window, 1.6)
        issues = TrackingQualityRule().detect(w, frames, RuleContext())
        assert issues[0].type == UNDERDAMPED
        assert issues[0].metrics.amplitude_ratio == pytest.approx(160.0, rel=1e-3)

    def test_good_tracking_not_reported(self, flight, window):
        frames, w = self._tracking_window(flight, window, 1.0)
        assert TrackingQualityRule().detect(w, frames, RuleContext()) == []

    def test_overdamped_step_scales_with_error(self, issue):
        rec = tracking_recommendation(
            "roll", issue(OVERDAMPED, normalized_error=60.0, amplitude_ratio=40.0), RuleContext(),
        )
        assert rec.changes[0].parameter == "pidPGain"
        assert rec.changes[0].recommended_change == "+0.5"

    def test_underdamped_with_ff_share_trims_ff(self, issue):
        rec = tracking_recommendation(
            "roll",
            issue(UNDERDAMPED, normalized_error=30.0, amplitude_ratio=130.0, feedforward_contribution=0.4),
            RuleContext(),
        )
        assert rec.type == ADJUST_FEEDFORWARD
        assert rec.changes[0].recommended_change == "-8%"

    def test_underdamped_raises_d(self, issue):
        rec = tracking_recommendation(
            "pitch", issue(UNDERDAMPED, axis="pitch", normalized_error=60.0, amplitude_ratio=160.0),
            RuleContext(),
        )
        assert rec.changes[0].parameter == "pidDGain"
        assert rec.changes[0].recommended_change == "+0.3"

    def test_over_filtering_with_light_filters_is_skipped(self, issue):
        meta = LogMetadata(
            sample_rate=1000,
            filter_settings=FilterSettings(gyro_filter_multiplier=150, dterm_filter_multiplier=140),
        )
        found = issue(OVER_FILTERING, normalized_error=30.0, amplitude_ratio=100.0, phase_lag_ms=8.0)
        assert tracking_recommendation("roll", found, RuleContext(metadata=meta)) is None
        rec = tracking_recommendation("roll", found, RuleContext())
        assert _params([rec]) == ["gyroFilterMultiplier", "dtermFilterMultiplier"]

    def test_low_ff_share_raises_ff(self, issue):
        rec = tracking_recommendation(
            "roll",
            issue(LOW_FREQUENCY_OSCILLATION, normalized_error=40.0, feedforward_contribution=0.05),
            RuleContext(),
        )
        assert rec.type == ADJUST_FEEDFORWARD
        assert rec.changes[0].recommended_change == "+10%"

    def test_worst_issue_per_axis_and_master_multiplier(self, issue):
        """High error on two axes adds one master multiplier recommendation."""
        issues = [
            issue(OVERDAMPED, axis="roll", severity="medium", normalized_error=30.0, issue_id="issue-1"),
            issue(OVERDAMPED, axis="roll", severity="high", normalized_error=60.0, issue_id="issue-2"),
            issue(OVERDAMPED, axis="pitch", severity="high", normalized_error=45.0, issue_id="issue-3"),
        ]
        recs = TrackingQualityRule().recommend(issues, None, RuleContext())
        assert len(recs) == 3
        assert recs[0].issue_id == "issue-2"
        assert recs[1].issue_id == "issue-3"
        assert recs[2].type == ADJUST_MASTER_MULTIPLIER
        assert recs[2].changes[0].recommended_change == "+5%"


# ── Motor saturation ─────────────────────────────────────────────────────────

class TestMotorSaturationRule:
    """Tests for MotorSaturationRule."""

    def test_detects_pinned_motor(self, flight, window):
        motors = np.full((4, 100), 1500.0)
        motors[0, :20] = 2000.0
        frames = flight(n=100, throttle=1500.0, motors=motors)
        w = window(frames)
        rule = MotorSaturationRule()
        assert rule.condition(w, frames)
        issues = rule.detect(w, frames, RuleContext())
        assert issues[0].type == MOTOR_SATURATION
        assert issues[0].severity == "high"
        assert issues[0].metrics.motor_saturation == pytest.approx(20.0)

    def test_roll_only(self):
        assert MotorSaturationRule.applicable_axes == ("roll",)

    def test_recommendations_by_level(self, issue):
        rule = MotorSaturationRule()
        heavy = rule.recommend([issue(MOTOR_SATURATION, motor_saturation=20.0)], None, RuleContext())
        assert [r.type for r in heavy] == [ADJUST_MASTER_MULTIPLIER, ADJUST_TPA]
        moderate = rule.recommend([issue(MOTOR_SATURATION, motor_saturation=10.0)], None, RuleContext())
        assert _params(moderate) == ["pidPGain", "pidDGain"]
        light = rule.recommend([issue(MOTOR_SATURATION, motor_saturation=6.0)], None, RuleContext())
        assert light == []


# ── High-throttle oscillation ────────────────────────────────────────────────

class TestHighThrottleOscillationRule:
    """Tests for HighThrottleOscillationRule."""

    def test_detects_punch_oscillation(self, flight, window):
        frames = flight(n=200, throttle=1700.0, gyro=_sine(40, 200, 20.0))
        w = window(frames)
        rule = HighThrottleOscillationRule()
        assert rule.condition(w, frames)
        issues = rule.detect(w, frames, RuleContext())
        assert issues[0].type == HIGH_THROTTLE_OSCILLATION
        assert issues[0].severity == "medium"

    def test_smooth_punch_not_reported(self, flight, window):
        frames = flight(n=200, throttle=1700.0)
        assert HighThrottleOscillationRule().detect(window(frames), frames, RuleContext()) == []

    def test_recommendations(self, issue):
        recs = HighThrottleOscillationRule().recommend(
            [issue(HIGH_THROTTLE_OSCILLATION, axis="yaw", amplitude=40.0)], None, RuleContext(),
        )
        assert [r.priority for r in recs] == [8, 7, 6]
        assert _params(recs) == ["tpaRate", "tpaBreakpoint", "pidPGain"]
        assert recs[2].changes[0].axis == "yaw"
