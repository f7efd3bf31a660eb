"""Control-loop rules: how well the PID loop follows the sticks.

These rules look at gyro against setpoint on the pitch and roll axes (plus
yaw for high-throttle oscillation) and turn what they find into PID, TPA
and feedforward changes:

    bounceback      overshoot after a stick snap
    propwash        oscillation after a throttle chop
    wobble          unexplained oscillation in steady mid-throttle cruise
    tracking        gyro not following setpoint during active flying
    saturation      motors pinned at full output
    high throttle   oscillation that only shows up on punch-outs
"""
from __future__ import annotations

from ..analyzers.events import (
    detect_bounceback,
    detect_mid_throttle_wobble,
    detect_motor_saturation,
    detect_propwash,
)
from ..analyzers.spectral import (
    analyze_frequency,
    calculate_rms,
    calculate_std_dev,
    estimate_phase_lag,
)
from ..models import (
    ADJUST_DYNAMIC_IDLE,
    ADJUST_FEEDFORWARD,
    ADJUST_FILTERING,
    ADJUST_MASTER_MULTIPLIER,
    ADJUST_TPA,
    BOUNCEBACK,
    DECREASE_PID,
    HIGH_FREQUENCY_NOISE,
    HIGH_THROTTLE_OSCILLATION,
    INCREASE_PID,
    IssueMetrics,
    LOW_FREQUENCY_OSCILLATION,
    MID_THROTTLE_WOBBLE,
    MOTOR_SATURATION,
    OVER_FILTERING,
    OVERDAMPED,
    PROPWASH,
    UNDERDAMPED,
)
from ..settings_lookup import (
    is_d_gain_zero,
    is_feedforward_zero,
    is_rpm_filter_enabled,
    lookup_current_value,
)
from .base import (
    axis_slice,
    change,
    make_issue,
    make_recommendation,
    window_slice,
)

SEVERITY_ORDER = {"low": 1, "medium": 2, "high": 3}


# ── Bounceback ───────────────────────────────────────────────────────────────

class BouncebackRule:
    """Overshoot and slow settling after the stick snaps back to centre."""

    id = "bounceback-detection"
    name = "Bounceback Detection"
    description = "Detects overshoot and oscillation after stick release"
    base_confidence = 0.85
    issue_types = (BOUNCEBACK,)
    applicable_axes = ("roll", "pitch")

    def condition(self, window, frames):
        # 50 deg/s is a deliberate stick move
        return window.metadata.max_setpoint > 50 and window.metadata.has_stick_input

    def detect(self, window, frames, context):
        sl = window_slice(frames, window)
        scale = context.profile.thresholds.bounceback_overshoot

        metrics = detect_bounceback(sl.time, sl.gyro, sl.setpoint, sl.sample_rate)
        if not metrics.detected:
            return []

        overshoot, settling = metrics.overshoot, metrics.settling_time
        if overshoot > 40 * scale or settling > 150 * scale:
            severity = "high"
        elif overshoot > 25 * scale or settling > 100 * scale:
            severity = "medium"
        elif overshoot > 15 * scale or settling > 75 * scale:
            severity = "low"
        else:
            return []

        signal_to_noise = abs(overshoot) / (calculate_std_dev(sl.gyro) + 1.0)
        confidence = min(0.95, 0.6 + signal_to_noise * 0.1)

        ff_rms = calculate_rms(sl.feedforward) if sl.feedforward is not None else None

        return [make_issue(
            context, BOUNCEBACK, severity, window,
            description=(
                f"Bounceback detected: {overshoot:.1f}° overshoot, "
                f"settling in {settling:.0f}ms"
            ),
            metrics=IssueMetrics(
                overshoot=overshoot,
                settling_time=settling,
                amplitude=overshoot,
                feedforward_rms=ff_rms,
                peak_time=metrics.peak_timestamp,
            ),
            confidence=confidence,
        )]

    def recommend(self, issues, frames, context):
        recs = []
        for issue in issues:
            if issue.type != BOUNCEBACK:
                continue
            axis = issue.axis
            overshoot = issue.metrics.overshoot or 0.0
            settling = issue.metrics.settling_time or 0.0
            ff_rms = issue.metrics.feedforward_rms
            has_ff_data = ff_rms is not None
            ff_zero = is_feedforward_zero(context.metadata, axis)
            d_zero = is_d_gain_zero(context.metadata, axis)

            if has_ff_data and ff_rms > overshoot * 0.3 and not ff_zero:
                # Feedforward carries a large share of the overshoot
                recs.append(make_recommendation(
                    context, issue, ADJUST_FEEDFORWARD, 9, issue.confidence,
                    title=f"Reduce FF transition on {axis}",
                    description=(
                        "Feedforward is pushing the quad past centre on stick release; "
                        "a lower transition tapers it off while the stick decelerates"
                    ),
                    rationale=(
                        f"Feedforward RMS ({ff_rms:.1f}°/s) is large next to the "
                        f"{overshoot:.1f}° overshoot. feedforward_transition scales FF down "
                        "near centre stick, so lowering it calms stick stops without "
                        "dulling the response mid-move."
                    ),
                    risks=[
                        "Slightly softer on quick direction changes",
                        "Only affects the stick deceleration phase",
                    ],
                    changes=[change(
                        "feedforwardTransition", "25",
                        "Lower FF transition to reduce overshoot on stick release",
                    )],
                    expected_improvement="Cleaner stick stops while keeping tracking during active flying",
                ))
                recs.append(make_recommendation(
                    context, issue, ADJUST_FEEDFORWARD, 7, issue.confidence * 0.85,
                    title=f"Reduce Feedforward on {axis}",
                    description="Lower the feedforward gain if the transition change alone is not enough",
                    rationale=(
                        "A lower FF gain reduces the feedforward push on every stick "
                        "movement, not just on release."
                    ),
                    risks=[
                        "Slightly more tracking lag during active flying",
                        "Initial stick inputs may feel less sharp",
                    ],
                    changes=[change(
                        "pidFeedforward", "-8%",
                        "Reduce feedforward gain to prevent overshoot on stick release",
                        axis=axis,
                    )],
                    expected_improvement="Less overshoot at a small cost in tracking",
                ))
            elif overshoot > 50 and settling < 100:
                recs.append(make_recommendation(
                    context, issue, DECREASE_PID, 8, issue.confidence,
                    title=f"Reduce P on {axis}",
                    description="Large, quickly settled overshoot points to an aggressive P gain",
                    rationale=(
                        "Too much P drives the quad past its target when the stick is "
                        "released. Lowering P removes the initial overshoot."
                    ),
                    risks=[
                        "Slightly less responsive",
                        "Can feel less locked-in during fast manoeuvres",
                    ],
                    changes=[change(
                        "pidPGain", "-0.3",
                        "Reduce P to prevent overshooting on stick release",
                        axis=axis,
                    )],
                    expected_improvement="Smoother stick release with less overshoot",
                ))
            elif not has_ff_data and overshoot > 30 and settling < 80 and not ff_zero:
                # No FF trace: moderate overshoot with fast settling usually means FF
                recs.append(make_recommendation(
                    context, issue, ADJUST_FEEDFORWARD, 8, issue.confidence,
                    title=f"Reduce Feedforward on {axis}",
                    description="Overshoot with fast settling suggests feedforward is too aggressive",
                    rationale=(
                        "Feedforward reacts to stick movement before the error builds up. "
                        "On release, too much of it carries the quad past zero before the "
                        "PID loop can catch it."
                    ),
                    risks=[
                        "Slightly more tracking lag during active flying",
                        "Initial stick inputs may feel less sharp",
                    ],
                    changes=[change(
                        "pidFeedforward", "-8%",
                        "Reduce feedforward to prevent overshoot on stick release",
                        axis=axis,
                    )],
                    expected_improvement="Cleaner stick stops without giving up much tracking",
                ))
            elif settling > 150 and not d_zero:
                recs.append(make_recommendation(
                    context, issue, INCREASE_PID, 7, issue.confidence,
                    title=f"Increase D_min on {axis}",
                    description="Slow settling means there is not enough damping during recovery",
                    rationale=(
                        "D_min sets the damping floor during slow moves and recovery. "
                        "Raising it settles the quad faster without adding high-throttle noise."
                    ),
                    risks=["Slightly warmer motors", "More gyro noise reaches the motors if pushed too far"],
                    changes=[change(
                        "pidDMinGain", "+0.2",
                        "Increase D_min to improve damping during recovery",
                        axis=axis,
                    )],
                    expected_improvement="Faster settling with less ringing after stick release",
                ))
            elif not d_zero:
                recs.append(make_recommendation(
                    context, issue, INCREASE_PID, 6, issue.confidence * 0.9,
                    title=f"Fine-tune P/D balance on {axis}",
                    description="Moderate bounceback calls for a small shift in the P/D ratio",
                    rationale="The P/D ratio trades response speed against damping; a little more D steadies it.",
                    risks=["Slightly warmer motors", "May need a filter adjustment"],
                    changes=[change(
                        "pidDGain", "+0.1", "Small D increase for better damping", axis=axis,
                    )],
                    expected_improvement="Less overshoot with the same response",
                ))
        return recs


# ── Propwash ─────────────────────────────────────────────────────────────────

class PropwashRule:
    """Oscillation in dirty air after the throttle is chopped."""

    id = "propwash-detection"
    name = "Propwash Detection"
    description = "Detects oscillations caused by disturbed air during throttle drops"
    base_confidence = 0.80
    issue_types = (PROPWASH,)
    applicable_axes = ("roll", "pitch")

    def condition(self, window, frames):
        # Stick input is fine here, propwash usually hits mid-manoeuvre
        return window.metadata.avg_throttle < 1500 and window.size > 50

    def detect(self, window, frames, context):
        scale = context.profile.thresholds.propwash_amplitude

        # Reach back half a window so the throttle drop leading in is visible
        lookback = min(window.start_index, window.size // 2)
        sl = axis_slice(frames, window.axis, window.start_index - lookback, window.end_index)

        metrics = detect_propwash(
            sl.time, sl.throttle, sl.gyro, sl.setpoint, sl.d_term, sl.sample_rate,
        )
        if not metrics.detected:
            return []

        if metrics.amplitude > 50 * scale or metrics.duration > 120 * scale:
            severity = "high"
        elif metrics.amplitude > 30 * scale or metrics.duration > 80 * scale:
            severity = "medium"
        else:
            severity = "low"

        # 10-30 Hz is the classic propwash band
        confidence = 0.9 if 10 < metrics.frequency < 30 else 0.7

        return [make_issue(
            context, PROPWASH, severity, window,
            description=(
                f"Propwash oscillation: {metrics.frequency:.1f} Hz, "
                f"{metrics.amplitude:.1f}° amplitude"
            ),
            metrics=IssueMetrics(
                frequency=metrics.frequency,
                amplitude=metrics.amplitude,
                dterm_activity=metrics.dterm_activity,
            ),
            confidence=confidence,
        )]

    def recommend(self, issues, frames, context):
        profile = context.profile
        overrides = profile.overrides
        rpm_enabled = is_rpm_filter_enabled(context.metadata)
        rpm_harmonics = lookup_current_value("rpmFilterHarmonics", context.metadata)

        recs = []
        for issue in issues:
            if issue.type != PROPWASH:
                continue
            axis = issue.axis
            frequency = issue.metrics.frequency or 0.0
            amplitude = issue.metrics.amplitude or 0.0
            dterm_activity = issue.metrics.dterm_activity or 0.0

            if overrides.propwash_prefer_iterm_relax and overrides.iterm_relax_cutoff > 0:
                cutoff = overrides.iterm_relax_cutoff
                recs.append(make_recommendation(
                    context, issue, ADJUST_FILTERING, 8, issue.confidence,
                    title=f"Lower I-term relax cutoff on {axis}",
                    description=(
                        f"On {profile.label} quads a lower iterm_relax_cutoff usually "
                        "helps propwash more than extra D_min"
                    ),
                    rationale=(
                        "I-term relax limits how fast the I-term builds during quick "
                        "manoeuvres. A lower cutoff stops the windup that feeds propwash, "
                        "which matters most on heavier or lower-authority quads."
                    ),
                    risks=[
                        "Slightly looser tracking on very aggressive moves",
                        "Can feel less locked-in on rapid direction changes",
                    ],
                    changes=[change(
                        "itermRelaxCutoff", str(cutoff),
                        f"Set iterm_relax_cutoff to {cutoff} (suggested for {profile.label} quads)",
                    )],
                    expected_improvement="Less propwash from I-term windup during throttle transitions",
                ))

            if amplitude > 60:
                recs.append(make_recommendation(
                    context, issue, INCREASE_PID, 9, issue.confidence,
                    title=f"Increase D_min on {axis}",
                    description="Severe propwash needs more damping at low throttle",
                    rationale=(
                        "D_min provides damping exactly where propwash happens. A higher "
                        "D_min resists the oscillation from disturbed air."
                    ),
                    risks=[
                        "Warmer motors",
                        "Amplifies noise if gyro filtering is not enough",
                    ],
                    changes=[change(
                        "pidDMinGain", "+0.4",
                        "Significant D_min increase for propwash resistance",
                        axis=axis,
                    )],
                    expected_improvement="Oscillation during throttle drops reduced by roughly half",
                ))
                recs.append(make_recommendation(
                    context, issue, ADJUST_DYNAMIC_IDLE, 8, 0.85,
                    title="Increase Dynamic Idle",
                    description="Faster idle keeps the props biting in dirty air",
                    rationale=(
                        "Dynamic idle holds a minimum motor RPM at low throttle, so the "
                        "motors keep authority while falling through their own wash."
                    ),
                    risks=[
                        "Slightly higher current draw at low throttle",
                        "Descents feel less floaty",
                    ],
                    changes=[change(
                        "dynamicIdle", "+3",
                        "Raise dynamic idle (e.g. 30 to 33) for more low-throttle authority",
                    )],
                    expected_improvement="Steadier descents with more motor authority in dirty air",
                ))
            elif frequency > 30 and dterm_activity > 100:
                # Faster propwash with a busy D-term: look at the RPM filter
                if not rpm_enabled:
                    recs.append(make_recommendation(
                        context, issue, ADJUST_FILTERING, 7, 0.75,
                        title=f"Enable RPM filter on {axis}",
                        description="RPM filtering is off; motor noise is mixing with the propwash",
                        rationale=(
                            "The RPM filter strips motor noise so the D-term can react to "
                            "the real disturbance. Three harmonics is the usual setting."
                        ),
                        risks=["Needs working bidirectional DShot telemetry", "May need a firmware update"],
                        changes=[change(
                            "rpmFilterHarmonics", "3",
                            "Enable the RPM filter with 3 harmonics",
                        )],
                        expected_improvement="Cleaner D-term and more effective damping",
                    ))
                elif rpm_harmonics < 3:
                    recs.append(make_recommendation(
                        context, issue, ADJUST_FILTERING, 7, 0.75,
                        title=f"Increase RPM filter harmonics on {axis}",
                        description=(
                            f"The RPM filter runs {rpm_harmonics} harmonic(s); 3 covers "
                            "propwash-related motor noise better"
                        ),
                        rationale="More harmonics remove more of the motor noise overtones.",
                        risks=["Marginally more latency", "May need a firmware update"],
                        changes=[change(
                            "rpmFilterHarmonics", "3",
                            "Run the RPM filter with 3 harmonics",
                        )],
                        expected_improvement="Cleaner D-term and more effective damping",
                    ))
            else:
                recs.append(make_recommendation(
                    context, issue, INCREASE_PID, 6, issue.confidence,
                    title=f"Increase D_min on {axis}",
                    description="Moderate propwash responds well to more D_min",
                    rationale="D_min adds low-throttle damping without touching high-speed flight.",
                    risks=["Slightly warmer motors"],
                    changes=[change(
                        "pidDMinGain", "+0.2",
                        "Moderate D_min boost for better propwash handling",
                        axis=axis,
                    )],
                    expected_improvement="Smoother throttle drops with less visible oscillation",
                ))

            if issue.severity == "high" and not overrides.propwash_prefer_iterm_relax:
                recs.append(make_recommendation(
                    context, issue, ADJUST_FILTERING, 5, 0.70,
                    title=f"Lower I-term relax cutoff on {axis}",
                    description="Severe propwash can be made worse by I-term windup",
                    rationale=(
                        "A lower iterm_relax_cutoff keeps the I-term from winding up "
                        "during throttle transitions and amplifying the oscillation."
                    ),
                    risks=[
                        "Slightly looser tracking on aggressive moves",
                        "Can feel less locked-in on rapid direction changes",
                    ],
                    changes=[change(
                        "itermRelaxCutoff", "10",
                        "Lower iterm_relax_cutoff to cut the I-term share of propwash",
                    )],
                    expected_improvement="Less propwash from I-term windup during throttle drops",
                ))
        return recs


# ── Mid-throttle wobble ──────────────────────────────────────────────────────

class WobbleRule:
    """Oscillation during hands-off cruise, classified by frequency band."""

    id = "wobble-detection"
    name = "Mid-Throttle Wobble Detection"
    description = "Detects oscillations during cruise/hover without pilot input"
    base_confidence = 0.85
    issue_types = (LOW_FREQUENCY_OSCILLATION, MID_THROTTLE_WOBBLE, HIGH_FREQUENCY_NOISE)
    applicable_axes = ("roll", "pitch")

    _BAND_TYPES = {
        "low": LOW_FREQUENCY_OSCILLATION,
        "mid": MID_THROTTLE_WOBBLE,
        "high": HIGH_FREQUENCY_NOISE,
    }

    def condition(self, window, frames):
        meta = window.metadata
        return 1200 <= meta.avg_throttle <= 1800 and not meta.has_stick_input

    def detect(self, window, frames, context):
        sl = window_slice(frames, window)
        scale = context.profile.thresholds.wobble_amplitude

        metrics = detect_mid_throttle_wobble(sl.throttle, sl.gyro, sl.setpoint, sl.sample_rate)
        if not metrics.detected:
            return []

        if metrics.amplitude > 25 * scale:
            severity = "high"
        elif metrics.amplitude > 15 * scale:
            severity = "medium"
        else:
            severity = "low"

        band = metrics.frequency_band
        return [make_issue(
            context, self._BAND_TYPES[band], severity, window,
            description=(
                f"{band.upper()}-frequency wobble: {metrics.frequency:.1f} Hz, "
                f"{metrics.amplitude:.1f}° RMS"
            ),
            metrics=IssueMetrics(
                frequency=metrics.frequency,
                amplitude=metrics.amplitude,
                dominant_band=band,
            ),
            confidence=self.base_confidence,
        )]

    def recommend(self, issues, frames, context):
        recs = []
        for issue in issues:
            axis = issue.axis
            amplitude = issue.metrics.amplitude or 0.0
            band = issue.metrics.dominant_band

            if band == "low":
                recs.append(make_recommendation(
                    context, issue, INCREASE_PID, 8, 0.85,
                    title=f"Increase P on {axis}",
                    description="Slow oscillation means P is not holding the attitude firmly",
                    rationale=(
                        "P provides the main restoring force. A low-frequency wobble "
                        "means the quad drifts before P pulls it back."
                    ),
                    risks=["Too much P causes fast oscillation", "May need a matching D change"],
                    changes=[change(
                        "pidPGain", "+0.3", "Increase P to improve attitude hold", axis=axis,
                    )],
                    expected_improvement="Firmer hold in cruise with fewer slow oscillations",
                ))
                recs.append(make_recommendation(
                    context, issue, ADJUST_FEEDFORWARD, 7, 0.75,
                    title=f"Increase Feedforward on {axis}",
                    description="Feedforward can reduce low-frequency drift",
                    rationale="Feedforward acts before the error builds, shortening the lag behind slow oscillations.",
                    risks=[
                        "Too much FF overshoots on stick inputs",
                        "Little effect if stick feel is already good",
                    ],
                    changes=[change(
                        "pidFeedforward", "+5", "Increase FF for earlier corrections", axis=axis,
                    )],
                    expected_improvement="More locked-in feel in cruise",
                ))
            elif band == "high":
                recs.append(make_recommendation(
                    context, issue, ADJUST_FILTERING, 9, 0.90,
                    title=f"Increase filtering on {axis}",
                    description="High-frequency content in cruise means filtering is too light",
                    rationale=(
                        "Gyro and D-term content above the control band only heats the "
                        "motors. Stronger filtering removes it."
                    ),
                    risks=[
                        "Heavier filtering adds delay",
                        "Sticks can feel mushy if overdone",
                    ],
                    changes=[
                        change("gyroFilterMultiplier", "+10",
                               "Filter more gyro noise before it reaches the PID loop"),
                        change("dtermFilterMultiplier", "+10",
                               "Filter the D-term harder so it does not amplify noise"),
                    ],
                    expected_improvement="Smoother motors, cooler ESCs",
                ))
                recs.append(make_recommendation(
                    context, issue, DECREASE_PID, 7, 0.75,
                    title=f"Consider reducing D on {axis}",
                    description="The D-term amplifies high-frequency noise",
                    rationale="When filtering is already strong, a little less D stops it amplifying what remains.",
                    risks=["Less damping", "Can make propwash or bounceback worse"],
                    changes=[change(
                        "pidDGain", "-0.1", "Small D reduction to limit noise amplification", axis=axis,
                    )],
                    expected_improvement="Quieter motors with most of the damping kept",
                ))
            else:
                recs.append(make_recommendation(
                    context, issue, INCREASE_PID, 7, 0.80,
                    title=f"Adjust P/D balance on {axis}",
                    description="Mid-frequency wobble points to a P/D imbalance",
                    rationale="Oscillation in the 30-150 Hz band usually means P and D are out of proportion.",
                    risks=["May take a few iterations", "Can shift other flight characteristics"],
                    changes=[
                        change("pidPGain", "+0.2", "Increase P for more authority", axis=axis),
                        change("pidDGain", "+0.1", "Raise D slightly to keep the damping ratio", axis=axis),
                    ],
                    expected_improvement="Steady cruise without oscillation",
                ))

            if amplitude > 20:
                recs.append(make_recommendation(
                    context, issue, ADJUST_FILTERING, 6, 0.70,
                    title="Verify dynamic notch filter",
                    description="A persistent wobble can be a motor or frame resonance",
                    rationale="The dynamic notch tracks and removes resonant peaks; two notches cover most builds.",
                    risks=["Needs a working gyro spectrum", "May need a Q adjustment"],
                    changes=[change(
                        "dynamicNotchCount", "2", "Use 2 notches for better resonance tracking",
                    )],
                    expected_improvement="Resonant peaks behind the wobble removed",
                ))
        return recs


# ── Tracking quality ─────────────────────────────────────────────────────────

OVER_FILTERING_LAG_MS = 6.0         # gyro delay behind setpoint
OVER_FILTERING_MIN_CORRELATION = 0.8
OVER_FILTERING_MAX_HIGH_RATIO = 0.05  # gyro energy share above 150 Hz


class TrackingQualityRule:
    """How closely gyro follows setpoint while the pilot is flying.

    Issue type comes from the gyro/setpoint amplitude ratio and the lag:

    - underdamped : gyro amplitude 105-200% of setpoint (overshooting)
    - overdamped  : under 90% with more than 25% error (falling short)
    - overFiltering : right amplitude, shifted in time, clean gyro
    - lowFrequencyOscillation : anything else
    """

    id = "tracking-quality-detection"
    name = "Tracking Quality Analysis"
    description = "Measures how accurately gyro follows setpoint during active flight"
    base_confidence = 0.75
    issue_types = (UNDERDAMPED, OVERDAMPED, OVER_FILTERING, LOW_FREQUENCY_OSCILLATION)
    applicable_axes = ("roll", "pitch")

    def condition(self, window, frames):
        meta = window.metadata
        return (
            meta.rms_setpoint > 10
            and meta.max_setpoint > 30
            and 1100 <= meta.avg_throttle <= 1900
            and window.size >= 50
        )

    def detect(self, window, frames, context):
        sl = window_slice(frames, window)
        scale = context.profile.thresholds.tracking_error
        rms_setpoint = window.metadata.rms_setpoint
        if rms_setpoint < 10:
            return []

        error = sl.gyro - sl.setpoint
        rms_error = calculate_rms(error)
        # Trivially small absolute error is never worth reporting
        if rms_error < 5:
            return []

        normalized_error = rms_error / rms_setpoint * 100.0
        amplitude_ratio = calculate_rms(sl.gyro) / rms_setpoint * 100.0
        gyro_std = calculate_std_dev(sl.gyro)
        signal_to_noise = rms_error / gyro_std if gyro_std > 0 else 10.0

        if normalized_error > 40 * scale:
            severity = "high"
        elif normalized_error > 25 * scale:
            severity = "medium"
        elif normalized_error > 12 * scale:
            severity = "low"
        else:
            return []

        rate = sl.sample_rate
        lag_ms, correlation = estimate_phase_lag(sl.setpoint, sl.gyro, rate)

        ff_contribution = None
        if sl.feedforward is not None:
            ff_rms = calculate_rms(sl.feedforward)
            total = ff_rms + calculate_rms(sl.pid_sum)
            if total > 0:
                ff_contribution = ff_rms / total

        if 105 < amplitude_ratio <= 200:
            issue_type = UNDERDAMPED
            description = (
                f"Poor tracking: {normalized_error:.1f}% error, {amplitude_ratio:.1f}% "
                "amplitude (gyro overshooting setpoint)"
            )
        elif amplitude_ratio < 90 and normalized_error > 25:
            issue_type = OVERDAMPED
            description = (
                f"Poor tracking: {normalized_error:.1f}% error, {amplitude_ratio:.1f}% "
                "amplitude (gyro falling short of setpoint)"
            )
        elif (lag_ms > OVER_FILTERING_LAG_MS
              and correlation > OVER_FILTERING_MIN_CORRELATION
              and analyze_frequency(sl.gyro, rate).band_energy.high_ratio()
              < OVER_FILTERING_MAX_HIGH_RATIO):
            issue_type = OVER_FILTERING
            description = (
                f"Poor tracking: gyro lags setpoint by {lag_ms:.1f}ms with a clean "
                "noise floor (filter delay)"
            )
        else:
            issue_type = LOW_FREQUENCY_OSCILLATION
            description = f"Poor tracking: {normalized_error:.1f}% error during active flight"

        return [make_issue(
            context, issue_type, severity, window,
            description=description,
            metrics=IssueMetrics(
                normalized_error=normalized_error,
                amplitude_ratio=amplitude_ratio,
                rms_error=rms_error,
                signal_to_noise=signal_to_noise,
                phase_lag_ms=lag_ms,
                feedforward_contribution=ff_contribution,
            ),
            confidence=min(0.95, 0.6 + signal_to_noise * 0.05),
        )]

    def recommend(self, issues, frames, context):
        by_axis = {}
        for issue in issues:
            if issue.type in self.issue_types:
                by_axis.setdefault(issue.axis, []).append(issue)

        recs = []
        for axis, axis_issues in by_axis.items():
            worst = axis_issues[0]
            for issue in axis_issues[1:]:
                if SEVERITY_ORDER[issue.severity] > SEVERITY_ORDER[worst.severity]:
                    worst = issue
            rec = tracking_recommendation(axis, worst, context)
            if rec is not None:
                recs.append(rec)

        # Poor tracking on several axes: the whole tune is soft
        high_error = [
            [i for i in axis_issues
             if i.severity == "high" and (i.metrics.normalized_error or 0) > 35]
            for axis_issues in by_axis.values()
        ]
        high_error = [group for group in high_error if group]
        if len(high_error) >= 2:
            anchor = high_error[0][0]
            recs.append(make_recommendation(
                context, anchor, ADJUST_MASTER_MULTIPLIER, 8, 0.75,
                title="Increase Master Multiplier",
                description="Tracking is poor on several axes at once",
                rationale=(
                    "When more than one axis lags the sticks the tune is generally too "
                    "soft. The master multiplier scales every PID term together."
                ),
                risks=[
                    "Also raises axes that already track well",
                    "More motor heat and battery draw",
                    "May need filter changes to cope with the extra PID activity",
                ],
                changes=[change(
                    "pidMasterMultiplier", "+5%",
                    "Global PID increase to tighten tracking on every axis",
                )],
                expected_improvement="Better tracking on all axes during active flight",
            ))
        return recs


def tracking_recommendation(axis, issue, context):
    """One recommendation for the worst tracking issue on an axis, or None."""
    metrics = issue.metrics
    normalized_error = metrics.normalized_error or 0.0
    amplitude_ratio = metrics.amplitude_ratio or 0.0
    ff_contribution = metrics.feedforward_contribution
    metadata = context.metadata

    if issue.type == OVER_FILTERING:
        filters = metadata.filter_settings if metadata is not None else None
        if (filters is not None
                and (filters.gyro_filter_multiplier or 0) >= 140
                and (filters.dterm_filter_multiplier or 0) >= 140):
            # Filters already as light as it is sensible to go
            return None
        lag = f"{metrics.phase_lag_ms:.1f}ms " if metrics.phase_lag_ms is not None else ""
        return make_recommendation(
            context, issue, ADJUST_FILTERING, 8, issue.confidence,
            title="Raise filter cutoffs",
            description="Filtering is delaying the gyro without buying any noise reduction",
            rationale=(
                "The gyro noise floor is already clean, yet tracking suffers from filter "
                "delay. Raising the filter multipliers cuts the phase lag without letting "
                "much noise through."
            ),
            risks=[
                "Slightly more motor noise if the noise floor was borderline",
                "Check motor temperatures afterwards",
            ],
            changes=[
                change("gyroFilterMultiplier", "+10",
                       f"Raise gyro filter multiplier to reduce the {lag}phase lag"),
                change("dtermFilterMultiplier", "+10",
                       "Raise D-term filter multiplier to reduce filtering delay"),
            ],
            expected_improvement="Less phase lag and sharper tracking at similar noise",
        )

    if issue.type == OVERDAMPED:
        step = "+0.5" if normalized_error > 50 else "+0.4" if normalized_error > 35 else "+0.3"
        return make_recommendation(
            context, issue, INCREASE_PID, 8, issue.confidence,
            title=f"Increase P gain on {axis}",
            description="Gyro falls short of setpoint; the response is overdamped or P is too low",
            rationale=(
                "A low amplitude ratio means the quad does not produce enough corrective "
                "force to reach the commanded rate. More P sharpens the response."
            ),
            risks=[
                "Too much P causes fast oscillation",
                "May need a matching D increase",
                "Watch motor temperatures",
            ],
            changes=[change(
                "pidPGain", step,
                f"Increase P to improve tracking authority (current error: {normalized_error:.1f}%)",
                axis=axis,
            )],
            expected_improvement="Gyro follows setpoint more closely in manoeuvres",
        )

    if issue.type == UNDERDAMPED:
        if (ff_contribution is not None and ff_contribution > 0.30
                and amplitude_ratio > 105 and not is_feedforward_zero(metadata, axis)):
            pct = ff_contribution * 100
            return make_recommendation(
                context, issue, ADJUST_FEEDFORWARD, 7, issue.confidence,
                title=f"Reduce Feedforward on {axis}",
                description="Feedforward is driving the overshoot; trim FF rather than add D",
                rationale=(
                    f"Feedforward makes up {pct:.0f}% of the combined PID and FF output and "
                    f"the gyro reaches {amplitude_ratio:.0f}% of setpoint. Trimming FF "
                    "fixes the overshoot without the extra D-term noise."
                ),
                risks=[
                    "Slightly more tracking lag during active flying",
                    "Initial stick inputs may feel less sharp",
                ],
                changes=[change(
                    "pidFeedforward", "-8%",
                    f"Reduce feedforward to stop FF-driven overshoot ({pct:.0f}% FF share)",
                    axis=axis,
                )],
                expected_improvement="Less overshoot without extra D-term noise",
            )
        if is_d_gain_zero(metadata, axis):
            return None
        step = "+0.3" if normalized_error > 50 else "+0.2" if normalized_error > 35 else "+0.15"
        return make_recommendation(
            context, issue, INCREASE_PID, 7, issue.confidence,
            title=f"Increase D gain on {axis}",
            description="Underdamped response; gyro overshoots setpoint",
            rationale=(
                "A high amplitude ratio together with tracking error means the quad "
                "overshoots and swings around its target. More D resists the overshoot. "
                "If D is already high, lower P instead."
            ),
            risks=[
                "More D amplifies gyro noise, watch motor temperatures",
                "May need more D-term filtering",
                "If D is already high, reduce P instead",
            ],
            changes=[change(
                "pidDGain", step,
                f"Increase D to damp overshoot (amplitude ratio: {amplitude_ratio:.0f}%)",
                axis=axis,
            )],
            expected_improvement="Less overshoot and cleaner tracking",
        )

    # Generic lag: the feedforward share decides between P and FF
    if ff_contribution is not None and ff_contribution > 0.30:
        pct = ff_contribution * 100
        step = "+0.4" if normalized_error > 35 else "+0.3" if normalized_error > 25 else "+0.2"
        return make_recommendation(
            context, issue, INCREASE_PID, 6, issue.confidence * 0.9,
            title=f"Increase P gain on {axis}",
            description="Feedforward already does its share; the PID loop needs more authority",
            rationale=(
                f"Feedforward is {pct:.0f}% of the output, which is already strong. The "
                f"remaining {normalized_error:.0f}% error is best closed with more P."
            ),
            risks=["Too much P causes fast oscillation", "May need a matching D increase"],
            changes=[change(
                "pidPGain", step,
                f"Increase P for tighter PID tracking (FF already at {pct:.0f}%)",
                axis=axis,
            )],
            expected_improvement="Tighter tracking from the PID loop without FF overshoot",
        )

    if ff_contribution is not None and ff_contribution < 0.10:
        pct = ff_contribution * 100
        step = "+10%" if normalized_error > 35 else "+8%" if normalized_error > 25 else "+6%"
        return make_recommendation(
            context, issue, ADJUST_FEEDFORWARD, 7, issue.confidence * 0.95,
            title=f"Increase Feedforward on {axis}",
            description="Feedforward is very low; raising it will noticeably improve tracking",
            rationale=(
                f"Feedforward is only {pct:.0f}% of the output. More FF tracks the sticks "
                "directly instead of waiting for the error to build up."
            ),
            risks=[
                "Too much feedforward overshoots on stick inputs",
                "Can feel twitchy if overdone",
            ],
            changes=[change(
                "pidFeedforward", step,
                f"Increase feedforward, now only {pct:.0f}% of output (error: {normalized_error:.1f}%)",
                axis=axis,
            )],
            expected_improvement="Much less tracking lag with a more direct stick response",
        )

    step = "+8%" if normalized_error > 35 else "+6%" if normalized_error > 25 else "+4%"
    return make_recommendation(
        context, issue, ADJUST_FEEDFORWARD, 6, issue.confidence * 0.9,
        title=f"Increase Feedforward on {axis}",
        description="Moderate tracking error; feedforward can help",
        rationale=(
            "Feedforward supplies the control input the sticks ask for before any "
            "error builds, shortening the tracking lag."
        ),
        risks=[
            "Too much feedforward overshoots on stick inputs",
            "Can feel twitchy if overdone",
        ],
        changes=[change(
            "pidFeedforward", step,
            f"Increase feedforward for earlier tracking (current error: {normalized_error:.1f}%)",
            axis=axis,
        )],
        expected_improvement="Less lag and a more locked-in feel in manoeuvres",
    )


# ── Motor saturation ─────────────────────────────────────────────────────────

class MotorSaturationRule:
    """Motors pinned at full output.  Global, so checked on roll only."""

    id = "motor-saturation-detection"
    name = "Motor Saturation Detection"
    description = "Detects motors at max output and motor asymmetry"
    base_confidence = 0.85
    issue_types = (MOTOR_SATURATION,)
    applicable_axes = ("roll",)

    def condition(self, window, frames):
        return window.metadata.avg_throttle > 1300

    def detect(self, window, frames, context):
        sl = window_slice(frames, window)
        scale = context.profile.thresholds.motor_saturation

        metrics = detect_motor_saturation(sl.motors)
        if not metrics.detected:
            return []

        pct = metrics.saturation_percentage
        if pct > 15 * scale:
            severity = "high"
        elif pct > 8 * scale:
            severity = "medium"
        else:
            severity = "low"

        return [make_issue(
            context, MOTOR_SATURATION, severity, window,
            description=(
                f"Motor saturation: {pct:.1f}% at max output, "
                f"asymmetry: {metrics.asymmetry * 100:.1f}%"
            ),
            metrics=IssueMetrics(motor_saturation=pct),
            confidence=min(0.95, 0.7 + pct * 0.005),
        )]

    def recommend(self, issues, frames, context):
        recs = []
        for issue in issues:
            if issue.type != MOTOR_SATURATION:
                continue
            saturation = issue.metrics.motor_saturation or 0.0

            if saturation > 15:
                recs.append(make_recommendation(
                    context, issue, ADJUST_MASTER_MULTIPLIER, 9, issue.confidence,
                    title="Reduce PID master multiplier",
                    description="The PIDs ask for more than the motors can give",
                    rationale=(
                        "A pinned motor cannot correct any further. Scaling all PIDs down "
                        "together leaves the motors headroom."
                    ),
                    risks=[
                        "Less responsive with looser tracking",
                        "May need a smoother flying style",
                    ],
                    changes=[change(
                        "pidMasterMultiplier", "-10%",
                        "Reduce master multiplier by 10% to give motors headroom",
                    )],
                    expected_improvement="Motors stay in range and keep control authority",
                ))
                recs.append(make_recommendation(
                    context, issue, ADJUST_TPA, 7, issue.confidence * 0.9,
                    title="Increase TPA rate",
                    description="TPA trims PID gains at the high throttle where saturation happens",
                    rationale=(
                        "Throttle PID attenuation lowers the gains as throttle rises, so "
                        "punch-outs demand less from motors that are already near the top."
                    ),
                    risks=[
                        "Looser tracking at high throttle",
                        "Can feel less locked-in in power moves",
                    ],
                    changes=[change(
                        "tpaRate", "+10",
                        "Increase TPA rate to reduce PID authority at high throttle",
                    )],
                    expected_improvement="Less saturation during high-throttle manoeuvres",
                ))
            elif saturation > 8:
                recs.append(make_recommendation(
                    context, issue, DECREASE_PID, 6, issue.confidence * 0.85,
                    title="Reduce P and D gains",
                    description="Moderate saturation; a small PID reduction may be enough",
                    rationale="P and D drive most of the motor demand, so trimming them avoids occasional clipping.",
                    risks=["Slightly less tracking and damping", "May take a few small steps"],
                    changes=[
                        change("pidPGain", "-0.2", "Reduce P to lower motor demand", axis=issue.axis),
                        change("pidDGain", "-0.1", "Reduce D to lower motor demand", axis=issue.axis),
                    ],
                    expected_improvement="Less saturation with little performance cost",
                ))
        return recs


# ── High-throttle oscillation ────────────────────────────────────────────────

class HighThrottleOscillationRule:
    """Oscillation that only appears on punch-outs (TPA not attenuating enough)."""

    id = "high-throttle-oscillation-detection"
    name = "High Throttle Oscillation Detection"
    description = "Detects oscillations only at high throttle - TPA insufficient"
    base_confidence = 0.85
    issue_types = (HIGH_THROTTLE_OSCILLATION,)
    applicable_axes = ("roll", "pitch", "yaw")

    def condition(self, window, frames):
        return window.metadata.avg_throttle > 1600

    def detect(self, window, frames, context):
        sl = window_slice(frames, window)
        scale = context.profile.thresholds.high_throttle_oscillation

        error = sl.gyro - sl.setpoint
        error_rms = calculate_rms(error)
        frequency = analyze_frequency(error, sl.sample_rate).dominant_frequency
        if error_rms <= 8 * scale or frequency < 5 or frequency > 100:
            return []

        amplitude = float(error.max() - error.min())
        if amplitude > 50 * scale:
            severity = "high"
        elif amplitude > 30 * scale:
            severity = "medium"
        else:
            severity = "low"

        confidence = min(0.95, 0.6 + error_rms * 0.01 + (0.1 if frequency > 10 else 0.0))

        return [make_issue(
            context, HIGH_THROTTLE_OSCILLATION, severity, window,
            description=f"High-throttle oscillation: {frequency:.1f} Hz, amplitude {amplitude:.1f}°/s",
            metrics=IssueMetrics(frequency=frequency, amplitude=amplitude, rms_error=error_rms),
            confidence=confidence,
        )]

    def recommend(self, issues, frames, context):
        recs = []
        for issue in issues:
            if issue.type != HIGH_THROTTLE_OSCILLATION:
                continue
            recs.append(make_recommendation(
                context, issue, ADJUST_TPA, 8, issue.confidence,
                title="Increase TPA rate",
                description="Oscillation at high throttle means TPA is not attenuating the PIDs enough",
                rationale=(
                    "Throttle PID attenuation lowers the gains at high throttle. Oscillation "
                    "that only appears there means the gains are still too high at that point."
                ),
                risks=[
                    "Looser tracking at high throttle",
                    "Can feel less responsive in power moves",
                ],
                changes=[change(
                    "tpaRate", "+10", "Increase TPA rate to attenuate PIDs more at high throttle",
                )],
                expected_improvement="No oscillation on punch-outs and fast climbs",
            ))
            recs.append(make_recommendation(
                context, issue, ADJUST_TPA, 7, issue.confidence * 0.9,
                title="Lower TPA breakpoint",
                description="Start attenuating earlier to cover moderate-high throttle too",
                rationale=(
                    "The breakpoint is the throttle where attenuation begins. Lowering it "
                    "starts the PID reduction sooner."
                ),
                risks=[
                    "PIDs are attenuated over a wider throttle range",
                    "Mid-throttle tracking suffers if set too low",
                ],
                changes=[change(
                    "tpaBreakpoint", "-50", "Lower TPA breakpoint to start attenuation earlier",
                )],
                expected_improvement="Smoother transition from mid to high throttle",
            ))
            recs.append(make_recommendation(
                context, issue, DECREASE_PID, 6, issue.confidence * 0.8,
                title=f"Reduce P gain on {issue.axis}",
                description="If TPA changes are not enough, lower P directly",
                rationale="P is the main driver of this oscillation; reduce it when TPA cannot attenuate enough.",
                risks=["Looser tracking at every throttle", "Can feel less locked-in overall"],
                changes=[change(
                    "pidPGain", "-0.2", "Reduce P gain to lower oscillation tendency", axis=issue.axis,
                )],
                expected_improvement="Less oscillation across the throttle range",
            ))
        return recs
