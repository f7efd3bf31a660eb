"""Noise rules -- gyro, D-term and feedforward noise, and filter fit.

All of these look at calm windows (no stick input) where anything the
gyro or PID terms show is noise rather than flying.  Thresholds are in
deg/s RMS for a 5" quad and scale with the profile's noise multipliers.
"""
from __future__ import annotations

import numpy as np

from ..analyzers.spectral import analyze_frequency, calculate_rms
from ..models import (
    ADJUST_FEEDFORWARD,
    ADJUST_FILTERING,
    ADJUST_RPM_FILTER,
    DECREASE_PID,
    DTERM_NOISE,
    ELECTRICAL_NOISE,
    FEEDFORWARD_NOISE,
    FILTER_MISMATCH,
    GYRO_NOISE,
    HARDWARE_CHECK,
    IssueMetrics,
)
from .base import change, make_issue, make_recommendation, window_slice


# ── Gyro noise ───────────────────────────────────────────────────────────────

class GyroNoiseRule:
    """Raised gyro noise floor while hovering hands-off."""

    id = "gyro-noise-detection"
    name = "Gyro Noise Floor Detection"
    description = "Detects excessive gyro noise during stable hover"
    base_confidence = 0.85
    issue_types = (GYRO_NOISE,)
    applicable_axes = ("roll", "pitch", "yaw")

    def condition(self, window, frames):
        meta = window.metadata
        return not meta.has_stick_input and 1200 <= meta.avg_throttle <= 1600

    def detect(self, window, frames, context):
        sl = window_slice(frames, window)
        scale = context.profile.thresholds.gyro_noise

        gyro_rms = calculate_rms(sl.gyro)
        high_ratio = analyze_frequency(sl.gyro, sl.sample_rate).band_energy.high_ratio()

        # Soft-mounted boards sit at 3-5 deg/s in a healthy hover
        if gyro_rms <= 5 * scale or (high_ratio <= 0.3 and gyro_rms <= 10 * scale):
            return []

        if gyro_rms > 15 * scale:
            severity = "high"
        elif gyro_rms > 10 * scale:
            severity = "medium"
        else:
            severity = "low"

        if high_ratio > 0.5:
            band = "high"
        elif gyro_rms > 8:
            band = "mid"
        else:
            band = "low"

        return [make_issue(
            context, GYRO_NOISE, severity, window,
            description=(
                f"Gyro noise: {gyro_rms:.1f}°/s RMS, {high_ratio * 100:.0f}% "
                f"high-freq energy on {window.axis}"
            ),
            metrics=IssueMetrics(noise_floor=gyro_rms, dominant_band=band),
            confidence=min(0.95, 0.6 + gyro_rms * 0.02 + high_ratio * 0.2),
        )]

    def recommend(self, issues, frames, context):
        profile = context.profile
        recs = []
        for issue in issues:
            if issue.type != GYRO_NOISE:
                continue
            gyro_rms = issue.metrics.noise_floor or 0.0

            if profile.overrides.warn_aggressive_filtering:
                recs.append(make_recommendation(
                    context, issue, ADJUST_FILTERING, 7, issue.confidence * 0.85,
                    title=f"Caution: avoid over-filtering on {profile.label}",
                    description=(
                        f"{profile.label} quads are naturally noisier. Heavy filtering adds "
                        "latency that eats into their limited motor authority."
                    ),
                    rationale=(
                        "Low-authority motors are very sensitive to filter delay, and the "
                        "noise flagged here may be normal for this frame size. Prefer RPM "
                        "filtering and moderate lowpass settings over heavy filtering."
                    ),
                    risks=[
                        "Too little filtering can still cook motors",
                        "Noise and latency need balancing for the specific build",
                    ],
                    expected_improvement="A realistic noise target for this quad size",
                ))

            recs.append(make_recommendation(
                context, issue, ADJUST_FILTERING, 8, issue.confidence,
                title=f"Increase gyro filtering on {issue.axis}",
                description="Gyro noise floor is high; lower the gyro filter cutoff",
                rationale=(
                    "Gyro noise flows straight into the PID sum and out to the motors as "
                    "heat. A lower filter multiplier moves the cutoff down and blocks more "
                    "of it."
                ),
                risks=["Adds phase delay", "Sticks can feel mushy if overdone"],
                changes=[change(
                    "gyroFilterMultiplier", "-10",
                    "Lower gyro filter multiplier to block more high-frequency noise",
                )],
                expected_improvement="Cleaner gyro, quieter and cooler motors",
            ))

            recs.append(make_recommendation(
                context, issue, ADJUST_FILTERING, 7, issue.confidence * 0.9,
                title="Adjust dynamic notch filter",
                description="The dynamic notch can track and remove resonant noise peaks",
                rationale=(
                    "The dynamic notch follows motor resonance peaks automatically. Two "
                    "notches cover most builds without much latency."
                ),
                risks=["Each notch costs some processing time", "May need Q tuning"],
                changes=[change(
                    "dynamicNotchCount", "2", "Use 2 dynamic notches for better resonance tracking",
                )],
                expected_improvement="Resonant peaks removed from the gyro",
            ))

            if gyro_rms > 12:
                recs.append(make_recommendation(
                    context, issue, HARDWARE_CHECK, 5, issue.confidence * 0.7,
                    title="Check for hardware vibration issues",
                    description="Very high gyro noise usually has a mechanical source",
                    rationale=(
                        "Noise this strong in a hover normally comes from the airframe: a "
                        "loose FC stack, unbalanced props, bent shafts or worn bearings. "
                        "Filtering cannot fully hide it."
                    ),
                    risks=["Needs a physical inspection", "May need replacement parts"],
                    expected_improvement="Noise removed at the source so filtering can be relaxed",
                    category="hardware",
                ))
        return recs


# ── D-term noise ─────────────────────────────────────────────────────────────

class DTermNoiseRule:
    """D-term amplifying high-frequency gyro noise."""

    id = "dterm-noise-detection"
    name = "D-Term Noise Detection"
    description = "Detects D-term amplifying high-frequency noise"
    base_confidence = 0.85
    issue_types = (DTERM_NOISE,)
    applicable_axes = ("roll", "pitch")

    def condition(self, window, frames):
        return window.metadata.avg_throttle > 1100 and not window.metadata.has_stick_input

    def detect(self, window, frames, context):
        sl = window_slice(frames, window)
        scale = context.profile.thresholds.dterm_noise

        dterm_rms = calculate_rms(sl.d_term)
        gyro_rms = calculate_rms(sl.gyro)
        ratio = dterm_rms / (gyro_rms + 1.0)
        high_ratio = analyze_frequency(sl.d_term, sl.sample_rate).band_energy.high_ratio()

        if ratio <= 0.5 * scale or high_ratio <= 0.3:
            return []

        severity = "high" if ratio > 2.0 * scale else "medium"

        return [make_issue(
            context, DTERM_NOISE, severity, window,
            description=(
                f"D-term noise: ratio {ratio:.2f}x gyro, "
                f"{high_ratio * 100:.0f}% high-freq energy"
            ),
            metrics=IssueMetrics(
                dterm_activity=dterm_rms,
                noise_floor=gyro_rms,
                dominant_band="high",
            ),
            confidence=min(0.95, 0.65 + high_ratio * 0.3 + ratio * 0.05),
        )]

    def recommend(self, issues, frames, context):
        recs = []
        for issue in issues:
            if issue.type != DTERM_NOISE:
                continue
            recs.append(make_recommendation(
                context, issue, ADJUST_FILTERING, 8, issue.confidence,
                title=f"Increase D-term filtering on {issue.axis}",
                description="The D-term is amplifying high-frequency noise",
                rationale=(
                    "D differentiates the gyro, so high-frequency noise comes out larger "
                    "than it went in. Stronger D-term filtering stops it before the motors."
                ),
                risks=["Adds phase delay to the D-term", "Slightly less damping at high frequencies"],
                changes=[change(
                    "dtermFilterMultiplier", "+10",
                    "Increase D-term filter multiplier for stronger noise suppression",
                )],
                expected_improvement="Quieter motors with the same control",
            ))
            recs.append(make_recommendation(
                context, issue, DECREASE_PID, 7, issue.confidence * 0.9,
                title=f"Reduce D gain on {issue.axis}",
                description="Lower D gain to reduce noise amplification",
                rationale=(
                    "If filtering is not enough, less D directly lowers the amplification, "
                    "trading a little damping for quieter motors."
                ),
                risks=["Less damping can bring back propwash or bounceback", "May need a P adjustment"],
                changes=[change(
                    "pidDGain", "-0.2", "Reduce D gain to lower noise amplification", axis=issue.axis,
                )],
                expected_improvement="Less D-term motor noise and heat",
            ))
            recs.append(make_recommendation(
                context, issue, ADJUST_RPM_FILTER, 6, issue.confidence * 0.8,
                title="Verify RPM filter configuration",
                description="The RPM filter removes motor noise at its source",
                rationale=(
                    "Using motor telemetry, the RPM filter notches each motor's "
                    "fundamental and overtones precisely. Three harmonics covers the "
                    "fundamental and the first two overtones."
                ),
                risks=["Needs bidirectional DShot telemetry", "Too many harmonics add latency"],
                changes=[change(
                    "rpmFilterHarmonics", "3",
                    "Run the RPM filter with 3 harmonics",
                )],
                expected_improvement="Motor noise removed precisely so general filtering can relax",
            ))
        return recs


# ── Feedforward noise ────────────────────────────────────────────────────────

class FeedforwardNoiseRule:
    """RC link jitter leaking through feedforward while the sticks are still."""

    id = "feedforward-noise-detection"
    name = "Feedforward Noise Detection"
    description = "Detects noisy feedforward signal during steady sticks"
    base_confidence = 0.85
    issue_types = (FEEDFORWARD_NOISE,)
    applicable_axes = ("roll", "pitch", "yaw")

    def condition(self, window, frames):
        if window.metadata.has_stick_input or window.metadata.avg_throttle < 1100:
            return False
        return frames.feedforward is not None

    def detect(self, window, frames, context):
        sl = window_slice(frames, window)
        if sl.feedforward is None:
            return []
        # Same scaling as the D-term noise threshold
        scale = context.profile.thresholds.dterm_noise

        ff_rms = calculate_rms(sl.feedforward)
        # Healthy FF is under 2 deg/s RMS with steady sticks
        if ff_rms < 5 * scale:
            return []

        high_ratio = analyze_frequency(sl.feedforward, sl.sample_rate).band_energy.high_ratio()

        if ff_rms > 20 * scale:
            severity = "high"
        elif ff_rms > 12 * scale:
            severity = "medium"
        else:
            severity = "low"

        if high_ratio > 0.5:
            band = "high"
        elif ff_rms > 10:
            band = "mid"
        else:
            band = "low"

        return [make_issue(
            context, FEEDFORWARD_NOISE, severity, window,
            description=f"FF noise: {ff_rms:.1f}°/s RMS during steady sticks",
            metrics=IssueMetrics(feedforward_rms=ff_rms, noise_floor=ff_rms, dominant_band=band),
            confidence=min(0.95, 0.6 + ff_rms * 0.015 + high_ratio * 0.15),
        )]

    def recommend(self, issues, frames, context):
        recs = []
        for issue in issues:
            if issue.type != FEEDFORWARD_NOISE:
                continue
            ff_rms = issue.metrics.feedforward_rms or 0.0
            severe = issue.severity == "high"

            jitter = "12" if severe else "10"
            recs.append(make_recommendation(
                context, issue, ADJUST_FEEDFORWARD, 8, issue.confidence,
                title=f"Increase FF jitter factor on {issue.axis}",
                description="RC link noise is leaking through feedforward",
                rationale=(
                    f"Feedforward reads {ff_rms:.1f}°/s RMS with the sticks still, where "
                    "under 2 is normal. The jitter factor ignores small RC changes that "
                    "are noise rather than stick movement."
                ),
                risks=[
                    "A very high jitter factor delays FF on fast inputs a little",
                    "Can hide genuine small stick corrections",
                ],
                changes=[change(
                    "feedforwardJitterFactor", jitter,
                    f"Set jitter factor to {jitter} to suppress RC noise in feedforward",
                )],
                expected_improvement="Cleaner feedforward and quieter motors in calm flight",
            ))

            if issue.severity != "low":
                smooth = "45" if severe else "35"
                recs.append(make_recommendation(
                    context, issue, ADJUST_FEEDFORWARD, 6, issue.confidence * 0.85,
                    title=f"Increase FF smooth factor on {issue.axis}",
                    description="More feedforward smoothing to reduce noise",
                    rationale=(
                        "The smooth factor lowpasses the feedforward signal and catches "
                        "noise the jitter factor lets through."
                    ),
                    risks=["Slightly delays feedforward", "Quick stick inputs feel less snappy"],
                    changes=[change(
                        "feedforwardSmoothFactor", smooth,
                        f"Set smooth factor to {smooth} for additional FF noise reduction",
                    )],
                    expected_improvement="Less FF noise with little tracking cost",
                ))
        return recs


# ── Electrical noise ─────────────────────────────────────────────────────────

class ElectricalNoiseRule:
    """Gyro noise at idle, where the motors are too slow to shake anything."""

    id = "electrical-noise-detection"
    name = "Electrical Noise Detection"
    description = "Detects electrical interference visible in gyro at idle"
    base_confidence = 0.85
    issue_types = (ELECTRICAL_NOISE,)
    applicable_axes = ("roll", "pitch", "yaw")

    def condition(self, window, frames):
        return window.metadata.avg_throttle < 1050

    def detect(self, window, frames, context):
        sl = window_slice(frames, window)
        scale = context.profile.thresholds.gyro_noise

        gyro_rms = calculate_rms(sl.gyro)
        # 3 deg/s is the resting baseline of a soft-mounted FC
        if gyro_rms <= 3 * scale:
            return []

        high_ratio = analyze_frequency(sl.gyro, sl.sample_rate).band_energy.high_ratio()

        if gyro_rms > 10 * scale:
            severity = "high"
        elif gyro_rms > 6 * scale:
            severity = "medium"
        else:
            severity = "low"

        return [make_issue(
            context, ELECTRICAL_NOISE, severity, window,
            description=(
                f"Electrical noise at idle: {gyro_rms:.1f}°/s RMS, "
                f"{high_ratio * 100:.0f}% high-freq"
            ),
            metrics=IssueMetrics(
                noise_floor=gyro_rms,
                dominant_band="high" if high_ratio > 0.5 else "mid",
            ),
            confidence=min(0.95, 0.7 + gyro_rms * 0.02),
        )]

    def recommend(self, issues, frames, context):
        recs = []
        for issue in issues:
            if issue.type != ELECTRICAL_NOISE:
                continue
            recs.append(make_recommendation(
                context, issue, HARDWARE_CHECK, 7, issue.confidence,
                title=f"Check wiring and shielding on {issue.axis}",
                description="Gyro noise at idle is electrical, not mechanical",
                rationale=(
                    "Motors at idle add almost no vibration. Noise here comes from ESC "
                    "switching, poor grounding, long unshielded gyro wiring or a ground loop."
                ),
                risks=["May need rewiring or an extra capacitor", "Can point to a failing gyro or ESC"],
                expected_improvement="Cleaner gyro at every throttle, so filtering can relax",
                category="hardware",
            ))
        return recs


# ── Filter vs noise comparison ───────────────────────────────────────────────

ONSET_ENERGY_FRACTION = 0.10
DROPOFF_ENERGY_FRACTION = 0.90


def _cumulative_energy_frequency(frequencies, energy, fraction):
    """First frequency at which cumulative energy reaches ``fraction`` of the total."""
    cumulative = np.cumsum(energy)
    hits = np.flatnonzero(cumulative >= cumulative[-1] * fraction)
    return float(frequencies[hits[0]]) if hits.size else float(frequencies[-1])


class FilterNoiseComparisonRule:
    """Configured lowpass cutoffs against where the gyro noise actually sits.

    Over-filtering: the cutoff sits 50+ Hz below the frequency where noise
    begins (10% cumulative energy), so the filter only adds latency.
    Under-filtering: much of the energy is above 150 Hz and the noise runs
    50+ Hz past the cutoff (90% cumulative energy).  D-term filters are
    only ever flagged for under-filtering.
    """

    id = "filter-noise-comparison"
    name = "Filter vs Noise Comparison"
    description = "Compares observed noise spectrum against configured filter cutoffs"
    base_confidence = 0.75
    issue_types = (FILTER_MISMATCH,)
    applicable_axes = ("roll", "pitch")

    def condition(self, window, frames):
        meta = window.metadata
        if meta.has_stick_input:
            return False
        if meta.avg_throttle < 1200 or meta.avg_throttle > 1600:
            return False
        return window.size >= 64

    def detect(self, window, frames, context):
        metadata = context.metadata
        filters = metadata.filter_settings if metadata is not None else None
        if filters is None:
            return []
        gyro_cutoff = filters.gyro_lpf1_cutoff
        dterm_cutoff = filters.dterm_lpf1_cutoff
        if gyro_cutoff is None and dterm_cutoff is None:
            return []

        sl = window_slice(frames, window)
        rate = sl.sample_rate
        if rate <= 0:
            return []
        spectrum = analyze_frequency(sl.gyro, rate)
        if spectrum.is_empty:
            return []

        energy = spectrum.magnitudes ** 2
        total = float(energy.sum())
        if total == 0:
            return []

        onset = _cumulative_energy_frequency(spectrum.frequencies, energy, ONSET_ENERGY_FRACTION)
        dropoff = _cumulative_energy_frequency(spectrum.frequencies, energy, DROPOFF_ENERGY_FRACTION)
        high_ratio = spectrum.band_energy.high / total
        scale = context.profile.thresholds.filter_mismatch

        issues = []
        if gyro_cutoff is not None:
            issue = self._check(context, window, "gyro", gyro_cutoff, onset, dropoff, high_ratio, scale)
            if issue is not None:
                issues.append(issue)
        if dterm_cutoff is not None:
            issue = self._check(context, window, "dterm", dterm_cutoff, onset, dropoff, high_ratio, scale)
            # D-term filters are meant to be aggressive
            if issue is not None and issue.metrics.filter_direction == "under":
                issues.append(issue)
        return issues

    @staticmethod
    def _check(context, window, filter_name, cutoff, onset, dropoff, high_ratio, scale):
        threshold = 50 * scale
        label = "Gyro" if filter_name == "gyro" else "D-term"

        if onset - cutoff > threshold:
            gap = onset - cutoff
            direction, frequency = "over", onset
            confidence = min(0.90, 0.55 + gap * 0.002)
            description = (
                f"{label} over-filtering: LPF cutoff {cutoff:.0f} Hz is {gap:.0f} Hz "
                f"below noise onset ({onset:.0f} Hz)"
            )
        elif high_ratio > 0.25 and dropoff - cutoff > threshold:
            gap = dropoff - cutoff
            direction, frequency = "under", dropoff
            confidence = min(0.90, 0.50 + high_ratio * 0.5 + gap * 0.001)
            description = (
                f"{label} under-filtering: noise extends to {dropoff:.0f} Hz, "
                f"{gap:.0f} Hz past LPF cutoff ({cutoff:.0f} Hz)"
            )
        else:
            return None

        if gap > 100 * scale:
            severity = "high"
        elif gap > 75 * scale:
            severity = "medium"
        else:
            severity = "low"

        return make_issue(
            context, FILTER_MISMATCH, severity, window,
            description=description,
            metrics=IssueMetrics(
                frequency=frequency,
                current_cutoff_hz=float(cutoff),
                suggested_cutoff_hz=frequency,
                filter_direction=direction,
            ),
            confidence=confidence,
        )

    def recommend(self, issues, frames, context):
        recs = []
        for issue in issues:
            if issue.type != FILTER_MISMATCH:
                continue
            direction = issue.metrics.filter_direction
            current = issue.metrics.current_cutoff_hz or 0.0
            suggested = issue.metrics.suggested_cutoff_hz or 0.0

            if direction == "over":
                step = min(20, int((suggested - current) / 10 + 0.5) * 5)
                recs.append(make_recommendation(
                    context, issue, ADJUST_FILTERING, 7, issue.confidence,
                    title=f"Raise gyro filter, noise starts at {suggested:.0f} Hz",
                    description=(
                        f"Gyro LPF cutoff ({current:.0f} Hz) is well below where noise "
                        f"begins ({suggested:.0f} Hz); the filter only adds latency"
                    ),
                    rationale=(
                        "The spectrum is clean across the band being filtered out. A higher "
                        "cutoff removes phase lag without letting in more noise."
                    ),
                    risks=[
                        "Slightly more noise if the noise floor moves with throttle",
                        "Check motor temperatures afterwards",
                    ],
                    changes=[change(
                        "gyroFilterMultiplier", f"+{step}",
                        f"Raise gyro filter multiplier to cut latency (noise onset at {suggested:.0f} Hz)",
                    )],
                    expected_improvement="Less filter delay and sharper tracking",
                ))
            elif direction == "under":
                step = min(20, int(abs(current - suggested) / 10 + 0.5) * 5)
                is_gyro = issue.description.startswith("Gyro")
                parameter = "gyroFilterMultiplier" if is_gyro else "dtermFilterMultiplier"
                label = "gyro" if is_gyro else "D-term"
                recs.append(make_recommendation(
                    context, issue, ADJUST_FILTERING, 7, issue.confidence,
                    title=f"Lower {label} filter, noise above {current:.0f} Hz",
                    description=(
                        f"Significant noise above the {label} LPF cutoff ({current:.0f} Hz) "
                        "is getting through"
                    ),
                    rationale=(
                        f"There is substantial energy above the configured {label} cutoff. "
                        "A lower filter multiplier blocks more of it."
                    ),
                    risks=["Adds phase delay", "Sticks can feel mushy if overdone"],
                    changes=[change(
                        parameter, f"-{step}",
                        f"Lower {label} filter multiplier to block noise above {current:.0f} Hz",
                    )],
                    expected_improvement="Quieter motors and less noise-driven heat",
                ))
        return recs
