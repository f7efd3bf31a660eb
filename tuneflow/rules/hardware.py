"""Hardware rules -- problems a PID change cannot fix.

Motor, prop, frame and battery faults affect the whole craft, so each of
these rules only runs on the roll axis (one report per fault, not three)
and produces change-less ``hardwareCheck`` recommendations.
"""
from __future__ import annotations

import numpy as np

from ..analyzers.spectral import analyze_frequency, find_spectral_peaks
from ..models import (
    BEARING_NOISE,
    CG_OFFSET,
    ESC_DESYNC,
    FRAME_RESONANCE,
    HARDWARE_CHECK,
    IssueMetrics,
    MOTOR_IMBALANCE,
    VOLTAGE_SAG,
)
from .base import make_issue, make_recommendation, window_slice

ESC_DESYNC_JUMP = 500           # motor units, a quarter of the command range


def _hardware_recommendation(context, issue, priority, title, description, rationale,
                             risks, expected_improvement):
    return make_recommendation(
        context, issue, HARDWARE_CHECK, priority, issue.confidence,
        title=title,
        description=description,
        rationale=rationale,
        risks=risks,
        expected_improvement=expected_improvement,
        category="hardware",
    )


def _motor_averages(motors):
    """Per-motor mean output over the window, or None with fewer than 4 motors."""
    if motors.shape[0] < 4 or motors.shape[1] == 0:
        return None
    return motors.mean(axis=1)


# ── Bearing noise ────────────────────────────────────────────────────────────

class BearingNoiseRule:
    """Narrow, prominent gyro peak from rotating parts (bearings, shafts, bells).

    Each window reports its own dominant peak.  The throttle position is
    recorded in the description but peaks are not correlated across
    windows of different throttle.
    """

    id = "bearing-noise-detection"
    name = "Bearing Noise / Bent Shaft Detection"
    description = "Detects mechanical noise that tracks motor RPM across throttle bands"
    base_confidence = 0.75
    issue_types = (BEARING_NOISE,)
    applicable_axes = ("roll",)

    def condition(self, window, frames):
        meta = window.metadata
        return not meta.has_stick_input and 1150 <= meta.avg_throttle <= 1800

    def detect(self, window, frames, context):
        sl = window_slice(frames, window)
        spectrum = analyze_frequency(sl.gyro, sl.sample_rate)
        peaks = find_spectral_peaks(spectrum.frequencies, spectrum.magnitudes, 3, 30, 500)
        if not peaks:
            return []

        peak = peaks[0]
        # A narrow peak (3x its neighbours) points at a mechanical source
        if peak.prominence < 3 or peak.frequency < 30:
            return []

        if peak.prominence > 6:
            severity = "high"
        elif peak.prominence > 4:
            severity = "medium"
        else:
            severity = "low"

        throttle_pct = (window.metadata.avg_throttle - 1000) / 10.0
        return [make_issue(
            context, BEARING_NOISE, severity, window,
            description=(
                f"Bearing noise: peak at {peak.frequency:.0f} Hz "
                f"({peak.prominence:.1f}x prominence) at {throttle_pct:.0f}% throttle"
            ),
            metrics=IssueMetrics(frequency=peak.frequency, amplitude=peak.magnitude),
            confidence=min(0.85, 0.5 + peak.prominence * 0.05),
        )]

    def recommend(self, issues, frames, context):
        recs = []
        for issue in issues:
            if issue.type != BEARING_NOISE:
                continue
            freq = issue.metrics.frequency or 0.0
            recs.append(_hardware_recommendation(
                context, issue, 8,
                title="Inspect motor bearings and shafts",
                description=f"Prominent noise peak at {freq:.0f} Hz with a likely mechanical source",
                rationale=(
                    "A narrow spectral peak that moves with throttle is typical of "
                    "rotating parts: worn bearings, a bent shaft or an unbalanced bell. "
                    "Its frequency follows RPM, unlike a fixed frame resonance."
                ),
                risks=[
                    "Flying on keeps wearing the bearing",
                    "May need a motor replacement or re-shimming",
                ],
                expected_improvement="Lower gyro noise at every throttle, so the tune needs less filtering",
            ))
        return recs


# ── Frame resonance ──────────────────────────────────────────────────────────

class FrameResonanceRule:
    """Fixed-frequency structural resonance concentrating gyro energy."""

    id = "frame-resonance-detection"
    name = "Frame Resonance Detection"
    description = "Detects fixed-frequency structural resonance in the frame"
    base_confidence = 0.75
    issue_types = (FRAME_RESONANCE,)
    applicable_axes = ("roll",)

    def condition(self, window, frames):
        meta = window.metadata
        return not meta.has_stick_input and 1200 <= meta.avg_throttle <= 1800

    def detect(self, window, frames, context):
        sl = window_slice(frames, window)
        spectrum = analyze_frequency(sl.gyro, sl.sample_rate)
        peaks = find_spectral_peaks(spectrum.frequencies, spectrum.magnitudes, 3, 20, 300)
        if not peaks:
            return []

        peak = peaks[0]
        if peak.prominence < 3 or not 20 <= peak.frequency <= 300:
            return []

        # Share of the mid+high band energy sitting in this one bin
        mid_high = spectrum.band_energy.mid + spectrum.band_energy.high
        concentration = peak.magnitude ** 2 / mid_high if mid_high > 0 else 0.0
        if concentration < 0.15:
            return []

        if concentration > 0.4:
            severity = "high"
        elif concentration > 0.25:
            severity = "medium"
        else:
            severity = "low"

        return [make_issue(
            context, FRAME_RESONANCE, severity, window,
            description=(
                f"Frame resonance: {peak.frequency:.0f} Hz with "
                f"{concentration * 100:.0f}% energy concentration"
            ),
            metrics=IssueMetrics(frequency=peak.frequency, amplitude=peak.magnitude),
            confidence=min(0.90, 0.55 + concentration + peak.prominence * 0.03),
        )]

    def recommend(self, issues, frames, context):
        recs = []
        for issue in issues:
            if issue.type != FRAME_RESONANCE:
                continue
            freq = issue.metrics.frequency or 0.0
            notch_min = max(50, int(np.floor(freq - 30)))
            recs.append(_hardware_recommendation(
                context, issue, 7,
                title="Check frame and mounting hardware",
                description=(
                    f"Structural resonance at {freq:.0f} Hz, possibly loose hardware or "
                    f"frame flex. Until it is fixed, a dynamic notch minimum of "
                    f"{notch_min} Hz keeps the notch range over it."
                ),
                rationale=(
                    "A resonance that stays put as throttle changes is the frame ringing "
                    "at its natural frequency. Loose standoffs, cracked arms and soft "
                    "mounts that pass vibration through are the usual causes."
                ),
                risks=[
                    "Needs a physical inspection",
                    "Some frame designs resonate at this frequency by nature",
                ],
                expected_improvement="Removing the resonance lets the tune run lighter filtering",
            ))
        return recs


# ── CG offset ────────────────────────────────────────────────────────────────

class CgOffsetRule:
    """One diagonal (or front/back) motor pair working harder in hover.

    Betaflight numbering: motors 1+4 and 2+3 are diagonal pairs, 1+2 are
    at the front.
    """

    id = "cg-offset-detection"
    name = "CG Offset Detection"
    description = "Detects center of gravity offset from diagonal motor pair imbalance during hover"
    base_confidence = 0.80
    issue_types = (CG_OFFSET,)
    applicable_axes = ("roll",)

    def condition(self, window, frames):
        meta = window.metadata
        return 1100 <= meta.avg_throttle <= 1400 and not meta.has_stick_input

    def detect(self, window, frames, context):
        avgs = _motor_averages(window_slice(frames, window).motors)
        if avgs is None:
            return []

        pair_a = (avgs[0] + avgs[3]) / 2
        pair_b = (avgs[1] + avgs[2]) / 2
        overall = (pair_a + pair_b) / 2
        if overall <= 0:
            return []

        diagonal_diff = abs(pair_a - pair_b) / overall
        if diagonal_diff < 0.10:
            return []

        front = (avgs[0] + avgs[1]) / 2
        back = (avgs[2] + avgs[3]) / 2
        front_back_diff = abs(front - back) / overall

        if diagonal_diff > front_back_diff:
            direction = "toward motors 1 & 4" if pair_a > pair_b else "toward motors 2 & 3"
        else:
            direction = "toward front" if front > back else "toward rear"
        worst = max(diagonal_diff, front_back_diff)

        if worst > 0.20:
            severity = "high"
        elif worst > 0.15:
            severity = "medium"
        else:
            severity = "low"

        return [make_issue(
            context, CG_OFFSET, severity, window,
            description=f"CG offset: {worst * 100:.0f}% motor imbalance {direction} during hover",
            metrics=IssueMetrics(motor_saturation=float(worst * 100)),
            confidence=min(0.90, 0.6 + worst * 2),
        )]

    def recommend(self, issues, frames, context):
        return [
            _hardware_recommendation(
                context, issue, 7,
                title="Adjust center of gravity",
                description=issue.description,
                rationale=(
                    "One set of motors works harder than the opposite set in a hover, so "
                    "the centre of gravity is off and the flight controller is "
                    "compensating. Moving the battery or other weight evens the load."
                ),
                risks=[
                    "The battery has to sit in a different spot",
                    "May need a different strap or mounting point",
                ],
                expected_improvement="Even motor load, longer flights, better handling",
            )
            for issue in issues if issue.type == CG_OFFSET
        ]


# ── Motor imbalance ──────────────────────────────────────────────────────────

class MotorImbalanceRule:
    """A single motor running well above the others in steady flight."""

    id = "motor-health-detection"
    name = "Motor Health Detection"
    description = "Detects individual motors working significantly harder than the mean"
    base_confidence = 0.80
    issue_types = (MOTOR_IMBALANCE,)
    applicable_axes = ("roll",)

    def condition(self, window, frames):
        # Uneven motors during manoeuvres are just the PID loop working
        return window.metadata.avg_throttle > 1200 and not window.metadata.has_stick_input

    def detect(self, window, frames, context):
        avgs = _motor_averages(window_slice(frames, window).motors)
        if avgs is None:
            return []
        mean = float(avgs.mean())
        if mean <= 0:
            return []

        deviations = (avgs - mean) / mean
        worst_motor = int(np.argmax(deviations))
        worst = float(deviations[worst_motor])
        if worst < 0.20:
            return []
        # Two motors high together is a CG offset, not one bad motor
        if np.count_nonzero(deviations > 0.12) >= 2:
            return []

        if worst > 0.35:
            severity = "high"
        elif worst > 0.25:
            severity = "medium"
        else:
            severity = "low"

        return [make_issue(
            context, MOTOR_IMBALANCE, severity, window,
            description=(
                f"Motor imbalance: motor {worst_motor + 1} working {worst * 100:.0f}% "
                "harder than average, possible damaged prop or failing motor"
            ),
            metrics=IssueMetrics(motor_saturation=worst * 100),
            confidence=min(0.90, 0.6 + worst * 1.5),
        )]

    def recommend(self, issues, frames, context):
        return [
            _hardware_recommendation(
                context, issue, 8,
                title="Inspect motor and prop",
                description=issue.description,
                rationale=(
                    "One motor running well above the rest is losing efficiency, either "
                    "in the motor or its prop: a chipped or unbalanced prop, worn "
                    "bearings, a bent shaft or debris in the bell."
                ),
                risks=[
                    "A damaged motor or prop can fail in flight",
                    "May need replacement parts",
                ],
                expected_improvement="Even motor load, less vibration, longer motor and battery life",
            )
            for issue in issues if issue.type == MOTOR_IMBALANCE
        ]


# ── ESC desync ───────────────────────────────────────────────────────────────

class EscDesyncRule:
    """Single-motor spikes that jump and fall back within a frame."""

    id = "esc-desync-detection"
    name = "ESC Desync Detection"
    description = "Detects sudden motor output spikes indicating ESC desync events"
    base_confidence = 0.80
    issue_types = (ESC_DESYNC,)
    applicable_axes = ("roll",)

    def condition(self, window, frames):
        return window.metadata.avg_throttle > 1100

    def detect(self, window, frames, context):
        motors = window_slice(frames, window).motors
        motor_count, n = motors.shape
        if n < 3 or motor_count < 2:
            return []

        jump = np.abs(motors[:, 1:-1] - motors[:, :-2])
        fall = np.abs(motors[:, 2:] - motors[:, 1:-1])
        # Mean jump of every other motor at the same frame
        others = (jump.sum(axis=0, keepdims=True) - jump) / (motor_count - 1)

        spikes = (jump > ESC_DESYNC_JUMP) & (fall > ESC_DESYNC_JUMP * 0.5) & (jump > others * 3)
        count = int(np.count_nonzero(spikes))
        if count == 0:
            return []

        # Frame-major so ties go to the earliest spike
        masked = np.where(spikes, jump, 0.0).T
        frame_idx, worst_motor = np.unravel_index(int(np.argmax(masked)), masked.shape)
        worst_jump = float(masked[frame_idx, worst_motor])

        if count > 3:
            severity = "high"
        elif count > 1:
            severity = "medium"
        else:
            severity = "low"

        return [make_issue(
            context, ESC_DESYNC, severity, window,
            description=(
                f"ESC desync: {count} spike(s) detected, worst on motor "
                f"{worst_motor + 1} ({worst_jump:.0f} unit jump)"
            ),
            metrics=IssueMetrics(amplitude=worst_jump),
            confidence=min(0.90, 0.6 + count * 0.1),
        )]

    def recommend(self, issues, frames, context):
        return [
            _hardware_recommendation(
                context, issue, 9,
                title="Investigate ESC desync",
                description=issue.description,
                rationale=(
                    "A desync happens when the ESC loses track of the rotor position. "
                    "The motor stutters, the ESC recovers with a hard pulse, and one "
                    "motor trace spikes. Aggressive timing, a KV/ESC mismatch, damaged "
                    "magnets or demag events are common causes."
                ),
                risks=[
                    "Repeated desyncs damage motors and ESCs",
                    "Can cause a loss of control in the air",
                    "May need an ESC firmware update or settings change",
                ],
                expected_improvement="No more desync spikes and smoother motor operation",
            )
            for issue in issues if issue.type == ESC_DESYNC
        ]


# ── Voltage sag ──────────────────────────────────────────────────────────────

class VoltageSagRule:
    """Motors running well above the throttle command late in the flight."""

    id = "voltage-sag-detection"
    name = "Voltage Sag Detection"
    description = "Detects battery voltage sag by comparing motor output across flight duration"
    base_confidence = 0.70
    issue_types = (VOLTAGE_SAG,)
    applicable_axes = ("roll",)

    def condition(self, window, frames):
        meta = window.metadata
        return 1200 <= meta.avg_throttle <= 1600 and not meta.has_stick_input

    def detect(self, window, frames, context):
        total = len(frames)
        progress = window.start_index / total if total > 0 else 0.0
        # Only the last quarter of the flight is compared
        if progress < 0.75:
            return []

        motors = window_slice(frames, window).motors
        if motors.size == 0:
            return []
        excess = float(motors.mean()) - window.metadata.avg_throttle
        if excess < 50:
            return []

        if excess > 150:
            severity = "high"
        elif excess > 100:
            severity = "medium"
        else:
            severity = "low"

        return [make_issue(
            context, VOLTAGE_SAG, severity, window,
            description=(
                f"Voltage sag: motors running {excess:.0f} units above throttle "
                "command in last quarter of flight"
            ),
            metrics=IssueMetrics(motor_saturation=excess),
            confidence=min(0.85, 0.5 + excess * 0.002),
        )]

    def recommend(self, issues, frames, context):
        return [
            _hardware_recommendation(
                context, issue, 5,
                title="Battery voltage sag detected",
                description=issue.description,
                rationale=(
                    "Motor output climbs for the same throttle as the flight goes on, so "
                    "the pack voltage is dropping and the flight controller is asking "
                    "for more duty cycle. That eats headroom and can saturate the motors "
                    "late in the flight."
                ),
                risks=[
                    "The pack may be worn or too small for the quad",
                    "Landing earlier is kinder to the battery",
                ],
                expected_improvement="A fresher or larger pack keeps full authority to the end of the flight",
            )
            for issue in issues if issue.type == VOLTAGE_SAG
        ]
