"""Quad size profiles.

A profile scales each detector's raw thresholds (a whoop is allowed far
more gyro noise than a 5" before we call it a problem) and switches a few
recommendation strategies that only make sense for some frame sizes.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Optional

from .models import LogMetadata


@dataclass(frozen=True)
class ProfileThresholds:
    """Multipliers applied to each rule's raw thresholds (1.0 = 5" baseline)."""
    gyro_noise: float = 1.0
    dterm_noise: float = 1.0
    propwash_amplitude: float = 1.0
    bounceback_overshoot: float = 1.0
    wobble_amplitude: float = 1.0
    motor_saturation: float = 1.0
    tracking_error: float = 1.0
    high_throttle_oscillation: float = 1.0
    filter_mismatch: float = 1.0


@dataclass(frozen=True)
class ProfileOverrides:
    propwash_prefer_iterm_relax: bool = False
    iterm_relax_cutoff: int = 0
    warn_aggressive_filtering: bool = False
    motor_authority_limited: bool = False
    expected_d_to_p_ratio: str = "~0.65:1"


@dataclass(frozen=True)
class QuadProfile:
    id: str
    label: str
    description: str
    thresholds: ProfileThresholds = field(default_factory=ProfileThresholds)
    overrides: ProfileOverrides = field(default_factory=ProfileOverrides)


WHOOP = QuadProfile(
    id="whoop",
    label="Whoop",
    description="65-85mm brushless whoops (1S-2S)",
    thresholds=ProfileThresholds(
        gyro_noise=2.5, dterm_noise=2.0, propwash_amplitude=1.5,
        bounceback_overshoot=1.3, wobble_amplitude=1.3, motor_saturation=1.8,
        tracking_error=1.3, high_throttle_oscillation=1.5,
    ),
    overrides=ProfileOverrides(
        propwash_prefer_iterm_relax=True, iterm_relax_cutoff=10,
        warn_aggressive_filtering=True, motor_authority_limited=True,
        expected_d_to_p_ratio="~1:1",
    ),
)

TOOTHPICK3 = QuadProfile(
    id="toothpick3",
    label='3"',
    description='3" toothpicks and micros (1S-4S)',
    thresholds=ProfileThresholds(
        gyro_noise=1.5, dterm_noise=1.3, propwash_amplitude=1.2,
        bounceback_overshoot=1.1, wobble_amplitude=1.1, motor_saturation=1.3,
        tracking_error=1.1, high_throttle_oscillation=1.2,
    ),
    overrides=ProfileOverrides(expected_d_to_p_ratio="~0.7:1"),
)

FIVE_INCH = QuadProfile(
    id="five_inch",
    label='5"',
    description='5" freestyle/racing quads (4S-6S)',
)

SEVEN_INCH = QuadProfile(
    id="seven_inch",
    label='7"',
    description='7" long-range and cinematic quads (6S)',
    thresholds=ProfileThresholds(
        gyro_noise=0.8, dterm_noise=0.9, propwash_amplitude=1.3,
        bounceback_overshoot=1.2, wobble_amplitude=1.2, motor_saturation=1.5,
        tracking_error=1.2, high_throttle_oscillation=1.3,
    ),
    overrides=ProfileOverrides(
        propwash_prefer_iterm_relax=True, iterm_relax_cutoff=7,
        expected_d_to_p_ratio="~0.5:1",
    ),
)

XCLASS = QuadProfile(
    id="xclass",
    label="X-Class",
    description='10"+ X-Class and heavy lifters',
    thresholds=ProfileThresholds(
        gyro_noise=0.7, dterm_noise=0.8, propwash_amplitude=1.5,
        bounceback_overshoot=1.4, wobble_amplitude=1.4, motor_saturation=2.0,
        tracking_error=1.4, high_throttle_oscillation=1.5,
    ),
    overrides=ProfileOverrides(
        propwash_prefer_iterm_relax=True, iterm_relax_cutoff=5,
        motor_authority_limited=True, expected_d_to_p_ratio="~0.4:1",
    ),
)

QUAD_PROFILES = {p.id: p for p in (WHOOP, TOOTHPICK3, FIVE_INCH, SEVEN_INCH, XCLASS)}
QUAD_SIZE_ORDER = ("whoop", "toothpick3", "five_inch", "seven_inch", "xclass")
DEFAULT_PROFILE = FIVE_INCH


def get_profile(name: Optional[str]) -> QuadProfile:
    """Look up a built-in profile by id.  ``None`` gives the 5" default."""
    if name is None:
        return DEFAULT_PROFILE
    try:
        return QUAD_PROFILES[name]
    except KeyError:
        raise ValueError(
            f"Unknown quad profile {name!r}; expected one of {', '.join(QUAD_SIZE_ORDER)}"
        ) from None


@dataclass
class SizeDetection:
    suggested_size: str
    confidence: float
    reasoning: list


_NAME_PATTERNS = (
    ("whoop", re.compile(r"whoop|tiny|mob|meteor|65|75"), "whoop"),
    ("toothpick3", re.compile(r'tooth|3"|3 inch|micro|cinewhoop'), '3"'),
    ("five_inch", re.compile(r'5"|five|5 inch|freestyle|race|apex|source'), '5"'),
    ("seven_inch", re.compile(r'7"|seven|7 inch|long.?range|lr|chimera'), '7"'),
    ("xclass", re.compile(r'x.?class|10"|12"|heavy|lift'), "X-Class"),
)


def detect_quad_size(metadata: LogMetadata) -> SizeDetection:
    """Guess the quad size from log metadata with a simple scoring heuristic.

    Signals: craft name keywords (strongest), D:P ratio, gyro LPF1 cutoff,
    loop rate and dynamic idle.  With no signal at all we fall back to 5"
    at low confidence.
    """
    scores = {size: 0 for size in QUAD_SIZE_ORDER}
    reasoning = []

    name = (metadata.craft_name or "").lower()
    if name:
        for size, pattern, label in _NAME_PATTERNS:
            if pattern.search(name):
                scores[size] += 3
                reasoning.append(f'Craft name "{metadata.craft_name}" matches {label} keywords')

    pid = metadata.pid_profile
    if pid is not None and pid.roll_p and pid.roll_d:
        d_to_p = pid.roll_d / pid.roll_p
        if d_to_p > 0.9:
            scores["whoop"] += 2
            reasoning.append(f"D:P ratio {d_to_p:.2f} is high (typical for whoops)")
        elif d_to_p > 0.7:
            scores["toothpick3"] += 1
            scores["five_inch"] += 1
        elif d_to_p < 0.45:
            scores["seven_inch"] += 1
            scores["xclass"] += 2
            reasoning.append(f"D:P ratio {d_to_p:.2f} is low (typical for large quads)")

    filters = metadata.filter_settings
    if filters is not None and filters.gyro_lpf1_cutoff:
        cutoff = filters.gyro_lpf1_cutoff
        if cutoff >= 300:
            scores["whoop"] += 1
            scores["toothpick3"] += 1
        elif cutoff <= 150:
            scores["seven_inch"] += 1
            scores["xclass"] += 1
            reasoning.append(f"Low gyro LPF1 cutoff ({cutoff:g} Hz) suggests larger quad")

    if metadata.sample_rate:
        if metadata.sample_rate <= 4000:
            scores["whoop"] += 1
        elif metadata.sample_rate >= 8000:
            scores["five_inch"] += 1

    if pid is not None and pid.dynamic_idle:
        if pid.dynamic_idle >= 40:
            scores["seven_inch"] += 1
            scores["xclass"] += 1
        elif pid.dynamic_idle <= 20:
            scores["whoop"] += 1

    best_size, best_score = "five_inch", 0
    for size in QUAD_SIZE_ORDER:
        if scores[size] > best_score:
            best_size, best_score = size, scores[size]

    total = sum(scores.values())
    if total == 0:
        reasoning.append('No strong signals found, defaulting to 5"')
        return SizeDetection("five_inch", 0.2, reasoning)

    confidence = min(0.95, 0.3 + (best_score / total) * 0.6 + best_score * 0.05)
    return SizeDetection(best_size, confidence, reasoning)
