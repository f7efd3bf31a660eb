"""Rule catalog.

Rules run in registration order, and that order decides the order of raw
issues and of recommendations, so ``default_rules`` is a fixed tuple.
"""
from .base import RuleContext, TuningRule
from .control import (
    BouncebackRule,
    HighThrottleOscillationRule,
    MotorSaturationRule,
    PropwashRule,
    TrackingQualityRule,
    WobbleRule,
)
from .hardware import (
    BearingNoiseRule,
    CgOffsetRule,
    EscDesyncRule,
    FrameResonanceRule,
    MotorImbalanceRule,
    VoltageSagRule,
)
from .noise import (
    DTermNoiseRule,
    ElectricalNoiseRule,
    FeedforwardNoiseRule,
    FilterNoiseComparisonRule,
    GyroNoiseRule,
)
from .temporal import TemporalPatternRule


def default_rules() -> tuple:
    """A fresh instance of every built-in rule, in evaluation order."""
    return (
        BouncebackRule(),
        PropwashRule(),
        WobbleRule(),
        TrackingQualityRule(),
        MotorSaturationRule(),
        DTermNoiseRule(),
        HighThrottleOscillationRule(),
        GyroNoiseRule(),
        FeedforwardNoiseRule(),
        TemporalPatternRule(),
        BearingNoiseRule(),
        CgOffsetRule(),
        ElectricalNoiseRule(),
        EscDesyncRule(),
        FrameResonanceRule(),
        MotorImbalanceRule(),
        VoltageSagRule(),
        FilterNoiseComparisonRule(),
    )


__all__ = [
    "BearingNoiseRule",
    "BouncebackRule",
    "CgOffsetRule",
    "DTermNoiseRule",
    "ElectricalNoiseRule",
    "EscDesyncRule",
    "FeedforwardNoiseRule",
    "FilterNoiseComparisonRule",
    "FrameResonanceRule",
    "GyroNoiseRule",
    "HighThrottleOscillationRule",
    "MotorImbalanceRule",
    "MotorSaturationRule",
    "PropwashRule",
    "RuleContext",
    "TemporalPatternRule",
    "TrackingQualityRule",
    "TuningRule",
    "VoltageSagRule",
    "WobbleRule",
    "default_rules",
]
