"""tuneflow -- flight-controller log tuning analysis.

Feeds decoded blackbox frames through windowed detectors and a rule
catalog, then deduplicates, correlates and ranks the findings into
conflict-free PID/filter recommendations.
"""
import logging

from .config import AnalysisConfig
from .engine import RuleEngine
from .models import (
    AnalysisResult,
    DetectedIssue,
    Frame,
    FrameData,
    LogMetadata,
    Recommendation,
)
from .profiles import DEFAULT_PROFILE, QUAD_PROFILES, get_profile

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "AnalysisConfig",
    "AnalysisResult",
    "DEFAULT_PROFILE",
    "DetectedIssue",
    "Frame",
    "FrameData",
    "LogMetadata",
    "QUAD_PROFILES",
    "Recommendation",
    "RuleEngine",
    "get_profile",
]
