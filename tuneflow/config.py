"""Analysis constants.

Most of these were picked empirically against real flight logs.  They are
collected here so tests (and curious users) can move them without patching
module globals.
"""
from dataclasses import dataclass


@dataclass(frozen=True)
class AnalysisConfig:
    window_duration_ms: float = 100.0   # segmenter window length
    min_window_frames: int = 50
    merge_gap_us: float = 100_000       # issues closer than this merge in pass 1
    max_displayed_occurrences: int = 5
    min_temporal_occurrences: int = 3
    min_flight_duration_us: float = 30_000_000
    trend_slope_threshold: float = 0.3  # normalized regression slope
    frequency_cluster_tolerance: float = 0.10
    change_increment: float = 0.05      # Betaflight slider step
    segment_frames: int = 1000
    batch_size: int = 40                # windows per cooperative batch

    def __post_init__(self):
        if self.window_duration_ms <= 0:
            raise ValueError("window_duration_ms must be positive")
        if self.min_window_frames < 2:
            raise ValueError("min_window_frames must be at least 2")
        if self.merge_gap_us < 0:
            raise ValueError("merge_gap_us must not be negative")
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.segment_frames < 1:
            raise ValueError("segment_frames must be at least 1")
        if self.change_increment <= 0:
            raise ValueError("change_increment must be positive")


DEFAULT_CONFIG = AnalysisConfig()
