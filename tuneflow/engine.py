"""Rule engine -- runs the whole analysis pipeline.

``RuleEngine.analyze_log`` is the main entry point:

1. Cut the log into overlapping per-axis windows.
2. Run every applicable rule's detector on every window.
3. Deduplicate, correlate across axes, merge same-frequency structural
   issues and classify flight-long trends.
4. Ask each rule for recommendations on the issues it owns, resolve
   conflicting parameter changes and fill in current values.
5. Sort, summarize and build the flight timeline.

``analyze_log_async`` does the same with the window scan split into
batches, yielding to the event loop between batches so a host can report
progress.  Both produce the same result for the same input.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, Sequence, Union

from .config import AnalysisConfig, DEFAULT_CONFIG
from .correlation import correlate_axes, merge_frequency_issues
from .dedup import SEVERITY_RANK, deduplicate_issues
from .ids import IdGenerator
from .models import AnalysisResult, AnalysisWindow, Frame, FrameData, LogMetadata
from .profiles import QuadProfile, get_profile
from .recommendations import deduplicate_recommendations
from .rules import default_rules
from .rules.base import RuleContext, TuningRule
from .segmenter import segment_log
from .settings_lookup import populate_current_values
from .summary import generate_flight_segments, generate_summary
from .temporal import analyze_temporal_progression

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, str], None]


def _as_frame_data(frames: Union[FrameData, Sequence[Frame]]) -> FrameData:
    if isinstance(frames, FrameData):
        return frames
    return FrameData.from_frames(frames)


def _resolve_profile(profile: Union[QuadProfile, str, None]) -> QuadProfile:
    if isinstance(profile, QuadProfile):
        return profile
    return get_profile(profile)


def sort_issues(issues, recommendations) -> list:
    """Most severe first, then by the best priority aimed at the issue, then confidence."""
    best_priority = {}
    for rec in recommendations:
        for issue_id in [rec.issue_id, *(rec.related_issue_ids or ())]:
            best_priority[issue_id] = max(best_priority.get(issue_id, 0), rec.priority)
    return sorted(
        issues,
        key=lambda i: (
            -SEVERITY_RANK[i.severity],
            -best_priority.get(i.id, 0),
            -i.confidence,
        ),
    )


class RuleEngine:
    """Holds a rule catalog and the analysis constants.

    Parameters
    ----------
    rules : sequence of TuningRule, optional
        Rules in evaluation order.  Defaults to the built-in catalog.
    config : AnalysisConfig
    """

    def __init__(self, rules: Optional[Sequence[TuningRule]] = None,
                 config: AnalysisConfig = DEFAULT_CONFIG):
        self.rules = tuple(rules) if rules is not None else default_rules()
        self.config = config

    # ── Detection ────────────────────────────────────────────────────────────

    def analyze_window(self, window: AnalysisWindow, frames: FrameData,
                       context: RuleContext) -> list:
        """Raw issues from every rule that applies to ``window``."""
        issues = []
        for rule in self.rules:
            if window.axis not in rule.applicable_axes:
                continue
            if not rule.condition(window, frames):
                continue
            issues.extend(rule.detect(window, frames, context))
        return issues

    def _prepare(self, frames, metadata, profile):
        data = _as_frame_data(frames)
        context = RuleContext(
            profile=_resolve_profile(profile),
            metadata=metadata,
            ids=IdGenerator(),
        )
        windows = segment_log(data, metadata, self.config)
        logger.debug(
            "Analyzing %d frames in %d windows with %d rules (profile %s)",
            len(data), len(windows), len(self.rules), context.profile.id,
        )
        return data, context, windows

    def analyze_log(self, frames: Union[FrameData, Sequence[Frame]], metadata: LogMetadata,
                    profile: Union[QuadProfile, str, None] = None) -> AnalysisResult:
        """Run the full pipeline over one log.

        Parameters
        ----------
        frames : FrameData or sequence of Frame
        metadata : LogMetadata
        profile : QuadProfile, profile id, or None
            None uses the 5" default.

        Returns
        -------
        AnalysisResult
        """
        data, context, windows = self._prepare(frames, metadata, profile)
        raw_issues = []
        for window in windows:
            raw_issues.extend(self.analyze_window(window, data, context))
        return self.finalize_analysis(raw_issues, data, context)

    async def analyze_log_async(self, frames: Union[FrameData, Sequence[Frame]],
                                metadata: LogMetadata,
                                profile: Union[QuadProfile, str, None] = None,
                                on_progress: Optional[ProgressCallback] = None) -> AnalysisResult:
        """Same as ``analyze_log`` but yields to the event loop every ``batch_size`` windows.

        ``on_progress(fraction, message)`` is called after each batch and
        once more before finalization.
        """
        data, context, windows = self._prepare(frames, metadata, profile)
        total = len(windows)
        batch = self.config.batch_size

        raw_issues = []
        for start in range(0, total, batch):
            for window in windows[start:start + batch]:
                raw_issues.extend(self.analyze_window(window, data, context))
            done = min(start + batch, total)
            if on_progress is not None:
                on_progress(done / total * 0.9, f"Analyzed {done}/{total} windows")
            await asyncio.sleep(0)

        if on_progress is not None:
            on_progress(0.9, "Generating recommendations")
        result = self.finalize_analysis(raw_issues, data, context)
        if on_progress is not None:
            on_progress(1.0, "Analysis complete")
        return result

    # ── Post-processing ──────────────────────────────────────────────────────

    def generate_recommendations(self, issues, frames: FrameData, context: RuleContext) -> list:
        """Ask each rule, in order, to recommend on the issue types it owns.

        Issues are grouped by type in first-seen order; a rule sees each
        group filtered to its own types, so a type owned by two rules gets
        recommendations from both.
        """
        by_type = {}
        for issue in issues:
            by_type.setdefault(issue.type, []).append(issue)

        recommendations = []
        for rule in self.rules:
            for group in by_type.values():
                owned = [i for i in group if i.type in rule.issue_types]
                if owned:
                    recommendations.extend(rule.recommend(owned, frames, context))
        return recommendations

    def finalize_analysis(self, raw_issues, frames: FrameData,
                          context: RuleContext) -> AnalysisResult:
        """Turn raw window detections into the final result."""
        config = self.config

        issues = deduplicate_issues(raw_issues, config)
        logger.debug("Issues: %d raw, %d after deduplication", len(raw_issues), len(issues))

        issues, cross_axis_recs = correlate_axes(issues, context.ids)
        issues, cross_axis_recs = merge_frequency_issues(issues, cross_axis_recs, config)

        issues, meta_issues = analyze_temporal_progression(
            raw_issues, issues, frames.time, context.ids, config,
        )
        issues = issues + meta_issues
        logger.debug("Issues: %d after merging, %d meta-issues", len(issues), len(meta_issues))

        recommendations = self.generate_recommendations(issues, frames, context)
        recommendations.extend(cross_axis_recs)
        before = len(recommendations)
        recommendations = deduplicate_recommendations(recommendations, config)
        recommendations = populate_current_values(recommendations, context.metadata)
        logger.debug("Recommendations: %d generated, %d after conflict resolution",
                     before, len(recommendations))

        recommendations.sort(key=lambda r: -r.priority)
        issues = sort_issues(issues, recommendations)

        summary = generate_summary(issues, recommendations)
        segments = generate_flight_segments(frames, issues, config)
        logger.info(
            "Analysis complete: %s (%d high, %d medium, %d low issues, %d recommendations)",
            summary.overall_health, summary.high_issue_count, summary.medium_issue_count,
            summary.low_issue_count, len(recommendations),
        )
        return AnalysisResult(
            issues=issues,
            recommendations=recommendations,
            summary=summary,
            segments=segments,
        )
