"""End-to-end tests for tuneflow.engine.RuleEngine."""
import asyncio

import pytest

from tuneflow.config import AnalysisConfig
from tuneflow.engine import RuleEngine, sort_issues
from tuneflow.models import (
    DECREASE_PID,
    Frame,
    FrameData,
    IssueMetrics,
    LogMetadata,
    PidProfile,
    PROPWASH,
)
from tuneflow.profiles import get_profile
from tuneflow.rules.base import change, make_issue, make_recommendation
from tuneflow.summary import generate_summary


# ── helpers ──────────────────────────────────────────────────────────────────

class _EveryRollWindow:
    """Minimal rule: flags every roll window and always asks for less P."""
    id = "every-roll-window"
    name = "Every roll window"
    description = "Test rule"
    base_confidence = 0.5
    issue_types = (PROPWASH,)
    applicable_axes = ("roll",)

    def condition(self, window, frames):
        return True

    def detect(self, window, frames, context):
        return [make_issue(context, PROPWASH, "medium", window, "test propwash",
                           IssueMetrics(amplitude=1.0), self.base_confidence)]

    def recommend(self, issues, frames, context):
        return [
            make_recommendation(
                context, issue, DECREASE_PID, 6, issue.confidence,
                title="Lower P", description="test", rationale="test",
                changes=[change("pidPGain", "-5%", "test", axis=issue.axis)],
            )
            for issue in issues
        ]


@pytest.fixture
def noisy_flight(flight, rng):
    """Three seconds of broadband gyro noise on every axis."""
    return flight(n=3000, gyro=rng.normal(0, 12, (3, 3000)))


# ── Pipeline with a stub rule ────────────────────────────────────────────────

class TestPipeline:
    """Tests for the pipeline stages around the rules."""

    def test_overlapping_windows_collapse_to_one_issue(self, flight):
        metadata = LogMetadata(sample_rate=1000, pid_profile=PidProfile(roll_p=45))
        engine = RuleEngine(rules=[_EveryRollWindow()])
        result = engine.analyze_log(flight(n=1000), metadata)

        assert len(result.issues) == 1
        found = result.issues[0]
        assert found.id == "issue-1"
        assert found.time_range == (0.0, pytest.approx(949_000.0))
        assert found.cross_axis_context.pattern == "singleAxis"
        assert found.temporal_pattern is None      # flight too short

        assert len(result.recommendations) == 1
        rec = result.recommendations[0]
        assert rec.issue_id == found.id
        assert rec.changes[0].current_value == 45

        assert result.summary.overall_health == "good"
        assert result.summary.top_priorities == ["Lower P"]

    def test_rule_only_sees_its_axes(self, flight, metadata):
        rule = _EveryRollWindow()
        rule.applicable_axes = ("yaw",)
        result = RuleEngine(rules=[rule]).analyze_log(flight(n=1000), metadata)
        assert [i.axis for i in result.issues] == ["yaw"]
        assert result.issues[0].cross_axis_context.pattern == "yawOnly"

    def test_no_rules(self, flight, metadata):
        result = RuleEngine(rules=[]).analyze_log(flight(n=1000), metadata)
        assert result.issues == []
        assert result.recommendations == []
        assert result.summary.overall_health == "excellent"
        assert len(result.segments) == 1

    def test_frame_sequence_input(self, flight, metadata):
        data = flight(n=500)
        frames = [
            Frame(
                time=float(data.time[k]),
                gyro=tuple(data.gyro[:, k]),
                setpoint=tuple(data.setpoint[:, k]),
                pid_p=tuple(data.pid_p[:, k]),
                pid_i=tuple(data.pid_i[:, k]),
                pid_d=tuple(data.pid_d[:, k]),
                pid_sum=tuple(data.pid_sum[:, k]),
                motors=tuple(data.motors[:, k]),
                rc_command=(0.0, 0.0, 0.0, float(data.throttle[k])),
                throttle=float(data.throttle[k]),
            )
            for k in range(len(data))
        ]
        engine = RuleEngine(rules=[_EveryRollWindow()])
        assert engine.analyze_log(frames, metadata) == engine.analyze_log(data, metadata)


# ── Full catalog ─────────────────────────────────────────────────────────────

class TestFullAnalysis:
    """Tests for the built-in rule catalog end to end."""

    def test_noise_is_found(self, noisy_flight, metadata):
        result = RuleEngine().analyze_log(noisy_flight, metadata)
        assert result.issues
        assert result.recommendations

    def test_deterministic(self, noisy_flight, metadata):
        engine = RuleEngine()
        assert engine.analyze_log(noisy_flight, metadata) == engine.analyze_log(noisy_flight, metadata)

    def test_one_issue_per_type_and_axis(self, noisy_flight, metadata):
        result = RuleEngine().analyze_log(noisy_flight, metadata)
        keys = [(i.type, i.axis) for i in result.issues]
        assert len(keys) == len(set(keys))

    def test_each_parameter_changed_once(self, noisy_flight, metadata):
        result = RuleEngine().analyze_log(noisy_flight, metadata)
        keys = [(c.parameter, c.axis) for r in result.recommendations for c in r.changes]
        assert len(keys) == len(set(keys))

    def test_recommendations_point_at_issues(self, noisy_flight, metadata):
        result = RuleEngine().analyze_log(noisy_flight, metadata)
        ids = {i.id for i in result.issues}
        assert all(r.issue_id in ids for r in result.recommendations)

    def test_ordering(self, noisy_flight, metadata):
        result = RuleEngine().analyze_log(noisy_flight, metadata)
        priorities = [r.priority for r in result.recommendations]
        assert priorities == sorted(priorities, reverse=True)
        rank = {"low": 0, "medium": 1, "high": 2}
        severities = [rank[i.severity] for i in result.issues]
        assert severities == sorted(severities, reverse=True)

    def test_summary_matches_issues(self, noisy_flight, metadata):
        result = RuleEngine().analyze_log(noisy_flight, metadata)
        assert result.summary == generate_summary(result.issues, result.recommendations)

    def test_profile_by_name(self, noisy_flight, metadata):
        engine = RuleEngine()
        by_name = engine.analyze_log(noisy_flight, metadata, "whoop")
        by_profile = engine.analyze_log(noisy_flight, metadata, get_profile("whoop"))
        assert by_name == by_profile

    def test_short_log(self, flight, metadata):
        result = RuleEngine().analyze_log(flight(n=100), metadata)
        assert result.issues == []
        assert result.recommendations == []
        assert result.summary.overall_health == "excellent"

    def test_empty_log(self, metadata):
        result = RuleEngine().analyze_log(FrameData.from_frames([]), metadata)
        assert result.issues == []
        assert result.segments == []

    def test_quiet_flight_is_clean(self, flight, metadata):
        result = RuleEngine().analyze_log(flight(n=2000), metadata)
        assert result.summary.high_issue_count == 0


# ── Async ────────────────────────────────────────────────────────────────────

class TestAnalyzeLogAsync:
    """Tests for analyze_log_async()."""

    def test_matches_sync(self, noisy_flight, metadata):
        engine = RuleEngine()
        sync = engine.analyze_log(noisy_flight, metadata)
        result = asyncio.run(engine.analyze_log_async(noisy_flight, metadata))
        assert result == sync

    def test_progress_reported(self, noisy_flight, metadata):
        calls = []
        engine = RuleEngine(config=AnalysisConfig(batch_size=50))
        asyncio.run(engine.analyze_log_async(
            noisy_flight, metadata, on_progress=lambda f, msg: calls.append((f, msg)),
        ))
        fractions = [f for f, _ in calls]
        assert fractions == sorted(fractions)
        assert calls[0][1].startswith("Analyzed 50/")
        assert calls[-2] == (0.9, "Generating recommendations")
        assert calls[-1] == (1.0, "Analysis complete")
        # 174 windows in batches of 50, plus two finalization calls
        assert len(calls) == 4 + 2


# ── sort_issues ──────────────────────────────────────────────────────────────

def test_sort_issues(issue, rec):
    issues = [
        issue(issue_id="issue-1", severity="medium", confidence=0.9),
        issue(issue_id="issue-2", severity="high", confidence=0.5),
        issue(issue_id="issue-3", severity="medium", confidence=0.6),
        issue(issue_id="issue-4", severity="medium", confidence=0.95),
    ]
    recs = [rec(issue_id="issue-3", priority=9), rec(issue_id="issue-1", priority=4)]
    ordered = sort_issues(issues, recs)
    assert [i.id for i in ordered] == ["issue-2", "issue-3", "issue-1", "issue-4"]


def test_sort_issues_counts_related_ids(issue, rec):
    issues = [issue(issue_id="issue-1"), issue(issue_id="issue-2")]
    linked = rec(issue_id="issue-1", priority=2)
    linked.related_issue_ids = ["issue-2"]
    boost = rec(issue_id="issue-9", priority=8)
    boost.related_issue_ids = ["issue-2"]
    assert [i.id for i in sort_issues(issues, [linked, boost])] == ["issue-2", "issue-1"]
