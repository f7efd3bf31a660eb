"""Tests for tuneflow.correlation -- cross-axis patterns and frequency merging."""
import pytest

from tuneflow.correlation import (
    classify_pattern,
    correlate_axes,
    format_issue_type,
    merge_frequency_issues,
)
from tuneflow.models import BEARING_NOISE, CG_OFFSET, FRAME_RESONANCE, HARDWARE_CHECK, PROPWASH


class TestClassifyPattern:
    """Tests for classify_pattern()."""

    @pytest.mark.parametrize("axes, pattern", [
        (("roll", "pitch", "yaw"), "allAxes"),
        (("pitch", "roll"), "rollPitchOnly"),
        (("yaw",), "yawOnly"),
        (("pitch",), "singleAxis"),
        (("roll", "yaw"), "asymmetric"),
        (("pitch", "yaw"), "asymmetric"),
    ])
    def test_patterns(self, axes, pattern):
        context = classify_pattern(axes)
        assert context.pattern == pattern
        assert context.affected_axes == axes

    def test_single_axis_names_the_axis(self):
        assert "Only affects roll" in classify_pattern(["roll"]).description


def test_format_issue_type():
    assert format_issue_type("midThrottleWobble") == "Mid-throttle wobble"
    assert format_issue_type("somethingNew") == "somethingNew"


# ── correlate_axes ───────────────────────────────────────────────────────────

class TestCorrelateAxes:
    """Tests for correlate_axes()."""

    def test_all_axes_gets_hardware_check(self, issue):
        issues = [
            issue(axis="roll", issue_id="issue-1", confidence=0.7),
            issue(axis="pitch", issue_id="issue-2", severity="high", confidence=0.9),
            issue(axis="yaw", issue_id="issue-3", confidence=0.8),
        ]
        annotated, recs = correlate_axes(issues)
        assert all(i.cross_axis_context.pattern == "allAxes" for i in annotated)
        assert len(recs) == 1
        rec = recs[0]
        assert rec.id == "rec-1"
        assert rec.issue_id == "issue-2"   # most severe
        assert rec.type == HARDWARE_CHECK
        assert rec.category == "hardware"
        assert rec.priority == 5
        assert rec.confidence == pytest.approx(0.81)
        assert rec.title == "Propwash detected on all axes"
        assert rec.changes == []

    def test_all_axes_confidence_capped(self, issue):
        issues = [issue(axis=a, issue_id=f"issue-{a}", confidence=1.0) for a in ("roll", "pitch", "yaw")]
        _, recs = correlate_axes(issues)
        assert recs[0].confidence == pytest.approx(0.85)

    def test_asymmetric_pair(self, issue):
        issues = [issue(axis="roll", issue_id="issue-1"), issue(axis="yaw", issue_id="issue-2")]
        annotated, recs = correlate_axes(issues)
        assert annotated[0].cross_axis_context.pattern == "asymmetric"
        assert recs[0].priority == 4
        assert recs[0].title == "Asymmetric Propwash pattern"
        assert recs[0].confidence == pytest.approx(0.64)
        assert recs[0].issue_id == "issue-1"

    @pytest.mark.parametrize("axes", [("roll",), ("yaw",), ("roll", "pitch")])
    def test_no_recommendation_for_other_patterns(self, issue, axes):
        issues = [issue(axis=a, issue_id=f"issue-{a}") for a in axes]
        annotated, recs = correlate_axes(issues)
        assert recs == []
        assert all(i.cross_axis_context is not None for i in annotated)

    def test_global_types_pass_through(self, issue):
        found = issue(CG_OFFSET)
        annotated, recs = correlate_axes([found])
        assert annotated == [found]
        assert annotated[0].cross_axis_context is None
        assert recs == []

    def test_regrouped_by_type(self, issue):
        issues = [
            issue(PROPWASH, axis="roll", issue_id="issue-1"),
            issue("gyroNoise", axis="roll", issue_id="issue-2"),
            issue(PROPWASH, axis="pitch", issue_id="issue-3"),
        ]
        annotated, _ = correlate_axes(issues)
        assert [i.id for i in annotated] == ["issue-1", "issue-3", "issue-2"]

    def test_severity_untouched(self, issue):
        annotated, _ = correlate_axes([issue(severity="low")])
        assert annotated[0].severity == "low"


# ── merge_frequency_issues ───────────────────────────────────────────────────

class TestMergeFrequencyIssues:
    """Tests for merge_frequency_issues()."""

    def test_same_frequency_collapses_to_strongest(self, issue, rec):
        issues = [
            issue(PROPWASH, issue_id="issue-0"),
            issue(FRAME_RESONANCE, axis="roll", severity="high", issue_id="issue-1",
                  frequency=120.0, amplitude=5.0),
            issue(FRAME_RESONANCE, axis="pitch", issue_id="issue-2",
                  frequency=125.0, amplitude=8.0),
            issue(FRAME_RESONANCE, axis="yaw", issue_id="issue-3",
                  frequency=300.0, amplitude=4.0),
        ]
        recs = [rec(issue_id="issue-2", rec_id="rec-1"), rec(issue_id="issue-3", rec_id="rec-2")]
        merged, remapped = merge_frequency_issues(issues, recs)

        assert [i.id for i in merged] == ["issue-0", "issue-1", "issue-3"]
        winner = merged[1]
        assert winner.cross_axis_context.pattern == "rollPitchOnly"
        assert winner.cross_axis_context.affected_axes == ("roll", "pitch")
        assert winner.cross_axis_context.description == "Strongest on roll, also on pitch"
        assert merged[2].cross_axis_context is None
        assert [r.issue_id for r in remapped] == ["issue-1", "issue-3"]

    def test_amplitude_breaks_severity_tie(self, issue):
        issues = [
            issue(BEARING_NOISE, axis="roll", issue_id="issue-1", frequency=200.0, amplitude=3.0),
            issue(BEARING_NOISE, axis="yaw", issue_id="issue-2", frequency=205.0, amplitude=6.0),
        ]
        merged, _ = merge_frequency_issues(issues, [])
        assert [i.id for i in merged] == ["issue-2"]
        assert merged[0].cross_axis_context.pattern == "asymmetric"

    def test_all_axes_description(self, issue):
        issues = [
            issue(FRAME_RESONANCE, axis=a, issue_id=f"issue-{k}", frequency=f, amplitude=amp)
            for k, (a, f, amp) in enumerate([("roll", 100.0, 2.0), ("pitch", 104.0, 7.0), ("yaw", 98.0, 1.0)])
        ]
        merged, _ = merge_frequency_issues(issues, [])
        assert len(merged) == 1
        context = merged[0].cross_axis_context
        assert context.pattern == "allAxes"
        assert context.description == "Strongest on pitch, but present on all axes"

    def test_different_types_never_merge(self, issue):
        issues = [
            issue(FRAME_RESONANCE, issue_id="issue-1", frequency=150.0),
            issue(BEARING_NOISE, axis="pitch", issue_id="issue-2", frequency=150.0),
        ]
        merged, _ = merge_frequency_issues(issues, [])
        assert len(merged) == 2

    def test_nothing_to_merge(self, issue, rec):
        issues = [issue(), issue("gyroNoise", issue_id="issue-2")]
        recs = [rec()]
        merged, same_recs = merge_frequency_issues(issues, recs)
        assert merged == issues
        assert same_recs == recs

    def test_related_ids_remapped(self, issue, rec):
        issues = [
            issue(FRAME_RESONANCE, axis="roll", issue_id="issue-1", frequency=80.0, amplitude=9.0),
            issue(FRAME_RESONANCE, axis="pitch", issue_id="issue-2", frequency=82.0, amplitude=1.0),
        ]
        linked = rec(issue_id="issue-5")
        linked.related_issue_ids = ["issue-2", "issue-5"]
        _, remapped = merge_frequency_issues(issues, [linked])
        assert remapped[0].related_issue_ids == ["issue-1", "issue-5"]
        assert linked.related_issue_ids == ["issue-2", "issue-5"]
