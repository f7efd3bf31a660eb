"""Explanatory rule for flight-long trends.

Thermal degradation and sudden mechanical events are not visible in a
single window.  The temporal progression pass synthesizes them after
deduplication; this rule never detects anything itself and only turns
those meta-issues into hardware advice.
"""
from __future__ import annotations

from ..models import HARDWARE_CHECK, MECHANICAL_EVENT, THERMAL_DEGRADATION
from .base import make_recommendation


class TemporalPatternRule:
    id = "temporal-pattern"
    name = "Temporal Pattern"
    description = "Explains issues that change over the course of the flight"
    base_confidence = 0.7
    issue_types = (THERMAL_DEGRADATION, MECHANICAL_EVENT)
    applicable_axes = ("roll", "pitch", "yaw")

    def condition(self, window, frames):
        return False

    def detect(self, window, frames, context):
        return []

    def recommend(self, issues, frames, context):
        recs = []
        for issue in issues:
            if issue.type == THERMAL_DEGRADATION:
                recs.append(make_recommendation(
                    context, issue, HARDWARE_CHECK, 5, issue.confidence,
                    title=f"Issues worsen over flight on {issue.axis}",
                    description=issue.description,
                    rationale=(
                        "Issues getting worse as the flight goes on point at heat: motors "
                        "and ESCs warming up, or the battery sagging under load."
                    ),
                    risks=["Ignoring thermal problems can end in a motor or ESC failure"],
                    expected_improvement="Identify the root cause of the degradation",
                    category="hardware",
                ))
            elif issue.type == MECHANICAL_EVENT:
                recs.append(make_recommendation(
                    context, issue, HARDWARE_CHECK, 8, issue.confidence,
                    title=f"Sudden mechanical issue on {issue.axis}",
                    description=issue.description,
                    rationale=(
                        "Issues that appear suddenly mid-flight after a clean start "
                        "usually mean physical damage: a prop strike, a loose part or a "
                        "crash."
                    ),
                    risks=["Flying with mechanical damage can make it worse"],
                    expected_improvement="Find and fix the physical damage",
                    category="hardware",
                ))
        return recs
