"""Resolve current parameter values from log metadata.

Recommendations only say how to move a parameter ("+0.2", "-10%").  For
display it helps to know where it is now, so after deduplication every
change gets ``current_value`` filled in from the log header when the
header carries it.
"""
from __future__ import annotations

from dataclasses import replace
from typing import Optional

from .models import LogMetadata, ParameterChange

# Per-axis PID parameters -> PidProfile term suffix
_PER_AXIS_TERMS = {
    "pidPGain": "p",
    "pidIGain": "i",
    "pidDGain": "d",
    "pidDMinGain": "d_min",
    "pidFeedforward": "ff",
}

_PID_PROFILE_FIELDS = {
    "pidMasterMultiplier": "master_multiplier",
    "tpaRate": "tpa_rate",
    "tpaBreakpoint": "tpa_breakpoint",
    "dynamicIdle": "dynamic_idle",
}

_FILTER_FIELDS = {
    "gyroFilterMultiplier": "gyro_filter_multiplier",
    "dtermFilterMultiplier": "dterm_filter_multiplier",
    "dynamicNotchCount": "dynamic_notch_count",
    "dynamicNotchQ": "dynamic_notch_q",
    "dynamicNotchMinHz": "dynamic_notch_min_hz",
    "dynamicNotchMaxHz": "dynamic_notch_max_hz",
    "rpmFilterHarmonics": "rpm_filter_harmonics",
    "rpmFilterMinHz": "rpm_filter_min_hz",
    "itermRelaxCutoff": "iterm_relax_cutoff",
}


def lookup_current_value(parameter: str, metadata: Optional[LogMetadata],
                         axis: Optional[str] = None) -> Optional[float]:
    """Current value of ``parameter`` (on ``axis`` for PID terms), or None."""
    if metadata is None:
        return None
    pid = metadata.pid_profile
    if parameter in _PER_AXIS_TERMS:
        if pid is None or axis is None:
            return None
        return pid.axis_value(axis, _PER_AXIS_TERMS[parameter])
    if parameter in _PID_PROFILE_FIELDS:
        return getattr(pid, _PID_PROFILE_FIELDS[parameter]) if pid is not None else None
    if parameter in _FILTER_FIELDS:
        filters = metadata.filter_settings
        return getattr(filters, _FILTER_FIELDS[parameter]) if filters is not None else None
    return None


def with_current_value(change: ParameterChange, metadata: Optional[LogMetadata]) -> ParameterChange:
    if change.current_value is not None:
        return change
    current = lookup_current_value(change.parameter, metadata, change.axis)
    if current is None:
        return change
    return replace(change, current_value=current)


def populate_current_values(recommendations, metadata: Optional[LogMetadata]) -> list:
    """Copy of ``recommendations`` with every change's current value resolved."""
    if metadata is None:
        return list(recommendations)
    return [
        replace(rec, changes=[with_current_value(c, metadata) for c in rec.changes])
        for rec in recommendations
    ]


def is_rpm_filter_enabled(metadata: Optional[LogMetadata]) -> bool:
    harmonics = lookup_current_value("rpmFilterHarmonics", metadata)
    return harmonics is not None and harmonics >= 1


def is_d_gain_zero(metadata: Optional[LogMetadata], axis: str) -> bool:
    """True only when the header says D is exactly 0 on ``axis``."""
    return lookup_current_value("pidDGain", metadata, axis) == 0


def is_feedforward_zero(metadata: Optional[LogMetadata], axis: str) -> bool:
    return lookup_current_value("pidFeedforward", metadata, axis) == 0
