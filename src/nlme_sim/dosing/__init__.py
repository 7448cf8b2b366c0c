"""Dosing schedule construction."""

from .schedule import DosingSchedule, DosingScheduleBuilder

__all__ = ["DosingSchedule", "DosingScheduleBuilder"]
