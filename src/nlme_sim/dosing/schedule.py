"""Expansion of dosing directives into explicit, time-ordered events."""

from __future__ import annotations
import math
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import structlog

from ..contracts.errors import InvalidDosingScheduleError
from ..contracts.types import DoseEvent, ResetEvent
from ..data.dataset import DoseRecord, Individual
from ..domain.model import ContinuousObservation, ModelDefinition, ResetRule

logger = structlog.get_logger()

_RATE_TOLERANCE = 1e-9


@dataclass(frozen=True)
class DosingSchedule:
    """Concrete events for one individual."""

    doses: Tuple[DoseEvent, ...]
    resets: Tuple[ResetEvent, ...] = ()

    def breakpoints(self) -> List[float]:
        """Times at which the state or the right-hand side is discontinuous."""
        times = set()
        for dose in self.doses:
            times.add(dose.time)
            if not dose.is_bolus:
                times.add(dose.end_time)
        times.update(r.time for r in self.resets)
        return sorted(times)

    def doses_at(self, time: float) -> List[DoseEvent]:
        return [d for d in self.doses if d.time == time]

    def resets_at(self, time: float) -> List[ResetEvent]:
        return [r for r in self.resets if r.time == time]


class DosingScheduleBuilder:
    """Builds the dosing schedule of an individual.

    Args:
        reset_rule: Flag-column reset rule; None disables flag resets
        reset_after: Observation name -> compartments zeroed after each observation
    """

    def __init__(
        self,
        reset_rule: Optional[ResetRule] = None,
        reset_after: Optional[Mapping[str, Sequence[str]]] = None,
    ):
        self.reset_rule = reset_rule
        self.reset_after = {k: tuple(v) for k, v in (reset_after or {}).items() if v}

    @classmethod
    def from_model(cls, model: ModelDefinition) -> "DosingScheduleBuilder":
        reset_after = {
            obs.name: obs.reset_after
            for obs in model.observations
            if isinstance(obs, ContinuousObservation) and obs.reset_after
        }
        return cls(reset_rule=model.reset, reset_after=reset_after)

    def validate(self, records: Iterable[DoseRecord]) -> None:
        """Check directives without expanding them.

        Raises:
            InvalidDosingScheduleError: On the first malformed directive
        """
        for record in records:
            _check_record(record)

    def expand(
        self,
        record: DoseRecord,
        duration_for: Optional[Callable[[float], float]] = None,
    ) -> List[DoseEvent]:
        """Expand one dosing record (single, ADDL and/or SS) into dose events.

        Args:
            record: Dataset dosing record
            duration_for: Dose duration as a function of dose time, for
                models whose absorption duration is a structural parameter

        Returns:
            ``1 + ADDL`` events at ``t0 + k * II``
        """
        _check_record(record)
        rate, duration = record.rate, record.duration
        if rate is None and duration is None and duration_for is not None:
            duration = duration_for(record.time)
            if not (duration > 0 and math.isfinite(duration)):
                raise InvalidDosingScheduleError(
                    f"Dose duration parameter must be positive, got {duration}",
                    details={"time": record.time},
                )
        if rate is not None and duration is None:
            duration = record.amount / rate
        elif duration is not None and rate is None:
            rate = record.amount / duration

        if record.ss and duration is not None and duration > record.ii:
            raise InvalidDosingScheduleError(
                f"Steady-state infusion of duration {duration} exceeds the interval {record.ii}",
                details={"time": record.time, "ii": record.ii},
            )

        events = []
        for k in range(record.addl + 1):
            events.append(
                DoseEvent(
                    time=record.time + k * (record.ii or 0.0),
                    amount=record.amount,
                    target=record.target,
                    rate=rate,
                    duration=duration,
                    steady_state=record.ss and k == 0,
                    ii=record.ii,
                    order=record.order,
                )
            )
        return events

    def build(
        self,
        individual: Individual,
        duration_for: Optional[Callable[[float], float]] = None,
    ) -> DosingSchedule:
        """Build the sorted dose and reset events of one individual.

        Same-time events keep declaration (row) order.
        """
        doses: List[DoseEvent] = []
        for record in individual.doses:
            doses.extend(self.expand(record, duration_for))
        doses.sort(key=lambda d: (d.time, d.order))

        resets: List[ResetEvent] = []
        if self.reset_rule is not None:
            compartments = (
                tuple(self.reset_rule.compartments) if self.reset_rule.compartments else None
            )
            for time, flag, order in individual.reset_flags:
                if self.reset_rule.triggers(flag):
                    resets.append(
                        ResetEvent(time=time, compartments=compartments, value=self.reset_rule.value, order=order)
                    )
        for obs in individual.observations:
            compartments = self.reset_after.get(obs.name)
            if compartments:
                resets.append(ResetEvent(time=obs.time, compartments=compartments, order=obs.order))
        resets.sort(key=lambda r: (r.time, r.order))

        logger.debug(
            "Dosing schedule built",
            individual=individual.id,
            doses=len(doses),
            resets=len(resets),
        )
        return DosingSchedule(doses=tuple(doses), resets=tuple(resets))


def _check_record(record: DoseRecord) -> None:
    where = {"time": record.time, "order": record.order}
    if not math.isfinite(record.time) or record.time < 0:
        raise InvalidDosingScheduleError(f"Dose time must be >= 0, got {record.time}", details=where)
    if not math.isfinite(record.amount) or record.amount < 0:
        raise InvalidDosingScheduleError(f"Dose amount must be >= 0, got {record.amount}", details=where)
    if record.addl < 0:
        raise InvalidDosingScheduleError(f"ADDL must be >= 0, got {record.addl}", details=where)
    if record.ii is not None and not (math.isfinite(record.ii) and record.ii >= 0):
        raise InvalidDosingScheduleError(
            f"II must be >= 0, got {record.ii}", details={**where, "ii": record.ii}
        )
    if (record.addl > 0 or record.ss) and (record.ii is None or not record.ii > 0):
        raise InvalidDosingScheduleError(
            f"Repeated or steady-state dosing needs II > 0, got {record.ii}",
            details={**where, "ii": record.ii},
        )
    if record.rate is not None and not record.rate > 0:
        raise InvalidDosingScheduleError(f"Infusion rate must be > 0, got {record.rate}", details=where)
    if record.duration is not None and not record.duration > 0:
        raise InvalidDosingScheduleError(
            f"Infusion duration must be > 0, got {record.duration}", details=where
        )
    if record.rate is not None and record.duration is not None:
        expected = record.rate * record.duration
        if abs(expected - record.amount) > _RATE_TOLERANCE * max(1.0, abs(record.amount)):
            raise InvalidDosingScheduleError(
                f"Amount {record.amount} is inconsistent with rate x duration = {expected}",
                details=where,
            )
