from __future__ import annotations

from .errors import NotReady
from .models import Compensation, Unit


def aggregate(unit: Unit) -> Compensation:
    """Sum every phase's frozen compensation into the unit's final reward.

    Raises:
        NotReady: If any phase is still incomplete.
    """
    pending = [phase.id for phase in unit.phases if not phase.is_complete]
    if pending or not unit.phases:
        raise NotReady(f"unit {unit.id} has incomplete phases: {', '.join(pending) or '<none defined>'}")
    total = Compensation()
    for phase in unit.phases:
        total = total + phase.compensation
    return total
