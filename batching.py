"""Cluster doses that are due right now into confirmation batches."""
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from schemas import Batch, BatchItem, DoseInstance, DoseStatus, to_utc


def time_label(slot: str) -> str:
    hour = int(slot.split(":")[0])
    if 5 <= hour <= 9:
        return "Morning"
    if 10 <= hour <= 12:
        return "Midday"
    if 13 <= hour <= 17:
        return "Afternoon"
    if 18 <= hour <= 21:
        return "Evening"
    return "Night"


def is_due(dose: DoseInstance, now: datetime, window: timedelta) -> bool:
    return dose.status is DoseStatus.PENDING and abs(dose.scheduled_at - now) <= window


def _batch(members: List[DoseInstance], senior_name: Optional[str]) -> Batch:
    first = members[0]
    return Batch(
        label=time_label(first.local_time),
        primary_time=first.local_time,
        scheduled_at=first.scheduled_at,
        senior_name=senior_name,
        items=[BatchItem(dose=d) for d in members],
    )


def group_for_confirmation(doses: Iterable[DoseInstance], now: datetime,
                           window: timedelta = timedelta(minutes=30),
                           senior_name: Optional[str] = None,
                           tolerance: timedelta = timedelta(minutes=30)) -> List[Batch]:
    """Batch the PENDING doses within +/- ``window`` of ``now``.

    Doses are taken in time order; each batch holds every dose scheduled at
    most ``tolerance`` after its first one.
    """
    now = to_utc(now)
    due = sorted((d for d in doses if is_due(d, now, window)),
                 key=lambda d: (d.scheduled_at, d.medication_name, d.rule_id))

    batches = []
    members: List[DoseInstance] = []
    for dose in due:
        if members and dose.scheduled_at - members[0].scheduled_at > tolerance:
            batches.append(_batch(members, senior_name))
            members = []
        members.append(dose)
    if members:
        batches.append(_batch(members, senior_name))
    return batches
