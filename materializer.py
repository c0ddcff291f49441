"""
Dose materialization: expand a senior's active rules over a time window and
reconcile every resulting dose against the dose log.

A dose with no TAKEN/SKIPPED log is PENDING until ``missed_grace`` has passed
after its scheduled instant, MISSED afterwards. By default MISSED is derived on
every call and never written; with ``persist_missed`` the first observation
writes a MISSED log keyed on (rule, instant) so repeated calls stay idempotent.
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, List

from database import ASCENDING, DocumentStore, transact_with_retry
from recurrence import iter_days, occurs_on, scheduled_instant
from schemas import (
    DOSE_LOGS,
    SCHEDULE_RULES,
    DoseInstance,
    DoseLog,
    DoseStatus,
    RuleStatus,
    ScheduleRule,
    dose_log_id,
    iso_utc,
    to_utc,
)

logger = logging.getLogger(__name__)


def active_rules(store: DocumentStore, senior_id: str) -> List[ScheduleRule]:
    docs = store.query(SCHEDULE_RULES, {"senior_id": senior_id, "status": RuleStatus.ACTIVE.value},
                       order_by=[("id", ASCENDING)])
    return [ScheduleRule.model_validate(d) for d in docs]


def logs_in_window(store: DocumentStore, senior_id: str, start: datetime, end: datetime) -> Dict[str, DoseLog]:
    docs = store.query(DOSE_LOGS, {
        "senior_id": senior_id,
        "scheduled_at": {"$gte": iso_utc(start), "$lt": iso_utc(end)},
    })
    return {d["id"]: DoseLog.model_validate(d) for d in docs}


def derive_status(log, scheduled_at: datetime, now: datetime, missed_grace: timedelta) -> DoseStatus:
    if log is not None and log.status is not DoseStatus.PENDING:
        return log.status
    if now >= scheduled_at + missed_grace:
        return DoseStatus.MISSED
    return DoseStatus.PENDING


def _persist_missed(store: DocumentStore, rule: ScheduleRule, scheduled_at: datetime, now: datetime,
                    attempts: int = 3) -> None:
    log_id = dose_log_id(rule.id, scheduled_at)
    key = (DOSE_LOGS, log_id)

    def mutate(snapshot):
        existing = snapshot[key]
        if existing is not None and existing["status"] != DoseStatus.PENDING.value:
            return {}, False
        if existing is not None:
            log = DoseLog.model_validate(existing).model_copy(update={"status": DoseStatus.MISSED, "updated_at": now})
        else:
            log = DoseLog(
                id=log_id,
                rule_id=rule.id,
                senior_id=rule.senior_id,
                scheduled_at=scheduled_at,
                status=DoseStatus.MISSED,
                created_at=now,
                updated_at=now,
            )
        return {key: log.to_document()}, True

    if transact_with_retry(store, [key], mutate, attempts):
        logger.info("Recorded missed dose %s", log_id)


def materialize(store: DocumentStore, senior_id: str, start: datetime, end: datetime, now: datetime,
                tz, missed_grace: timedelta = timedelta(0), persist_missed: bool = False,
                attempts: int = 3) -> List[DoseInstance]:
    """Doses of ``senior_id`` scheduled in ``[start, end)``, ordered by instant then rule id."""
    start, end, now = to_utc(start), to_utc(end), to_utc(now)
    if end <= start:
        return []

    rules = active_rules(store, senior_id)
    logs = logs_in_window(store, senior_id, start, end)
    first_day = start.astimezone(tz).date()
    last_day = (end - timedelta(microseconds=1)).astimezone(tz).date()

    doses = []
    for rule in rules:
        for day in iter_days(first_day, last_day):
            for slot in occurs_on(rule, day):
                at = to_utc(scheduled_instant(day, slot, tz))
                if not start <= at < end:
                    continue
                log_id = dose_log_id(rule.id, at)
                log = logs.get(log_id)
                status = derive_status(log, at, now, missed_grace)
                if persist_missed and status is DoseStatus.MISSED and (log is None or log.status is DoseStatus.PENDING):
                    _persist_missed(store, rule, at, now, attempts)
                doses.append(DoseInstance(
                    rule_id=rule.id,
                    senior_id=senior_id,
                    log_id=log_id,
                    medication_name=rule.display_name,
                    dosage=rule.dosage,
                    unit=rule.unit,
                    instruction=rule.instruction,
                    scheduled_at=at,
                    local_time=slot,
                    status=status,
                    taken_at=log.taken_at if log else None,
                    note=log.note if log else None,
                ))

    doses.sort(key=lambda d: (d.scheduled_at, d.rule_id))
    return doses
