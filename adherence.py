"""
Adherence tracking: the write path for dose outcomes and the statistics read
from it.

Taking a dose writes the TAKEN log and decrements the rule's stock inside one
store transaction, so two confirmations racing on the same rule cannot lose a
decrement. Repeating a take or skip on a dose that is already TAKEN or
SKIPPED succeeds without changing anything.
"""
import logging
from datetime import date, datetime, time, timedelta
from typing import Iterable, List, Optional, Tuple, Union

from config import Settings
from database import DESCENDING, DocumentStore, transact_with_retry
from errors import NotFoundError, ReminderError, ValidationError
from materializer import materialize
from profiles import senior_timezone
from recurrence import is_scheduled
from relations import AccessPolicy, Permission
from schemas import (
    DOSE_LOGS,
    SCHEDULE_RULES,
    Batch,
    BatchItemOutcome,
    DoseInstance,
    DoseKey,
    DoseLog,
    DoseStatistics,
    DoseStatus,
    LowStockSignal,
    RecordResult,
    ScheduleRule,
    parse_dose_log_id,
    to_utc,
    utcnow,
)
from signals import SignalBus

logger = logging.getLogger(__name__)

DoseRef = Union[str, DoseKey, DoseInstance]


def compute_statistics(doses: Iterable[DoseInstance]) -> DoseStatistics:
    """Counts per status; adherence = taken / (total - pending), as a percentage."""
    stats = DoseStatistics()
    for dose in doses:
        stats.total += 1
        status = dose.status
        if status is DoseStatus.TAKEN:
            stats.taken += 1
        elif status is DoseStatus.SKIPPED:
            stats.skipped += 1
        elif status is DoseStatus.PENDING:
            stats.pending += 1
        elif status is DoseStatus.MISSED:
            stats.missed += 1
        else:
            raise AssertionError(f"Unhandled dose status: {status!r}")
    due = stats.total - stats.pending
    stats.adherence_rate = round(stats.taken * 100.0 / due, 2) if due > 0 else 0.0
    return stats


class AdherenceTracker:
    def __init__(self, store: DocumentStore, policy: AccessPolicy, settings: Settings,
                 signals: Optional[SignalBus] = None):
        self.store = store
        self.policy = policy
        self.settings = settings
        self.signals = signals

    def _tz(self, senior_id: str):
        return senior_timezone(self.store, senior_id, self.settings.default_timezone)

    def _resolve(self, dose: DoseRef) -> DoseKey:
        if isinstance(dose, DoseKey):
            return dose
        if isinstance(dose, DoseInstance):
            return dose.key
        doc = self.store.get(DOSE_LOGS, dose)
        if doc is not None:
            return DoseKey(rule_id=doc["rule_id"], scheduled_at=doc["scheduled_at"])
        key = parse_dose_log_id(dose)
        if key is None:
            raise NotFoundError(f"Dose log {dose} not found")
        return key

    def _target(self, caller_id: str, dose: DoseRef) -> Tuple[DoseKey, ScheduleRule]:
        key = self._resolve(dose)
        doc = self.store.get(SCHEDULE_RULES, key.rule_id)
        if doc is None:
            raise NotFoundError(f"Schedule rule {key.rule_id} not found")
        rule = ScheduleRule.model_validate(doc)
        self.policy.require(caller_id, rule.senior_id, Permission.EDIT_REMINDERS)
        if self.store.get(DOSE_LOGS, key.log_id) is None and not is_scheduled(rule, key.scheduled_at, self._tz(rule.senior_id)):
            raise ValidationError(f"Rule {rule.id} has no dose scheduled at {key.scheduled_at.isoformat()}")
        return key, rule

    def _record(self, key: DoseKey, rule: ScheduleRule, status: DoseStatus, at: datetime,
                note: Optional[str]) -> RecordResult:
        log_key = (DOSE_LOGS, key.log_id)
        rule_key = (SCHEDULE_RULES, rule.id)

        def mutate(snapshot):
            rule_doc = snapshot[rule_key]
            if rule_doc is None:
                raise NotFoundError(f"Schedule rule {rule.id} not found")
            current = ScheduleRule.model_validate(rule_doc)
            log_doc = snapshot[log_key]
            if log_doc is not None:
                log = DoseLog.model_validate(log_doc)
                if log.is_terminal:
                    return {}, RecordResult(log=log, already_recorded=True, current_stock=current.current_stock)
            else:
                log = DoseLog(id=key.log_id, rule_id=rule.id, senior_id=rule.senior_id,
                              scheduled_at=key.scheduled_at, created_at=at)
            update = {"status": status, "updated_at": at}
            if note is not None:
                update["note"] = note
            if status is DoseStatus.TAKEN:
                update["taken_at"] = at
            log = log.model_copy(update=update)
            writes = {log_key: log.to_document()}
            if status is not DoseStatus.TAKEN:
                return writes, RecordResult(log=log, current_stock=current.current_stock)

            # stock never goes below zero; the dose is recorded either way
            stock = max(current.current_stock - 1, 0)
            current = current.model_copy(update={"current_stock": stock, "updated_at": at})
            writes[rule_key] = current.to_document()
            low_stock = None
            if current.is_low_stock:
                low_stock = LowStockSignal(
                    senior_id=current.senior_id,
                    rule_id=current.id,
                    medication_name=current.display_name,
                    current_stock=stock,
                    low_stock_threshold=current.low_stock_threshold,
                    emitted_at=at,
                )
            return writes, RecordResult(log=log, current_stock=stock, low_stock=low_stock)

        result = transact_with_retry(self.store, [log_key, rule_key], mutate,
                                     self.settings.max_transaction_retries)
        if result.already_recorded:
            logger.info("Dose %s already %s, nothing to do", key.log_id, result.log.status.value)
        else:
            logger.info("Dose %s recorded as %s", key.log_id, status.value)
        if result.low_stock is not None and self.signals is not None:
            self.signals.emit(result.low_stock)
        return result

    def record_taken(self, caller_id: str, dose: DoseRef, taken_at: Optional[datetime] = None,
                     note: Optional[str] = None) -> RecordResult:
        key, rule = self._target(caller_id, dose)
        return self._record(key, rule, DoseStatus.TAKEN, to_utc(taken_at or utcnow()), note)

    def record_skipped(self, caller_id: str, dose: DoseRef, reason: Optional[str] = None,
                       now: Optional[datetime] = None) -> RecordResult:
        key, rule = self._target(caller_id, dose)
        return self._record(key, rule, DoseStatus.SKIPPED, to_utc(now or utcnow()), reason)

    def confirm_batch(self, caller_id: str, batch: Batch,
                      taken_at: Optional[datetime] = None) -> List[BatchItemOutcome]:
        """Record every checked dose of the batch as taken; unchecked ones stay as they are.

        Each dose is recorded on its own, so one failing item does not stop
        the others. The outcome list follows the order of the checked doses.
        """
        taken_at = taken_at or utcnow()
        outcomes = []
        for dose in batch.checked_doses:
            try:
                result = self.record_taken(caller_id, dose, taken_at)
            except ReminderError as e:
                logger.warning("Could not confirm dose %s: %s", dose.log_id, e.message)
                outcomes.append(BatchItemOutcome(log_id=dose.log_id, error=type(e).__name__, detail=e.message))
            else:
                outcomes.append(BatchItemOutcome(log_id=dose.log_id, result=result))
        return outcomes

    def _day_bounds(self, tz, first: date, last: date):
        start = tz.localize(datetime.combine(first, time.min))
        end = tz.localize(datetime.combine(last + timedelta(days=1), time.min))
        return to_utc(start), to_utc(end)

    def _doses(self, senior_id: str, start: datetime, end: datetime, now: datetime) -> List[DoseInstance]:
        return materialize(
            self.store, senior_id, start, end, now, self._tz(senior_id),
            missed_grace=timedelta(minutes=self.settings.missed_grace_minutes),
            persist_missed=self.settings.persist_missed,
            attempts=self.settings.max_transaction_retries,
        )

    def statistics(self, caller_id: str, senior_id: str, first: date, last: date,
                   now: datetime) -> DoseStatistics:
        """Statistics over the senior's local calendar days ``first``..``last`` inclusive."""
        self.policy.require(caller_id, senior_id, Permission.VIEW_REMINDERS)
        if last < first:
            raise ValidationError("last day is before first day")
        start, end = self._day_bounds(self._tz(senior_id), first, last)
        return compute_statistics(self._doses(senior_id, start, end, now))

    def today_statistics(self, caller_id: str, senior_id: str, now: datetime) -> DoseStatistics:
        today = to_utc(now).astimezone(self._tz(senior_id)).date()
        return self.statistics(caller_id, senior_id, today, today, now)

    def overdue_doses(self, caller_id: str, senior_id: str, now: datetime) -> List[DoseInstance]:
        """Today's doses that were due before ``now`` and were neither taken nor skipped."""
        self.policy.require(caller_id, senior_id, Permission.VIEW_REMINDERS)
        now = to_utc(now)
        today = now.astimezone(self._tz(senior_id)).date()
        start, _ = self._day_bounds(self._tz(senior_id), today, today)
        if now <= start:
            return []
        return [d for d in self._doses(senior_id, start, now, now)
                if d.status in (DoseStatus.PENDING, DoseStatus.MISSED)]

    def history(self, caller_id: str, rule_id: str, limit: int = 30) -> List[DoseLog]:
        """Most recent logs of one rule, newest first."""
        doc = self.store.get(SCHEDULE_RULES, rule_id)
        if doc is None:
            raise NotFoundError(f"Schedule rule {rule_id} not found")
        self.policy.require(caller_id, doc["senior_id"], Permission.VIEW_REMINDERS)
        docs = self.store.query(DOSE_LOGS, {"rule_id": rule_id}, order_by=[("scheduled_at", DESCENDING)], limit=limit)
        return [DoseLog.model_validate(d) for d in docs]
