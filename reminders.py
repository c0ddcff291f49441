"""
Caregiver-facing management of schedule rules, plus the gated read side
(materialized doses and confirmation batches).
"""
import logging
from datetime import date, datetime, timedelta
from typing import List, Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from batching import group_for_confirmation
from config import Settings
from database import ASCENDING, DocumentStore, transact_with_retry
from errors import NotFoundError, ValidationError
from materializer import materialize
from profiles import senior_name, senior_timezone
from relations import AccessPolicy, Permission
from schemas import (
    SCHEDULE_RULES,
    Batch,
    DoseDueSignal,
    DoseInstance,
    Frequency,
    IconType,
    Instruction,
    RuleStatus,
    ScheduleRule,
    to_utc,
    utcnow,
)
from signals import SignalBus

logger = logging.getLogger(__name__)


class ScheduleRuleIn(BaseModel):
    senior_id: str
    name: str
    nickname: Optional[str] = None
    icon_type: IconType = IconType.PILL
    dosage: float = 1.0
    unit: str = "pill"
    instruction: Instruction = Instruction.NONE
    frequency: Frequency = Frequency.DAILY
    specific_week_days: List[int] = Field(default_factory=list)
    interval_days: int = 0
    time_slots: List[str]
    start_date: date
    end_date: Optional[date] = None
    current_stock: int = 0
    low_stock_threshold: int = 5
    enable_stock_alert: bool = True
    status: RuleStatus = RuleStatus.ACTIVE


class RuleUpdate(BaseModel):
    """Partial rule update. Only fields that were sent are applied; sending
    ``end_date: null`` makes the rule open-ended again."""
    name: Optional[str] = None
    nickname: Optional[str] = None
    icon_type: Optional[IconType] = None
    dosage: Optional[float] = None
    unit: Optional[str] = None
    instruction: Optional[Instruction] = None
    frequency: Optional[Frequency] = None
    specific_week_days: Optional[List[int]] = None
    interval_days: Optional[int] = None
    time_slots: Optional[List[str]] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    current_stock: Optional[int] = None
    low_stock_threshold: Optional[int] = None
    enable_stock_alert: Optional[bool] = None
    status: Optional[RuleStatus] = None


def build_rule(data: dict) -> ScheduleRule:
    try:
        return ScheduleRule.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid schedule rule: {e}") from e


class ReminderService:
    def __init__(self, store: DocumentStore, policy: AccessPolicy, settings: Settings,
                 signals: Optional[SignalBus] = None):
        self.store = store
        self.policy = policy
        self.settings = settings
        self.signals = signals

    def _load(self, rule_id: str) -> ScheduleRule:
        doc = self.store.get(SCHEDULE_RULES, rule_id)
        if doc is None:
            raise NotFoundError(f"Schedule rule {rule_id} not found")
        return ScheduleRule.model_validate(doc)

    def timezone_for(self, senior_id: str):
        return senior_timezone(self.store, senior_id, self.settings.default_timezone)

    def get_rule(self, caller_id: str, rule_id: str) -> ScheduleRule:
        rule = self._load(rule_id)
        self.policy.require(caller_id, rule.senior_id, Permission.VIEW_REMINDERS)
        return rule

    def list_rules(self, caller_id: str, senior_id: str, active_only: bool = False) -> List[ScheduleRule]:
        self.policy.require(caller_id, senior_id, Permission.VIEW_REMINDERS)
        filt = {"senior_id": senior_id}
        if active_only:
            filt["status"] = RuleStatus.ACTIVE.value
        docs = self.store.query(SCHEDULE_RULES, filt, order_by=[("created_at", ASCENDING), ("id", ASCENDING)])
        return [ScheduleRule.model_validate(d) for d in docs]

    def create_rule(self, caller_id: str, payload: ScheduleRuleIn, now: Optional[datetime] = None) -> ScheduleRule:
        self.policy.require(caller_id, payload.senior_id, Permission.EDIT_REMINDERS)
        now = now or utcnow()
        rule = build_rule(dict(payload.model_dump(), created_by=caller_id, created_at=now, updated_at=now))
        self.store.put(SCHEDULE_RULES, rule.id, rule.to_document())
        logger.info("Created rule %s (%s) for senior %s", rule.id, rule.name, rule.senior_id)
        return rule

    def _apply(self, rule_id: str, changes: dict, now: datetime) -> ScheduleRule:
        key = (SCHEDULE_RULES, rule_id)

        def mutate(snapshot):
            doc = snapshot[key]
            if doc is None:
                raise NotFoundError(f"Schedule rule {rule_id} not found")
            rule = build_rule(dict(doc, **changes, updated_at=now))
            return {key: rule.to_document()}, rule

        return transact_with_retry(self.store, [key], mutate, self.settings.max_transaction_retries)

    def update_rule(self, caller_id: str, rule_id: str, changes: RuleUpdate,
                    now: Optional[datetime] = None) -> ScheduleRule:
        rule = self._load(rule_id)
        self.policy.require(caller_id, rule.senior_id, Permission.EDIT_REMINDERS)
        updated = self._apply(rule_id, changes.model_dump(mode="json", exclude_unset=True), now or utcnow())
        logger.info("Updated rule %s", rule_id)
        return updated

    def set_status(self, caller_id: str, rule_id: str, status: RuleStatus,
                   now: Optional[datetime] = None) -> ScheduleRule:
        return self.update_rule(caller_id, rule_id, RuleUpdate(status=status), now)

    def update_stock(self, caller_id: str, rule_id: str, stock: int,
                     now: Optional[datetime] = None) -> ScheduleRule:
        return self.update_rule(caller_id, rule_id, RuleUpdate(current_stock=stock), now)

    def delete_rule(self, caller_id: str, rule_id: str) -> None:
        rule = self._load(rule_id)
        self.policy.require(caller_id, rule.senior_id, Permission.EDIT_REMINDERS)
        # existing dose logs stay as history
        self.store.delete(SCHEDULE_RULES, rule_id)
        logger.info("Deleted rule %s", rule_id)

    def doses(self, caller_id: str, senior_id: str, start: datetime, end: datetime,
              now: datetime) -> List[DoseInstance]:
        self.policy.require(caller_id, senior_id, Permission.VIEW_REMINDERS)
        return materialize(
            self.store, senior_id, start, end, now,
            tz=self.timezone_for(senior_id),
            missed_grace=timedelta(minutes=self.settings.missed_grace_minutes),
            persist_missed=self.settings.persist_missed,
            attempts=self.settings.max_transaction_retries,
        )

    def batches(self, caller_id: str, senior_id: str, now: datetime) -> List[Batch]:
        """Confirmation batches for doses due around ``now``."""
        now = to_utc(now)
        window = timedelta(minutes=self.settings.batch_window_minutes)
        doses = self.doses(caller_id, senior_id, now - window, now + window + timedelta(seconds=1), now)
        batches = group_for_confirmation(
            doses, now, window,
            senior_name=senior_name(self.store, senior_id),
            tolerance=timedelta(minutes=self.settings.batch_grouping_minutes),
        )
        if self.signals is not None:
            for batch in batches:
                self.signals.emit(DoseDueSignal(
                    senior_id=senior_id,
                    label=batch.label,
                    primary_time=batch.primary_time,
                    scheduled_at=batch.scheduled_at,
                    log_ids=[item.dose.log_id for item in batch.items],
                    emitted_at=now,
                ))
        return batches
