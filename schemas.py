"""
Database Schemas for PillPal

Each Pydantic model with a "Collection:" line corresponds to a document
collection. Documents use snake_case field names and are written with
``model_dump(mode="json")`` so they round-trip through any JSON document store.
"""
import re
import uuid
from datetime import date, datetime
from enum import Enum
from typing import List, Optional

import pytz
from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator, model_validator

SCHEDULE_RULES = "schedule_rules"
DOSE_LOGS = "dose_logs"
CAREGIVER_RELATIONS = "caregiver_relations"
SENIOR_PROFILES = "senior_profiles"
HEALTH_RECORDS = "health_records"

SLOT_RE = re.compile(r"^(\d{1,2}):(\d{2})$")
LOG_KEY_FORMAT = "%Y%m%dT%H%MZ"


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(pytz.utc)


def to_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to already be UTC."""
    if value.tzinfo is None:
        return pytz.utc.localize(value)
    return value.astimezone(pytz.utc)


def iso_utc(value: datetime) -> str:
    # fixed width so that string comparison orders instants
    return to_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")


def dose_log_id(rule_id: str, scheduled_at: datetime) -> str:
    return f"{rule_id}_{to_utc(scheduled_at).strftime(LOG_KEY_FORMAT)}"


def parse_dose_log_id(log_id: str) -> Optional["DoseKey"]:
    rule_id, sep, stamp = log_id.rpartition("_")
    if not sep or not rule_id:
        return None
    try:
        scheduled_at = datetime.strptime(stamp, LOG_KEY_FORMAT)
    except ValueError:
        return None
    return DoseKey(rule_id=rule_id, scheduled_at=pytz.utc.localize(scheduled_at))


class Frequency(str, Enum):
    DAILY = "DAILY"
    SPECIFIC_WEEKDAYS = "SPECIFIC_WEEKDAYS"
    INTERVAL_DAYS = "INTERVAL_DAYS"


class Instruction(str, Enum):
    NONE = "NONE"
    BEFORE_MEAL = "BEFORE_MEAL"
    AFTER_MEAL = "AFTER_MEAL"
    WITH_FOOD = "WITH_FOOD"
    BEFORE_SLEEP = "BEFORE_SLEEP"


class IconType(str, Enum):
    PILL = "PILL"
    CAPSULE = "CAPSULE"
    BOTTLE = "BOTTLE"
    INJECTION = "INJECTION"
    POWDER = "POWDER"


class RuleStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"


class DoseStatus(str, Enum):
    PENDING = "PENDING"
    TAKEN = "TAKEN"
    MISSED = "MISSED"
    SKIPPED = "SKIPPED"


TERMINAL_STATUSES = (DoseStatus.TAKEN, DoseStatus.SKIPPED)


class RelationStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    REJECTED = "REJECTED"


def normalize_slot(slot: str) -> str:
    match = SLOT_RE.match(slot.strip())
    if not match:
        raise ValueError(f"time slot {slot!r} is not HH:MM")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(f"time slot {slot!r} is out of range")
    return f"{hour:02d}:{minute:02d}"


class ScheduleRule(BaseModel):
    """A recurring, declarative dosing definition for one medication.
    Collection: schedule_rules
    """
    id: str = Field(default_factory=new_id)
    senior_id: str = Field(..., min_length=1)
    created_by: str = Field("", description="Caregiver id that created the rule")

    name: str = Field(..., min_length=1, description="Drug name")
    nickname: Optional[str] = None
    icon_type: IconType = IconType.PILL
    dosage: float = Field(1.0, gt=0)
    unit: str = "pill"
    instruction: Instruction = Instruction.NONE

    frequency: Frequency = Frequency.DAILY
    specific_week_days: List[int] = Field(default_factory=list, description="1=Mon ... 7=Sun")
    interval_days: int = Field(0, ge=0)
    time_slots: List[str] = Field(..., description="Times in 24h HH:MM format")
    start_date: date
    end_date: Optional[date] = Field(None, description="Inclusive; open-ended when absent")

    current_stock: int = Field(0, ge=0)
    low_stock_threshold: int = Field(5, ge=0)
    enable_stock_alert: bool = True

    status: RuleStatus = RuleStatus.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("time_slots")
    @classmethod
    def _normalize_slots(cls, value: List[str]) -> List[str]:
        slots = sorted({normalize_slot(s) for s in value})
        if not slots:
            raise ValueError("at least one time slot is required")
        return slots

    @field_validator("specific_week_days")
    @classmethod
    def _normalize_weekdays(cls, value: List[int]) -> List[int]:
        for day in value:
            if day < 1 or day > 7:
                raise ValueError(f"weekday {day} is not within 1..7")
        return sorted(set(value))

    @model_validator(mode="after")
    def _check_recurrence(self):
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("end_date is before start_date")
        if self.frequency is Frequency.SPECIFIC_WEEKDAYS and not self.specific_week_days:
            raise ValueError("SPECIFIC_WEEKDAYS needs at least one weekday")
        if self.frequency is Frequency.INTERVAL_DAYS and self.interval_days < 1:
            raise ValueError("INTERVAL_DAYS needs interval_days >= 1")
        return self

    @property
    def display_name(self) -> str:
        return self.nickname or self.name

    @property
    def is_low_stock(self) -> bool:
        return self.enable_stock_alert and self.current_stock <= self.low_stock_threshold

    def to_document(self) -> dict:
        return self.model_dump(mode="json")


class DoseKey(BaseModel):
    """Natural key of a dose: the rule plus the instant it was due."""
    rule_id: str = Field(..., min_length=1)
    scheduled_at: datetime

    @field_validator("scheduled_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return to_utc(value)

    @property
    def log_id(self) -> str:
        return dose_log_id(self.rule_id, self.scheduled_at)


class DoseLog(BaseModel):
    """Recorded real-world outcome of one scheduled dose.
    Collection: dose_logs
    """
    id: str = ""
    rule_id: str
    senior_id: str
    scheduled_at: datetime
    taken_at: Optional[datetime] = None
    status: DoseStatus = DoseStatus.PENDING
    note: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("scheduled_at", "taken_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_utc(value) if value is not None else None

    @field_serializer("scheduled_at")
    def _serialize_scheduled(self, value: datetime) -> str:
        return iso_utc(value)

    @model_validator(mode="after")
    def _natural_key(self):
        if not self.id:
            self.id = dose_log_id(self.rule_id, self.scheduled_at)
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_document(self) -> dict:
        return self.model_dump(mode="json")


class RelationPermissions(BaseModel):
    """The five flattened per-relation permission flags."""
    can_view_health_data: bool = True
    can_edit_health_data: bool = False
    can_view_reminders: bool = True
    can_edit_reminders: bool = False
    can_approve_requests: bool = False

    @classmethod
    def full(cls) -> "RelationPermissions":
        return cls(
            can_view_health_data=True,
            can_edit_health_data=True,
            can_view_reminders=True,
            can_edit_reminders=True,
            can_approve_requests=True,
        )

    @classmethod
    def none(cls) -> "RelationPermissions":
        return cls(
            can_view_health_data=False,
            can_edit_health_data=False,
            can_view_reminders=False,
            can_edit_reminders=False,
            can_approve_requests=False,
        )


class PermissionsUpdate(BaseModel):
    """Partial update of relation permissions; omitted flags stay as they are."""
    model_config = ConfigDict(extra="forbid")

    can_view_health_data: Optional[bool] = None
    can_edit_health_data: Optional[bool] = None
    can_view_reminders: Optional[bool] = None
    can_edit_reminders: Optional[bool] = None
    can_approve_requests: Optional[bool] = None


class CaregiverRelation(BaseModel):
    """Linkage and permission bag between one caregiver and one senior.
    Collection: caregiver_relations
    """
    id: str = ""
    caregiver_id: str = Field(..., min_length=1)
    senior_id: str = Field(..., min_length=1)

    relationship: str = Field("CAREGIVER", description="What the caregiver is to the senior, e.g. 'Son'")
    nickname: str = Field("", description="What the caregiver calls the senior, e.g. 'Dad'")
    message: str = ""

    status: RelationStatus = RelationStatus.PENDING
    requested_at: datetime = Field(default_factory=utcnow)
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejected_by: Optional[str] = None

    can_view_health_data: bool = True
    can_edit_health_data: bool = False
    can_view_reminders: bool = True
    can_edit_reminders: bool = False
    can_approve_requests: bool = False

    @staticmethod
    def make_id(caregiver_id: str, senior_id: str) -> str:
        return f"{caregiver_id}_{senior_id}"

    @model_validator(mode="after")
    def _pair_id(self):
        if not self.id:
            self.id = self.make_id(self.caregiver_id, self.senior_id)
        return self

    @property
    def is_active(self) -> bool:
        return self.status is RelationStatus.ACTIVE

    def links(self, caregiver_id: str, senior_id: str) -> bool:
        return self.caregiver_id == caregiver_id and self.senior_id == senior_id

    @property
    def permissions(self) -> RelationPermissions:
        return RelationPermissions(**self.model_dump(include=set(RelationPermissions.model_fields)))

    def to_document(self) -> dict:
        return self.model_dump(mode="json")


class SeniorProfile(BaseModel):
    """Read-only view of a senior profile owned by the profile service.
    Collection: senior_profiles
    """
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    creator_id: Optional[str] = None
    time_zone: Optional[str] = None


class DoseInstance(BaseModel):
    """One materialized dose: a rule slot on a concrete date plus its derived status."""
    rule_id: str
    senior_id: str
    log_id: str
    medication_name: str
    dosage: float
    unit: str
    instruction: Instruction
    scheduled_at: datetime
    local_time: str
    status: DoseStatus
    taken_at: Optional[datetime] = None
    note: Optional[str] = None

    @property
    def key(self) -> DoseKey:
        return DoseKey(rule_id=self.rule_id, scheduled_at=self.scheduled_at)


class BatchItem(BaseModel):
    dose: DoseInstance
    checked: bool = True


class Batch(BaseModel):
    """Same-slot doses confirmed together by the senior."""
    label: str
    primary_time: str
    scheduled_at: datetime
    senior_name: Optional[str] = None
    items: List[BatchItem] = Field(default_factory=list)

    def toggle(self, index: int) -> "Batch":
        if 0 <= index < len(self.items):
            self.items[index].checked = not self.items[index].checked
        return self

    def set_checked(self, log_id: str, checked: bool) -> "Batch":
        for item in self.items:
            if item.dose.log_id == log_id:
                item.checked = checked
        return self

    @property
    def checked_doses(self) -> List[DoseInstance]:
        return [item.dose for item in self.items if item.checked]


class DoseStatistics(BaseModel):
    total: int = 0
    taken: int = 0
    skipped: int = 0
    pending: int = 0
    missed: int = 0
    adherence_rate: float = Field(0.0, description="Percent of due (non-pending) doses taken")


class LowStockSignal(BaseModel):
    kind: str = "low_stock"
    senior_id: str
    rule_id: str
    medication_name: str
    current_stock: int
    low_stock_threshold: int
    emitted_at: datetime


class DoseDueSignal(BaseModel):
    kind: str = "dose_due"
    senior_id: str
    label: str
    primary_time: str
    scheduled_at: datetime
    log_ids: List[str]
    emitted_at: datetime


class RecordResult(BaseModel):
    """Outcome of a take/skip write."""
    log: DoseLog
    already_recorded: bool = False
    current_stock: Optional[int] = None
    low_stock: Optional[LowStockSignal] = None


class BatchItemOutcome(BaseModel):
    """Per-dose result of confirming a batch: either ``result`` or ``error`` is set."""
    log_id: str
    result: Optional[RecordResult] = None
    error: Optional[str] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None
