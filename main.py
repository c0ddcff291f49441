import logging
import os
from datetime import date, datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, model_validator

from adherence import AdherenceTracker
from config import Settings, get_settings
from database import DocumentStore, get_store
from errors import ReminderError
from relations import AccessPolicy, Permission, RelationManager
from reminders import ReminderService, RuleUpdate, ScheduleRuleIn
from schemas import (
    HEALTH_RECORDS,
    Batch,
    BatchItemOutcome,
    CaregiverRelation,
    DoseInstance,
    DoseKey,
    DoseLog,
    DoseStatistics,
    PermissionsUpdate,
    RecordResult,
    RelationPermissions,
    RuleStatus,
    ScheduleRule,
    utcnow,
)
from signals import SignalBus

logging.basicConfig(
    level=get_settings().log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="PillPal API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

signal_bus = SignalBus()


@app.exception_handler(ReminderError)
async def reminder_error_handler(request: Request, exc: ReminderError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": type(exc).__name__, "detail": exc.message},
    )


@app.get("/")
def read_root():
    return {"message": "PillPal Backend Running"}


# Schemas for requests
class DoseRefIn(BaseModel):
    log_id: Optional[str] = None
    rule_id: Optional[str] = None
    scheduled_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _one_reference(self):
        if not self.log_id and not (self.rule_id and self.scheduled_at):
            raise ValueError("send log_id, or rule_id together with scheduled_at")
        return self

    def ref(self):
        if self.log_id:
            return self.log_id
        return DoseKey(rule_id=self.rule_id, scheduled_at=self.scheduled_at)


class TakeIn(DoseRefIn):
    taken_at: Optional[datetime] = None
    note: Optional[str] = None


class SkipIn(DoseRefIn):
    reason: Optional[str] = None


class StatusIn(BaseModel):
    status: RuleStatus


class StockIn(BaseModel):
    current_stock: int


class RelationRequestIn(BaseModel):
    senior_id: str
    relationship: str = "CAREGIVER"
    nickname: str = ""
    message: str = ""


class ApproveIn(BaseModel):
    permissions: Optional[RelationPermissions] = None


# Dependencies

def current_user(x_user_id: Optional[str] = Header(None)) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="X-User-Id header required")
    return x_user_id


def get_policy(store: DocumentStore = Depends(get_store)) -> AccessPolicy:
    return AccessPolicy(store)


def get_reminders(store: DocumentStore = Depends(get_store), policy: AccessPolicy = Depends(get_policy),
                  settings: Settings = Depends(get_settings)) -> ReminderService:
    return ReminderService(store, policy, settings, signal_bus)


def get_tracker(store: DocumentStore = Depends(get_store), policy: AccessPolicy = Depends(get_policy),
                settings: Settings = Depends(get_settings)) -> AdherenceTracker:
    return AdherenceTracker(store, policy, settings, signal_bus)


def get_relations(store: DocumentStore = Depends(get_store),
                  policy: AccessPolicy = Depends(get_policy)) -> RelationManager:
    return RelationManager(store, policy)


# Schedule rules

@app.post("/api/rules", response_model=ScheduleRule, status_code=201)
def create_rule(payload: ScheduleRuleIn, user: str = Depends(current_user),
                reminders: ReminderService = Depends(get_reminders)):
    return reminders.create_rule(user, payload)


@app.get("/api/seniors/{senior_id}/rules", response_model=List[ScheduleRule])
def list_rules(senior_id: str, active_only: bool = False, user: str = Depends(current_user),
               reminders: ReminderService = Depends(get_reminders)):
    return reminders.list_rules(user, senior_id, active_only)


@app.get("/api/rules/{rule_id}", response_model=ScheduleRule)
def get_rule(rule_id: str, user: str = Depends(current_user), reminders: ReminderService = Depends(get_reminders)):
    return reminders.get_rule(user, rule_id)


@app.patch("/api/rules/{rule_id}", response_model=ScheduleRule)
def update_rule(rule_id: str, payload: RuleUpdate, user: str = Depends(current_user),
                reminders: ReminderService = Depends(get_reminders)):
    return reminders.update_rule(user, rule_id, payload)


@app.delete("/api/rules/{rule_id}")
def delete_rule(rule_id: str, user: str = Depends(current_user), reminders: ReminderService = Depends(get_reminders)):
    reminders.delete_rule(user, rule_id)
    return {"ok": True}


@app.post("/api/rules/{rule_id}/status", response_model=ScheduleRule)
def set_rule_status(rule_id: str, payload: StatusIn, user: str = Depends(current_user),
                    reminders: ReminderService = Depends(get_reminders)):
    return reminders.set_status(user, rule_id, payload.status)


@app.post("/api/rules/{rule_id}/stock", response_model=ScheduleRule)
def update_stock(rule_id: str, payload: StockIn, user: str = Depends(current_user),
                 reminders: ReminderService = Depends(get_reminders)):
    return reminders.update_stock(user, rule_id, payload.current_stock)


@app.get("/api/rules/{rule_id}/logs", response_model=List[DoseLog])
def rule_history(rule_id: str, limit: int = Query(30, ge=1, le=500), user: str = Depends(current_user),
                 tracker: AdherenceTracker = Depends(get_tracker)):
    return tracker.history(user, rule_id, limit)


# Doses and batches

@app.get("/api/seniors/{senior_id}/doses", response_model=List[DoseInstance])
def list_doses(senior_id: str, start: datetime, end: datetime, user: str = Depends(current_user),
               reminders: ReminderService = Depends(get_reminders)):
    return reminders.doses(user, senior_id, start, end, utcnow())


@app.get("/api/seniors/{senior_id}/batches", response_model=List[Batch])
def due_batches(senior_id: str, user: str = Depends(current_user),
                reminders: ReminderService = Depends(get_reminders)):
    return reminders.batches(user, senior_id, utcnow())


@app.post("/api/doses/take", response_model=RecordResult)
def take_dose(payload: TakeIn, user: str = Depends(current_user), tracker: AdherenceTracker = Depends(get_tracker)):
    return tracker.record_taken(user, payload.ref(), payload.taken_at, payload.note)


@app.post("/api/doses/skip", response_model=RecordResult)
def skip_dose(payload: SkipIn, user: str = Depends(current_user), tracker: AdherenceTracker = Depends(get_tracker)):
    return tracker.record_skipped(user, payload.ref(), payload.reason)


@app.post("/api/batches/confirm", response_model=List[BatchItemOutcome])
def confirm_batch(batch: Batch, user: str = Depends(current_user), tracker: AdherenceTracker = Depends(get_tracker)):
    return tracker.confirm_batch(user, batch)


# Statistics

@app.get("/api/seniors/{senior_id}/statistics/today", response_model=DoseStatistics)
def today_statistics(senior_id: str, user: str = Depends(current_user),
                     tracker: AdherenceTracker = Depends(get_tracker)):
    return tracker.today_statistics(user, senior_id, utcnow())


@app.get("/api/seniors/{senior_id}/statistics", response_model=DoseStatistics)
def period_statistics(senior_id: str, first: date, last: date, user: str = Depends(current_user),
                      tracker: AdherenceTracker = Depends(get_tracker)):
    return tracker.statistics(user, senior_id, first, last, utcnow())


@app.get("/api/seniors/{senior_id}/overdue", response_model=List[DoseInstance])
def overdue(senior_id: str, user: str = Depends(current_user), tracker: AdherenceTracker = Depends(get_tracker)):
    return tracker.overdue_doses(user, senior_id, utcnow())


# Caregiver relations

@app.post("/api/relations", response_model=CaregiverRelation, status_code=201)
def request_relation(payload: RelationRequestIn, user: str = Depends(current_user),
                     relations: RelationManager = Depends(get_relations)):
    return relations.request_relation(user, payload.senior_id, payload.relationship,
                                      payload.nickname, payload.message)


@app.post("/api/relations/{relation_id}/approve", response_model=CaregiverRelation)
def approve_relation(relation_id: str, payload: Optional[ApproveIn] = None, user: str = Depends(current_user),
                     relations: RelationManager = Depends(get_relations)):
    permissions = payload.permissions if payload else None
    return relations.approve_relation(relation_id, user, permissions)


@app.post("/api/relations/{relation_id}/reject", response_model=CaregiverRelation)
def reject_relation(relation_id: str, user: str = Depends(current_user),
                    relations: RelationManager = Depends(get_relations)):
    return relations.reject_relation(relation_id, user)


@app.patch("/api/relations/{relation_id}/permissions", response_model=CaregiverRelation)
def update_permissions(relation_id: str, payload: PermissionsUpdate, user: str = Depends(current_user),
                       relations: RelationManager = Depends(get_relations)):
    return relations.update_permissions(relation_id, user, payload)


@app.delete("/api/relations/{relation_id}")
def remove_relation(relation_id: str, user: str = Depends(current_user),
                    relations: RelationManager = Depends(get_relations)):
    relations.remove_relation(relation_id, user)
    return {"ok": True}


@app.get("/api/seniors/{senior_id}/relations/pending", response_model=List[CaregiverRelation])
def pending_requests(senior_id: str, user: str = Depends(current_user),
                     relations: RelationManager = Depends(get_relations)):
    return relations.pending_requests(user, senior_id)


@app.get("/api/seniors/{senior_id}/caregivers", response_model=List[CaregiverRelation])
def caregivers_for_senior(senior_id: str, user: str = Depends(current_user),
                          relations: RelationManager = Depends(get_relations)):
    return relations.caregivers_for_senior(user, senior_id)


@app.get("/api/caregivers/me/relations", response_model=List[CaregiverRelation])
def my_relations(user: str = Depends(current_user), relations: RelationManager = Depends(get_relations)):
    return relations.relations_for_caregiver(user)


@app.get("/api/seniors/{senior_id}/permissions", response_model=RelationPermissions)
def my_permissions(senior_id: str, user: str = Depends(current_user), policy: AccessPolicy = Depends(get_policy)):
    return policy.permissions_for(user, senior_id)


@app.get("/api/seniors/{senior_id}/health-records")
def health_records(senior_id: str, limit: int = Query(50, ge=1, le=500), user: str = Depends(current_user),
                   store: DocumentStore = Depends(get_store), policy: AccessPolicy = Depends(get_policy)):
    policy.require(user, senior_id, Permission.VIEW_HEALTH_DATA)
    return {"items": store.query(HEALTH_RECORDS, {"senior_id": senior_id}, limit=limit)}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": None,
        "collections": []
    }
    try:
        info = get_store().describe()
        response["database"] = f"✅ Connected ({info['backend']})"
        response["database_name"] = info["name"]
        response["collections"] = info["collections"]
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"

    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=get_settings().port)
