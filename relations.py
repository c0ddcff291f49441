"""
Caregiver <-> senior relations and the permission checks built on them.

A relation lives at id ``<caregiver_id>_<senior_id>`` and moves
PENDING -> ACTIVE or PENDING -> REJECTED exactly once. A rejected relation is
replaced by a fresh PENDING record when the caregiver asks again; removal
deletes the record outright.

``AccessPolicy`` answers "what may this caller do for this senior": the
senior's own account and the caregiver who created the senior's profile may
do everything, a caregiver with an ACTIVE relation gets that relation's
flags, anyone else gets nothing.
"""
import logging
from datetime import datetime
from enum import Enum
from typing import List, Optional, Union

from database import ASCENDING, DocumentStore
from errors import (
    AlreadyActiveError,
    AlreadyPendingError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from profiles import get_senior_profile
from schemas import (
    CAREGIVER_RELATIONS,
    CaregiverRelation,
    PermissionsUpdate,
    RelationPermissions,
    RelationStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


class Permission(str, Enum):
    VIEW_HEALTH_DATA = "can_view_health_data"
    EDIT_HEALTH_DATA = "can_edit_health_data"
    VIEW_REMINDERS = "can_view_reminders"
    EDIT_REMINDERS = "can_edit_reminders"
    APPROVE_REQUESTS = "can_approve_requests"


class AccessPolicy:
    def __init__(self, store: DocumentStore):
        self.store = store

    def is_owner(self, caller_id: str, senior_id: str) -> bool:
        if caller_id == senior_id:
            return True
        profile = get_senior_profile(self.store, senior_id)
        return profile is not None and profile.creator_id == caller_id

    def permissions_for(self, caller_id: str, senior_id: str) -> RelationPermissions:
        if not caller_id:
            return RelationPermissions.none()
        if self.is_owner(caller_id, senior_id):
            return RelationPermissions.full()
        doc = self.store.get(CAREGIVER_RELATIONS, CaregiverRelation.make_id(caller_id, senior_id))
        if doc is None:
            return RelationPermissions.none()
        relation = CaregiverRelation.model_validate(doc)
        # ids containing "_" can collide, so the stored pair must match too
        if not relation.is_active or not relation.links(caller_id, senior_id):
            return RelationPermissions.none()
        return relation.permissions

    def allows(self, caller_id: str, senior_id: str, permission: Permission) -> bool:
        return getattr(self.permissions_for(caller_id, senior_id), permission.value)

    def require(self, caller_id: str, senior_id: str, permission: Permission) -> None:
        if not self.allows(caller_id, senior_id, permission):
            logger.info("Denied %s to %s for senior %s", permission.value, caller_id, senior_id)
            raise PermissionDeniedError(f"{permission.value} is required for senior {senior_id}")


class RelationManager:
    def __init__(self, store: DocumentStore, policy: AccessPolicy):
        self.store = store
        self.policy = policy

    def get_relation(self, relation_id: str) -> CaregiverRelation:
        doc = self.store.get(CAREGIVER_RELATIONS, relation_id)
        if doc is None:
            raise NotFoundError(f"Relation {relation_id} not found")
        return CaregiverRelation.model_validate(doc)

    def request_relation(self, caregiver_id: str, senior_id: str, relationship: str = "CAREGIVER",
                         nickname: str = "", message: str = "",
                         now: Optional[datetime] = None) -> CaregiverRelation:
        """Create a PENDING relation with default permissions.

        Fails with AlreadyActiveError / AlreadyPendingError when the pair is
        already linked or waiting; a REJECTED record is replaced.
        """
        if not caregiver_id or not caregiver_id.strip():
            raise ValidationError("caregiver_id must not be blank")
        if not senior_id or not senior_id.strip():
            raise ValidationError("senior_id must not be blank")
        if caregiver_id == senior_id:
            raise ValidationError("a senior cannot be their own caregiver")

        now = now or utcnow()
        relation_id = CaregiverRelation.make_id(caregiver_id, senior_id)
        key = (CAREGIVER_RELATIONS, relation_id)

        def mutate(snapshot):
            existing = snapshot[key]
            if existing is not None:
                if not CaregiverRelation.model_validate(existing).links(caregiver_id, senior_id):
                    raise ConflictError(f"Relation id {relation_id} is already used by another caregiver/senior pair")
                status = RelationStatus(existing["status"])
                if status is RelationStatus.ACTIVE:
                    raise AlreadyActiveError(f"Caregiver {caregiver_id} already manages senior {senior_id}")
                if status is RelationStatus.PENDING:
                    raise AlreadyPendingError(f"A request for senior {senior_id} is already waiting for approval")
                logger.info("Replacing rejected relation %s with a new request", relation_id)
            relation = CaregiverRelation(
                id=relation_id,
                caregiver_id=caregiver_id,
                senior_id=senior_id,
                relationship=relationship or "CAREGIVER",
                nickname=nickname,
                message=message,
                status=RelationStatus.PENDING,
                requested_at=now,
            )
            return {key: relation.to_document()}, relation

        relation = self.store.transact([key], mutate)
        logger.info("Relation %s requested", relation_id)
        return relation

    def _transition(self, relation_id: str, actor_id: str, change) -> CaregiverRelation:
        relation = self.get_relation(relation_id)
        self.policy.require(actor_id, relation.senior_id, Permission.APPROVE_REQUESTS)
        key = (CAREGIVER_RELATIONS, relation_id)

        def mutate(snapshot):
            doc = snapshot[key]
            if doc is None:
                raise NotFoundError(f"Relation {relation_id} not found")
            updated = change(CaregiverRelation.model_validate(doc))
            return {key: updated.to_document()}, updated

        return self.store.transact([key], mutate)

    def approve_relation(self, relation_id: str, approver_id: str,
                         permissions: Optional[RelationPermissions] = None,
                         now: Optional[datetime] = None) -> CaregiverRelation:
        now = now or utcnow()

        def approve(relation: CaregiverRelation) -> CaregiverRelation:
            if relation.status is not RelationStatus.PENDING:
                raise ConflictError(f"Relation {relation_id} is {relation.status.value}, not PENDING")
            update = {"status": RelationStatus.ACTIVE, "approved_at": now, "approved_by": approver_id}
            if permissions is not None:
                update.update(permissions.model_dump())
            return relation.model_copy(update=update)

        relation = self._transition(relation_id, approver_id, approve)
        logger.info("Relation %s approved by %s", relation_id, approver_id)
        return relation

    def reject_relation(self, relation_id: str, rejecter_id: str,
                        now: Optional[datetime] = None) -> CaregiverRelation:
        now = now or utcnow()

        def reject(relation: CaregiverRelation) -> CaregiverRelation:
            if relation.status is not RelationStatus.PENDING:
                raise ConflictError(f"Relation {relation_id} is {relation.status.value}, not PENDING")
            return relation.model_copy(update={
                "status": RelationStatus.REJECTED, "rejected_at": now, "rejected_by": rejecter_id,
            })

        relation = self._transition(relation_id, rejecter_id, reject)
        logger.info("Relation %s rejected by %s", relation_id, rejecter_id)
        return relation

    def update_permissions(self, relation_id: str, updater_id: str,
                           flags: Union[PermissionsUpdate, RelationPermissions]) -> CaregiverRelation:
        changes = flags.model_dump(exclude_none=True)

        def update(relation: CaregiverRelation) -> CaregiverRelation:
            if not relation.is_active:
                raise ConflictError(f"Permissions can only change on ACTIVE relations, {relation_id} is {relation.status.value}")
            return relation.model_copy(update=changes)

        relation = self._transition(relation_id, updater_id, update)
        logger.info("Relation %s permissions updated by %s: %s", relation_id, updater_id, changes)
        return relation

    def remove_relation(self, relation_id: str, requester_id: str) -> None:
        relation = self.get_relation(relation_id)
        is_party = requester_id in (relation.caregiver_id, relation.senior_id)
        if not is_party and not self.policy.allows(requester_id, relation.senior_id, Permission.APPROVE_REQUESTS):
            raise PermissionDeniedError(f"{requester_id} may not remove relation {relation_id}")
        self.store.delete(CAREGIVER_RELATIONS, relation_id)
        logger.info("Relation %s removed by %s", relation_id, requester_id)

    def _by_senior(self, senior_id: str, status: RelationStatus) -> List[CaregiverRelation]:
        docs = self.store.query(CAREGIVER_RELATIONS, {"senior_id": senior_id, "status": status.value},
                                order_by=[("requested_at", ASCENDING)])
        return [CaregiverRelation.model_validate(d) for d in docs]

    def pending_requests(self, caller_id: str, senior_id: str) -> List[CaregiverRelation]:
        self.policy.require(caller_id, senior_id, Permission.APPROVE_REQUESTS)
        return self._by_senior(senior_id, RelationStatus.PENDING)

    def caregivers_for_senior(self, caller_id: str, senior_id: str) -> List[CaregiverRelation]:
        self.policy.require(caller_id, senior_id, Permission.APPROVE_REQUESTS)
        return self._by_senior(senior_id, RelationStatus.ACTIVE)

    def relations_for_caregiver(self, caregiver_id: str) -> List[CaregiverRelation]:
        docs = self.store.query(CAREGIVER_RELATIONS, {"caregiver_id": caregiver_id},
                                order_by=[("requested_at", ASCENDING)])
        return [CaregiverRelation.model_validate(d) for d in docs]
