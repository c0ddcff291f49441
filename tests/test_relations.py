from datetime import datetime

import pytest
import pytz

from errors import AlreadyActiveError, AlreadyPendingError, ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from reminders import RuleUpdate, ScheduleRuleIn
from schemas import CAREGIVER_RELATIONS, CaregiverRelation, PermissionsUpdate, RelationPermissions, RelationStatus

from conftest import CREATOR, SENIOR

CAREGIVER = "caregiver-a"


def utc(*args):
    return datetime(*args, tzinfo=pytz.utc)


def test_request_creates_pending_relation_with_default_permissions(relations, store):
    relation = relations.request_relation(CAREGIVER, SENIOR, "Son", nickname="Dad", message="hi")
    assert relation.id == f"{CAREGIVER}_{SENIOR}"
    assert relation.status is RelationStatus.PENDING
    assert relation.permissions == RelationPermissions()
    assert store.get(CAREGIVER_RELATIONS, relation.id)["nickname"] == "Dad"


def test_second_request_while_pending_is_rejected(relations, store):
    relations.request_relation(CAREGIVER, SENIOR)
    with pytest.raises(AlreadyPendingError):
        relations.request_relation(CAREGIVER, SENIOR)
    assert len(store.query(CAREGIVER_RELATIONS)) == 1


def test_request_after_approval_is_rejected(relations):
    relation = relations.request_relation(CAREGIVER, SENIOR)
    relations.approve_relation(relation.id, CREATOR)
    with pytest.raises(AlreadyActiveError):
        relations.request_relation(CAREGIVER, SENIOR)


def test_rejected_caregiver_may_ask_again(relations):
    relation = relations.request_relation(CAREGIVER, SENIOR, now=utc(2024, 1, 1))
    rejected = relations.reject_relation(relation.id, CREATOR)
    assert rejected.status is RelationStatus.REJECTED
    assert rejected.rejected_by == CREATOR

    again = relations.request_relation(CAREGIVER, SENIOR, now=utc(2024, 2, 1))
    assert again.id == relation.id
    assert again.status is RelationStatus.PENDING
    assert again.requested_at == utc(2024, 2, 1)
    assert again.rejected_at is None


@pytest.mark.parametrize("caregiver_id, senior_id", [("", SENIOR), ("  ", SENIOR), (CAREGIVER, ""), (SENIOR, SENIOR)])
def test_request_validation(relations, caregiver_id, senior_id):
    with pytest.raises(ValidationError):
        relations.request_relation(caregiver_id, senior_id)


def test_only_approvers_may_decide(relations):
    relation = relations.request_relation(CAREGIVER, SENIOR)
    with pytest.raises(PermissionDeniedError):
        relations.approve_relation(relation.id, "stranger")
    with pytest.raises(PermissionDeniedError):
        relations.approve_relation(relation.id, CAREGIVER)

    approved = relations.approve_relation(relation.id, SENIOR)
    assert approved.status is RelationStatus.ACTIVE
    assert approved.approved_by == SENIOR
    with pytest.raises(ConflictError):
        relations.approve_relation(relation.id, SENIOR)
    with pytest.raises(ConflictError):
        relations.reject_relation(relation.id, SENIOR)


def test_approve_unknown_relation(relations):
    with pytest.raises(NotFoundError):
        relations.approve_relation("nobody_senior-1", CREATOR)


def test_approve_with_explicit_permissions(relations, policy):
    relation = relations.request_relation(CAREGIVER, SENIOR)
    relations.approve_relation(relation.id, CREATOR, RelationPermissions(can_edit_reminders=True))
    assert policy.permissions_for(CAREGIVER, SENIOR).can_edit_reminders


def test_update_permissions_is_partial_and_needs_active(relations):
    relation = relations.request_relation(CAREGIVER, SENIOR)
    with pytest.raises(ConflictError):
        relations.update_permissions(relation.id, CREATOR, PermissionsUpdate(can_edit_reminders=True))

    relations.approve_relation(relation.id, CREATOR)
    updated = relations.update_permissions(relation.id, CREATOR, PermissionsUpdate(can_edit_reminders=True))
    assert updated.can_edit_reminders
    assert updated.can_view_reminders
    assert not updated.can_approve_requests


def test_either_party_may_remove(relations, store):
    first = relations.request_relation(CAREGIVER, SENIOR)
    with pytest.raises(PermissionDeniedError):
        relations.remove_relation(first.id, "stranger")
    relations.remove_relation(first.id, CAREGIVER)
    assert store.get(CAREGIVER_RELATIONS, first.id) is None

    second = relations.request_relation(CAREGIVER, SENIOR)
    relations.remove_relation(second.id, SENIOR)
    with pytest.raises(NotFoundError):
        relations.get_relation(second.id)


def test_listings(relations):
    relations.request_relation("cg-1", SENIOR)
    second = relations.request_relation("cg-2", SENIOR)
    relations.approve_relation(second.id, CREATOR)

    assert [r.caregiver_id for r in relations.pending_requests(CREATOR, SENIOR)] == ["cg-1"]
    assert [r.caregiver_id for r in relations.caregivers_for_senior(SENIOR, SENIOR)] == ["cg-2"]
    assert [r.senior_id for r in relations.relations_for_caregiver("cg-2")] == [SENIOR]
    with pytest.raises(PermissionDeniedError):
        relations.pending_requests("cg-2", SENIOR)


def test_permissions_gate_reminder_operations(relations, reminders, make_rule, policy):
    rule = make_rule()
    relation = relations.request_relation(CAREGIVER, SENIOR)
    payload = ScheduleRuleIn(senior_id=SENIOR, name="Metformin", time_slots=["09:00"], start_date=rule.start_date)

    # pending relations grant nothing
    assert policy.permissions_for(CAREGIVER, SENIOR) == RelationPermissions.none()
    with pytest.raises(PermissionDeniedError):
        reminders.list_rules(CAREGIVER, SENIOR)

    relations.approve_relation(relation.id, CREATOR)
    with pytest.raises(PermissionDeniedError):
        reminders.create_rule(CAREGIVER, payload)
    with pytest.raises(PermissionDeniedError):
        reminders.update_rule(CAREGIVER, rule.id, RuleUpdate(dosage=2))
    with pytest.raises(PermissionDeniedError):
        reminders.delete_rule(CAREGIVER, rule.id)

    assert [r.id for r in reminders.list_rules(CAREGIVER, SENIOR)] == [rule.id]
    doses = reminders.doses(CAREGIVER, SENIOR, utc(2024, 1, 1), utc(2024, 1, 2), utc(2024, 1, 1))
    assert len(doses) == 1

    relations.update_permissions(relation.id, CREATOR, PermissionsUpdate(can_edit_reminders=True))
    created = reminders.create_rule(CAREGIVER, payload)
    assert created.created_by == CAREGIVER


def test_colliding_relation_ids_do_not_share_permissions(relations, policy, store):
    relation = relations.request_relation("cg_a", "b")
    relations.approve_relation(relation.id, "b")
    assert relation.id == CaregiverRelation.make_id("cg", "a_b")

    assert policy.permissions_for("cg_a", "b").can_view_reminders
    assert policy.permissions_for("cg", "a_b") == RelationPermissions.none()

    with pytest.raises(ConflictError) as excinfo:
        relations.request_relation("cg", "a_b")
    assert excinfo.type is ConflictError
    assert store.get(CAREGIVER_RELATIONS, relation.id)["caregiver_id"] == "cg_a"
