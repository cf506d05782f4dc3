from datetime import datetime, timedelta, timezone

import pytest

from errors import ConflictError, ValidationError
from models import (
    ChangeRecord,
    Facility,
    Institution,
    Qualification,
    SafetyItem,
)
from temporal import TemporalWindow

NOW = datetime(2024, 6, 1, 12, 0)


def make_qualification(**overrides):
    fields = {
        'institution_id': 'inst-1',
        'qualification_type': 'safety-training',
        'qualification_name': 'Training Licence',
        'certificate_number': 'CERT-1',
        'issuing_authority': 'Bureau',
        'issue_date': NOW - timedelta(days=40),
        'valid_from': NOW - timedelta(days=30),
        'valid_to': NOW + timedelta(days=15),
    }
    fields.update(overrides)
    return Qualification(**fields)


def make_change_record(**overrides):
    fields = {
        'institution_id': 'inst-1',
        'change_type': 'address-change',
        'change_details': {'summary': 'moved'},
        'before_data': {'address': 'old'},
        'after_data': {'address': 'new'},
        'change_reason': 'relocation',
        'operator': 'clerk',
        'change_date': NOW,
    }
    fields.update(overrides)
    return ChangeRecord(**fields)


def make_institution(**overrides):
    fields = {
        'id': 'inst-1',
        'name': 'Centre',
        'code': 'C-1',
        'institution_type': 'vocational',
        'legal_representative': 'Rep',
        'contact_phone': '555-0100',
        'established_on': datetime(2015, 1, 1),
        'registration_number': 'R-1',
    }
    fields.update(overrides)
    return Institution(**fields)


def test_window_rejects_reversed_bounds():
    with pytest.raises(ValueError):
        TemporalWindow(valid_from=NOW, valid_to=NOW)


def test_qualification_scenario_expiring_in_fifteen_days():
    q = make_qualification()
    assert q.is_valid(NOW)
    assert q.is_expiring_soon(NOW, 30)
    assert q.remaining_days(NOW) in (14, 15)


def test_bounds_are_inclusive_then_exclusive():
    q = make_qualification()
    assert q.is_valid(q.valid_from)
    assert not q.is_valid(q.valid_to)
    assert not q.is_valid(q.valid_from - timedelta(seconds=1))



def test_offset_datetimes_become_naive_local_time():
    aware_end = datetime(2099, 1, 1, tzinfo=timezone.utc)
    q = make_qualification(valid_to=aware_end)
    assert q.valid_to.tzinfo is None
    assert q.valid_to == aware_end.astimezone().replace(tzinfo=None)
    assert q.is_valid(NOW)
    q.renew(datetime(2100, 1, 1, tzinfo=timezone.utc), NOW)
    assert q.valid_to.tzinfo is None


@pytest.mark.parametrize('status', ['expired', 'revoked', 'suspended'])
def test_non_valid_status_is_never_valid(status):
    q = make_qualification(status=status)
    assert not q.is_valid(NOW)
    assert not q.is_expiring_soon(NOW, 30)


def test_remaining_days_never_increases_and_hits_zero():
    q = make_qualification()
    previous = None
    for hours in range(0, 24 * 20, 7):
        remaining = q.remaining_days(NOW + timedelta(hours=hours))
        if previous is not None:
            assert remaining <= previous
        previous = remaining
    assert q.remaining_days(q.valid_to) == 0
    assert q.remaining_days(q.valid_to + timedelta(days=3)) == 0


def test_scope_coverage():
    assert make_qualification(scope=['fire safety']).covers_training_type('fire safety')
    assert not make_qualification(scope=[]).covers_training_type('fire safety')


@pytest.mark.parametrize('status', ['valid', 'expired', 'revoked', 'suspended'])
def test_renew_into_future_makes_valid(status):
    q = make_qualification(status=status, valid_to=NOW - timedelta(days=1))
    q.renew(NOW + timedelta(days=365), NOW, 'CERT-2')
    assert q.is_valid(NOW)
    assert q.status == 'valid'
    assert q.certificate_number == 'CERT-2'


def test_renew_with_past_date_leaves_state_unchanged():
    q = make_qualification(status='suspended')
    before = q.model_dump()
    with pytest.raises(ValidationError):
        q.renew(NOW, NOW)
    with pytest.raises(ValidationError):
        q.renew(NOW - timedelta(days=1), NOW)
    assert q.model_dump() == before


def test_renew_before_window_start_is_rejected():
    q = make_qualification(valid_from=NOW + timedelta(days=10), valid_to=NOW + timedelta(days=20))
    with pytest.raises(ValidationError):
        q.renew(NOW + timedelta(days=5), NOW)


def test_restore_after_expiry_fails():
    q = make_qualification(status='suspended')
    with pytest.raises(ValidationError):
        q.restore(q.valid_to)
    assert q.status == 'suspended'
    q.restore(NOW)
    assert q.status == 'valid'


def test_revoke_and_suspend_are_unconditional():
    q = make_qualification()
    assert q.revoke(NOW).status == 'revoked'
    assert q.suspend(NOW).status == 'suspended'


def test_facility_rejects_non_positive_area_and_capacity():
    with pytest.raises(ValueError):
        Facility(institution_id='i', facility_type='classroom', facility_name='x', location='y', area=0, capacity=10)
    with pytest.raises(ValueError):
        Facility(institution_id='i', facility_type='classroom', facility_name='x', location='y', area=10, capacity=0)


def test_safety_equipment_accepts_labels_and_items():
    facility = Facility(
        institution_id='i', facility_type='office', facility_name='x', location='y', area=30, capacity=3,
        safety_equipment=['smoke alarm', {'name': 'fire extinguisher', 'model': 'ABC'}],
    )
    assert isinstance(facility.safety_equipment[1], SafetyItem)
    assert facility.safety_equipment_names() == {'smoke alarm', 'fire extinguisher'}
    facility.add_safety_equipment({'name': 'emergency lighting'}, NOW)
    assert facility.has_safety_equipment('emergency lighting')
    with pytest.raises(ValidationError):
        facility.add_safety_equipment(42, NOW)


def test_inspection_scheduling():
    facility = Facility(institution_id='i', facility_type='office', facility_name='x', location='y', area=30, capacity=3)
    assert facility.needs_inspection(NOW)
    facility.complete_inspection(NOW, NOW + timedelta(days=90), NOW)
    assert facility.last_inspection_date == NOW
    assert not facility.needs_inspection(NOW + timedelta(days=1))
    assert facility.needs_inspection(NOW + timedelta(days=90))
    with pytest.raises(ValidationError):
        facility.complete_inspection(NOW, NOW, NOW)


def test_change_record_approval_sets_fields_together():
    record = make_change_record()
    assert record.is_pending and record.approver is None and record.approved_at is None
    record.approve('X', NOW)
    assert (record.approval_status, record.approver, record.approved_at) == ('approved', 'X', NOW)


def test_second_decision_on_entity_raises_conflict():
    record = make_change_record()
    record.approve('X', NOW)
    with pytest.raises(ConflictError):
        record.reject('Y', NOW + timedelta(hours=1))
    assert (record.approval_status, record.approver, record.approved_at) == ('approved', 'X', NOW)


def test_empty_approver_is_rejected():
    record = make_change_record()
    with pytest.raises(ValidationError):
        record.approve('  ', NOW)
    assert record.is_pending


def test_change_record_approval_fields_must_match_status():
    with pytest.raises(ValueError):
        make_change_record(approver='X')
    with pytest.raises(ValueError):
        make_change_record(approval_status='approved')
    record = make_change_record(approval_status='rejected', approver='X', approved_at=NOW)
    assert not record.is_pending


def test_institution_children_are_id_keyed():
    institution = make_institution()
    q = make_qualification()
    institution.add_qualification(q)
    with pytest.raises(ConflictError):
        institution.add_qualification(q)
    with pytest.raises(ValidationError):
        institution.add_qualification(make_qualification(institution_id='other'))
    institution.remove_qualification(q.id)
    assert institution.qualifications == []


def test_valid_and_expiring_qualifications():
    institution = make_institution()
    soon = make_qualification()
    later = make_qualification(valid_to=NOW + timedelta(days=200))
    revoked = make_qualification(status='revoked')
    for q in (soon, later, revoked):
        institution.add_qualification(q)
    assert {q.id for q in institution.valid_qualifications(NOW)} == {soon.id, later.id}
    assert [q.id for q in institution.expiring_qualifications(NOW, 30)] == [soon.id]
