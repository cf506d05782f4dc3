import pytest

from models import Facility
from rule_engine import (
    MIN_AREA_BY_TYPE,
    describe_rules,
    evaluate_facility,
    evaluate_facility_adequacy,
)

SAFETY_KIT = ['fire extinguisher', 'smoke alarm', 'emergency lighting']


def make_facility(facility_type='classroom', area=120.0, capacity=40, safety_equipment=None, status='in-use'):
    return Facility(
        institution_id='inst-1',
        facility_type=facility_type,
        facility_name='Room',
        location='Block A',
        area=area,
        capacity=capacity,
        safety_equipment=SAFETY_KIT if safety_equipment is None else safety_equipment,
        status=status,
    )


def test_compliant_classroom_has_no_issues():
    assert evaluate_facility(make_facility()) == []


def test_classroom_density_scenario():
    issues = evaluate_facility(make_facility(area=60.0, capacity=50))
    assert issues == ['density below minimum: requires 1.5 m2/person, has 1.2 m2/person']


@pytest.mark.parametrize('facility_type', sorted(MIN_AREA_BY_TYPE))
def test_area_minimum_boundary(facility_type):
    minimum = MIN_AREA_BY_TYPE[facility_type]
    at_minimum = evaluate_facility(make_facility(facility_type, area=minimum, capacity=1))
    below = evaluate_facility(make_facility(facility_type, area=minimum - 1, capacity=1))
    assert not [i for i in at_minimum if i.startswith('area below minimum')]
    assert [i for i in below if i.startswith('area below minimum')] == [
        f'area below minimum: requires {minimum:g} m2, has {minimum - 1:g} m2'
    ]


def test_unconstrained_types_only_check_safety_and_status():
    assert evaluate_facility(make_facility('library', area=5.0, capacity=100)) == []


def test_each_missing_safety_item_is_its_own_issue():
    issues = evaluate_facility(make_facility(safety_equipment=[{'name': 'smoke alarm'}]))
    assert issues == [
        'missing required safety equipment: fire extinguisher',
        'missing required safety equipment: emergency lighting',
    ]


def test_abnormal_status_is_reported_last():
    issues = evaluate_facility(make_facility(area=10.0, capacity=10, safety_equipment=[], status='under-maintenance'))
    assert len(issues) == 6
    assert issues[0].startswith('area below minimum')
    assert issues[1].startswith('density below minimum')
    assert issues[-1] == 'abnormal status: under-maintenance'


def test_adequacy_requires_total_area_and_both_types():
    issues = evaluate_facility_adequacy([make_facility('office', area=30.0, capacity=3)])
    assert issues == [
        'total facility area below minimum: requires 200 m2, has 30 m2',
        'at least one classroom is required',
        'at least one training-area is required',
    ]
    assert evaluate_facility_adequacy([
        make_facility('classroom', area=100.0),
        make_facility('training-area', area=100.0, capacity=20),
    ]) == []


def test_describe_rules_exposes_tables():
    rules = describe_rules()
    assert rules['required_safety_equipment'] == SAFETY_KIT
    assert rules['min_total_facility_area'] == 200.0
