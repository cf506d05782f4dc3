from datetime import datetime, timedelta

from compliance import (
    check_facility_adequacy,
    check_institution_compliance,
    classify_expiry,
    is_compliant,
    run_status_check,
)
from models import Facility, Institution, Qualification
from rule_engine import MISSING_FACILITY_ISSUE, MISSING_QUALIFICATION_ISSUE, evaluate_facility

NOW = datetime(2024, 6, 1, 12, 0)
SAFETY_KIT = ['fire extinguisher', 'smoke alarm', 'emergency lighting']


def make_institution(id='inst-1', **overrides):
    fields = {
        'id': id,
        'name': 'Centre',
        'code': f'C-{id}',
        'institution_type': 'vocational',
        'legal_representative': 'Rep',
        'contact_phone': '555-0100',
        'established_on': datetime(2015, 1, 1),
        'registration_number': f'R-{id}',
        'status': 'operating',
    }
    fields.update(overrides)
    return Institution(**fields)


def make_qualification(institution_id='inst-1', days_left=200, status='valid'):
    return Qualification(
        institution_id=institution_id,
        qualification_type='safety-training',
        qualification_name='Licence',
        certificate_number=f'CERT-{days_left}-{status}',
        issuing_authority='Bureau',
        issue_date=NOW - timedelta(days=400),
        valid_from=NOW - timedelta(days=365),
        valid_to=NOW + timedelta(days=days_left),
        status=status,
    )


def make_facility(institution_id='inst-1', **overrides):
    fields = {
        'institution_id': institution_id,
        'facility_type': 'classroom',
        'facility_name': 'Room',
        'location': 'Block A',
        'area': 120.0,
        'capacity': 40,
        'safety_equipment': SAFETY_KIT,
    }
    fields.update(overrides)
    return Facility(**fields)


def compliant_institution(id='inst-1'):
    institution = make_institution(id)
    institution.add_qualification(make_qualification(id))
    institution.add_facility(make_facility(id))
    return institution


def test_compliant_institution():
    institution = compliant_institution()
    assert check_institution_compliance(institution, NOW) == []
    assert is_compliant(institution, NOW)


def test_empty_institution_reports_both_absences():
    issues = check_institution_compliance(make_institution(), NOW)
    assert issues == [MISSING_QUALIFICATION_ISSUE, MISSING_FACILITY_ISSUE]


def test_issue_count_is_sum_of_parts():
    institution = make_institution(legal_representative='', contact_phone=' ', status='suspended')
    institution.add_qualification(make_qualification(status='revoked'))
    facilities = [
        make_facility(area=60.0, capacity=50),
        make_facility(facility_type='training-area', area=80.0, capacity=10, safety_equipment=[]),
    ]
    for facility in facilities:
        institution.add_facility(facility)

    issues = check_institution_compliance(institution, NOW)
    per_facility = sum(len(evaluate_facility(f)) for f in facilities)
    assert len(issues) == 3 + 1 + per_facility
    assert issues[:3] == [
        'legal representative is required',
        'contact phone is required',
        'institution status must be operating, is suspended',
    ]
    assert issues[3] == MISSING_QUALIFICATION_ISSUE
    assert MISSING_FACILITY_ISSUE not in issues


def test_expired_qualification_counts_as_missing():
    institution = make_institution()
    institution.add_facility(make_facility())
    institution.add_qualification(make_qualification(days_left=10))
    assert check_institution_compliance(institution, NOW + timedelta(days=10)) == [MISSING_QUALIFICATION_ISSUE]


def test_facility_adequacy_result():
    result = check_facility_adequacy([make_facility(), make_facility(facility_type='training-area', area=100.0, capacity=20)])
    assert result['overall_compliant']
    assert result['total_area'] == 220.0
    assert result['facility_counts'] == {'classroom': 1, 'training_area': 1, 'total': 2}
    assert all(r['is_compliant'] for r in result['facilities'])


def test_classify_expiry_buckets():
    assert classify_expiry(make_qualification(days_left=200), NOW)['status'] == 'normal'
    assert classify_expiry(make_qualification(days_left=45), NOW)['status'] == 'warning'
    assert classify_expiry(make_qualification(days_left=20), NOW)['status'] == 'expiring_soon'
    expired = classify_expiry(make_qualification(days_left=-1), NOW)
    assert expired['status'] == 'expired'
    assert expired['remaining_days'] == 0
    assert not expired['is_valid']


def test_window_closing_later_today_is_not_expired():
    qualification = make_qualification()
    qualification.valid_to = NOW + timedelta(hours=3)
    result = classify_expiry(qualification, NOW)
    assert result['status'] == 'expiring_soon'
    assert result['remaining_days'] == 0
    assert result['is_valid']
    assert classify_expiry(qualification, qualification.valid_to)['status'] == 'expired'


def test_status_check_summary_and_primary_issues():
    report = run_status_check([compliant_institution('a'), make_institution('b', contact_phone='')], NOW)
    summary = report['summary']
    assert summary['total_institutions'] == 2
    assert summary['compliant'] == 1
    assert summary['non_compliant'] == 1
    assert summary['total_issues'] == 3
    assert summary['compliance_rate'] == 50.0
    failing = report['results'][1]
    assert failing['issue_count'] == 3
    assert failing['primary_issues'] == failing['issues'][:2]
    assert failing['truncated']


def test_status_check_with_no_institutions():
    report = run_status_check([], NOW)
    assert report['summary']['compliance_rate'] == 0.0
    assert report['results'] == []
