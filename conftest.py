from datetime import datetime, timedelta

import pytest

from db import init_db

NOW = datetime(2024, 6, 1, 12, 0)

SAFETY_KIT = ['fire extinguisher', 'smoke alarm', 'emergency lighting']


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / 'compliance.db')
    init_db(path)
    return path


@pytest.fixture
def institution_data():
    return {
        'name': 'Harbour Safety Training Centre',
        'code': 'HSTC-001',
        'institution_type': 'vocational',
        'legal_representative': 'J. Moreau',
        'contact_person': 'A. Lindqvist',
        'contact_phone': '555-0100',
        'contact_email': 'office@hstc.example',
        'address': '12 Quay Road, Port Town',
        'business_scope': 'workplace safety training',
        'established_on': datetime(2015, 3, 1),
        'registration_number': 'REG-2015-0042',
        'status': 'operating',
    }


@pytest.fixture
def qualification_data():
    return {
        'qualification_type': 'safety-training',
        'qualification_name': 'Safety Production Training Licence',
        'certificate_number': 'CERT-0001',
        'issuing_authority': 'Provincial Safety Bureau',
        'issue_date': NOW - timedelta(days=400),
        'valid_from': NOW - timedelta(days=365),
        'valid_to': NOW + timedelta(days=365),
        'scope': ['fire safety', 'first aid'],
    }


@pytest.fixture
def classroom_data():
    return {
        'facility_type': 'classroom',
        'facility_name': 'Room 101',
        'location': 'Building A, floor 1',
        'area': 120.0,
        'capacity': 40,
        'safety_equipment': list(SAFETY_KIT),
    }


@pytest.fixture
def training_area_data():
    return {
        'facility_type': 'training-area',
        'facility_name': 'Yard',
        'location': 'Building B',
        'area': 150.0,
        'capacity': 30,
        'safety_equipment': [{'name': 'fire extinguisher', 'count': 4}, 'smoke alarm', 'emergency lighting'],
    }
