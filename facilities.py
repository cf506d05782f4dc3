"""
Facility service: registration, inspections, equipment and reporting data.
"""
import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import db
from compliance import check_facility_adequacy
from config import DB_PATH
from errors import ComplianceError, NotFoundError, ValidationError
from institutions import get_institution
from models import FACILITY_TYPES, Facility, parse_entity, revise
from temporal import current_time, to_local_naive

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = {
    "facility_type": "facility type",
    "facility_name": "facility name",
    "location": "location",
    "area": "area",
    "capacity": "capacity",
}

EDITABLE_FIELDS = tuple(REQUIRED_FIELDS) + ("equipment", "safety_equipment", "status")


def validate_facility_data(data: Dict[str, Any], partial: bool = False) -> None:
    """Collect every problem with ``data`` and raise them together.

    With ``partial`` only the fields present are checked (updates).
    """
    errors = []
    if not partial:
        errors.extend(f"{label} is required" for field, label in REQUIRED_FIELDS.items() if not data.get(field))

    area = data.get("area")
    if area is not None and (isinstance(area, bool) or not isinstance(area, (int, float)) or area <= 0):
        errors.append("area must be a number greater than 0")
    capacity = data.get("capacity")
    if capacity is not None and (isinstance(capacity, bool) or not isinstance(capacity, int) or capacity <= 0):
        errors.append("capacity must be an integer greater than 0")
    facility_type = data.get("facility_type")
    if facility_type and facility_type not in FACILITY_TYPES:
        errors.append(f"invalid facility type, allowed: {', '.join(FACILITY_TYPES)}")

    if errors:
        raise ValidationError.from_messages(errors)


def get_facility(facility_id: str, db_path: str = DB_PATH) -> Facility:
    facility = db.fetch_facility(facility_id, db_path=db_path)
    if facility is None:
        raise NotFoundError(f"facility not found: {facility_id}")
    return facility


def add_facility(
    institution_id: str,
    data: Dict[str, Any],
    now: Optional[datetime] = None,
    db_path: str = DB_PATH,
) -> Facility:
    now = now or current_time()
    institution = get_institution(institution_id, db_path)
    validate_facility_data(data)

    fields = {k: data[k] for k in EDITABLE_FIELDS if data.get(k) is not None}
    facility = parse_entity(Facility, {
        **fields,
        "institution_id": institution_id,
        "created_at": now,
        "updated_at": now,
    })
    institution.add_facility(facility)
    db.save(facility, db_path=db_path)
    logger.info("Added facility %s to institution %s", facility.facility_name, institution_id)
    return facility


def update_facility(
    facility_id: str,
    data: Dict[str, Any],
    now: Optional[datetime] = None,
    db_path: str = DB_PATH,
) -> Facility:
    facility = get_facility(facility_id, db_path)
    changes = {k: data[k] for k in EDITABLE_FIELDS if data.get(k) is not None}
    validate_facility_data(changes, partial=True)
    updated = revise(facility, {**changes, "updated_at": now or current_time()})
    db.save(updated, db_path=db_path)
    logger.info("Updated facility %s", facility_id)
    return updated


def schedule_inspection(
    facility_id: str,
    inspection_date: datetime,
    now: Optional[datetime] = None,
    db_path: str = DB_PATH,
) -> Facility:
    facility = get_facility(facility_id, db_path).schedule_inspection(inspection_date, now)
    db.save(facility, db_path=db_path)
    logger.info("Scheduled inspection of facility %s on %s", facility_id, inspection_date.date())
    return facility


def complete_inspection(
    facility_id: str,
    inspection_date: datetime,
    next_inspection_date: datetime,
    now: Optional[datetime] = None,
    db_path: str = DB_PATH,
) -> Facility:
    facility = get_facility(facility_id, db_path)
    facility.complete_inspection(inspection_date, next_inspection_date, now)
    db.save(facility, db_path=db_path)
    logger.info("Completed inspection of facility %s, next on %s", facility_id, next_inspection_date.date())
    return facility


def batch_schedule_inspections(
    facility_ids: Iterable[str],
    base_date: datetime,
    interval_days: int = 7,
    now: Optional[datetime] = None,
    db_path: str = DB_PATH,
) -> List[Dict[str, Any]]:
    """Schedule inspections ``interval_days`` apart, one facility at a time.

    A failure is reported in the result list and does not consume a slot;
    the next facility gets the same date.
    """
    results = []
    current_date = to_local_naive(base_date)
    for facility_id in facility_ids:
        try:
            schedule_inspection(facility_id, current_date, now, db_path)
        except ComplianceError as e:
            logger.warning("Could not schedule inspection for facility %s: %s", facility_id, e)
            results.append({"facility_id": facility_id, "success": False, "error": str(e)})
            continue
        results.append({"facility_id": facility_id, "scheduled_date": current_date, "success": True})
        current_date = current_date + timedelta(days=interval_days)
    return results


def get_facilities_needing_inspection(now: Optional[datetime] = None, db_path: str = DB_PATH) -> List[Facility]:
    now = now or current_time()
    return [f for f in db.fetch_facilities(db_path=db_path) if f.needs_inspection(now)]


def add_equipment(facility_id: str, item: Any, now: Optional[datetime] = None, db_path: str = DB_PATH) -> Facility:
    facility = get_facility(facility_id, db_path).add_equipment(item, now)
    db.save(facility, db_path=db_path)
    return facility


def add_safety_equipment(facility_id: str, item: Any, now: Optional[datetime] = None, db_path: str = DB_PATH) -> Facility:
    facility = get_facility(facility_id, db_path).add_safety_equipment(item, now)
    db.save(facility, db_path=db_path)
    return facility


def validate_facility_requirements(institution_id: str, db_path: str = DB_PATH) -> Dict[str, Any]:
    """Per-facility rule results plus the institution-wide adequacy verdict."""
    institution = get_institution(institution_id, db_path)
    return check_facility_adequacy(institution.facilities)


def generate_facility_report(
    institution_id: str,
    now: Optional[datetime] = None,
    db_path: str = DB_PATH,
) -> Dict[str, Any]:
    now = now or current_time()
    institution = get_institution(institution_id, db_path)
    facilities = institution.facilities
    count = len(facilities)
    total_area = institution.total_facility_area()
    total_capacity = sum(f.capacity for f in facilities)
    needing_inspection = [f for f in facilities if f.needs_inspection(now)]

    return {
        "institution": {"id": institution.id, "name": institution.name},
        "summary": {
            "total_facilities": count,
            "total_area": total_area,
            "total_capacity": total_capacity,
            "average_area_per_facility": total_area / count if count else 0,
            "average_capacity_per_facility": total_capacity / count if count else 0,
        },
        "statistics": {
            "by_type": dict(Counter(f.facility_type for f in facilities)),
            "by_status": dict(Counter(f.status for f in facilities)),
        },
        "maintenance": {
            "needing_inspection": len(needing_inspection),
            "inspection_list": [
                {
                    "id": f.id,
                    "name": f.facility_name,
                    "type": f.facility_type,
                    "last_inspection": f.last_inspection_date.date().isoformat() if f.last_inspection_date else None,
                    "next_inspection": f.next_inspection_date.date().isoformat() if f.next_inspection_date else None,
                }
                for f in needing_inspection
            ],
        },
        "compliance": check_facility_adequacy(facilities),
        "generated_at": now.isoformat(),
    }
