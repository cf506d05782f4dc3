"""
Training institution compliance engine FastAPI application.

This module exposes REST endpoints over the institution, qualification,
facility and change-record services.  It uses only the built-in
:mod:`sqlite3` database and FastAPI, and returns plain JSON; rendering
is left to whatever front-end consumes it.

Engine errors map to status codes: validation problems are 400, unknown
ids 404, uniqueness violations and already-processed change records 409.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

import change_records
import facilities
import institutions
import qualifications
from config import DB_PATH, EXPIRING_SOON_DAYS, LOG_LEVEL, RENEWAL_REMINDER_DAYS
from db import init_db
from errors import ComplianceError, ConflictError, NotFoundError, ValidationError
from rule_engine import describe_rules
from temporal import LocalDatetime

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=LOG_LEVEL,
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Initialise database on startup
    init_db(app.state.db_path)
    logger.info("Database ready at %s", app.state.db_path)
    yield


app = FastAPI(title="Training Institution Compliance Engine", lifespan=lifespan)
app.state.db_path = DB_PATH


def _db() -> str:
    return app.state.db_path


def http_error(exc: ComplianceError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


class StatusChangeRequest(BaseModel):
    status: str
    reason: str
    operator: str = "system"


class RenewRequest(BaseModel):
    new_valid_to: LocalDatetime
    new_certificate_number: Optional[str] = None
    issuing_authority: Optional[str] = None
    issue_date: Optional[LocalDatetime] = None
    scope: Optional[List[str]] = None
    attachments: Optional[List[Any]] = None


class ReasonRequest(BaseModel):
    reason: str = ""


class ScopeRequest(BaseModel):
    training_types: List[str]


class ScheduleRequest(BaseModel):
    inspection_date: LocalDatetime


class InspectionRequest(BaseModel):
    inspection_date: LocalDatetime
    next_inspection_date: LocalDatetime


class BatchScheduleRequest(BaseModel):
    facility_ids: List[str]
    base_date: LocalDatetime
    interval_days: int = Field(default=7, gt=0)


class ApprovalRequest(BaseModel):
    approver: str
    reason: str = ""


class BatchApprovalRequest(BaseModel):
    record_ids: List[str]
    approver: str
    reason: str = ""


@app.get("/health")
def health_check() -> Dict[str, str]:
    """Return a simple health status."""
    return {"status": "ok"}


@app.get("/rules")
def get_rules() -> Dict[str, Any]:
    return describe_rules()


# ---------------------------------------------------------------- institutions


@app.post("/institutions", status_code=201)
def create_institution(payload: Dict[str, Any]):
    try:
        return institutions.create_institution(payload, db_path=_db())
    except ComplianceError as e:
        raise http_error(e)


@app.get("/institutions")
def list_institutions(status: Optional[str] = None):
    return institutions.get_institutions_by_status(status, db_path=_db())


@app.get("/institutions/search")
def search_institutions(name: Optional[str] = None, address: Optional[str] = None):
    return institutions.search_institutions({"name": name, "address": address}, db_path=_db())


@app.get("/institutions/statistics")
def institution_statistics() -> Dict[str, Any]:
    return institutions.get_institution_statistics(db_path=_db())


@app.get("/institutions/paginated")
def paginated_institutions(
    page: int = 1,
    limit: int = 20,
    status: Optional[str] = None,
    institution_type: Optional[str] = None,
    name: Optional[str] = None,
) -> Dict[str, Any]:
    criteria = {"status": status, "institution_type": institution_type, "name": name}
    try:
        return institutions.get_institutions_paginated(page, limit, criteria, db_path=_db())
    except ComplianceError as e:
        raise http_error(e)


@app.get("/institutions/{institution_id}")
def get_institution(institution_id: str):
    try:
        return institutions.get_institution(institution_id, db_path=_db())
    except ComplianceError as e:
        raise http_error(e)


@app.put("/institutions/{institution_id}")
def update_institution(institution_id: str, payload: Dict[str, Any]):
    try:
        return institutions.update_institution(institution_id, payload, db_path=_db())
    except ComplianceError as e:
        raise http_error(e)


@app.post("/institutions/{institution_id}/status")
def change_institution_status(institution_id: str, payload: StatusChangeRequest):
    try:
        return institutions.change_institution_status(
            institution_id, payload.status, payload.reason, payload.operator, db_path=_db()
        )
    except ComplianceError as e:
        raise http_error(e)


@app.delete("/institutions/{institution_id}")
def delete_institution(institution_id: str) -> Dict[str, Any]:
    try:
        counts = institutions.delete_institution(institution_id, db_path=_db())
    except ComplianceError as e:
        raise http_error(e)
    return {"status": "ok", "deleted": counts}


@app.get("/institutions/{institution_id}/compliance")
def check_compliance(institution_id: str) -> Dict[str, Any]:
    try:
        issues = institutions.check_institution_compliance(institution_id, db_path=_db())
    except ComplianceError as e:
        raise http_error(e)
    return {"institution_id": institution_id, "is_compliant": not issues, "issues": issues}


@app.get("/status-check")
def status_check(institution_id: Optional[str] = None, status: Optional[str] = None) -> Dict[str, Any]:
    try:
        return institutions.status_check(institution_id, status, db_path=_db())
    except ComplianceError as e:
        raise http_error(e)


# -------------------------------------------------------------- qualifications


@app.post("/institutions/{institution_id}/qualifications", status_code=201)
def add_qualification(institution_id: str, payload: Dict[str, Any]):
    try:
        return qualifications.add_qualification(institution_id, payload, db_path=_db())
    except ComplianceError as e:
        raise http_error(e)


@app.get("/institutions/{institution_id}/qualifications/expiry")
def check_qualification_expiry(institution_id: str) -> Dict[str, Any]:
    try:
        results = qualifications.check_qualification_expiry(institution_id, db_path=_db())
    except ComplianceError as e:
        raise http_error(e)
    return {"institution_id": institution_id, "qualifications": results}


@app.get("/qualifications")
def paginated_qualifications(
    page: int = 1,
    limit: int = 20,
    institution_id: Optional[str] = None,
    status: Optional[str] = None,
    qualification_type: Optional[str] = None,
    certificate_number: Optional[str] = None,
) -> Dict[str, Any]:
    criteria = {
        "institution_id": institution_id,
        "status": status,
        "qualification_type": qualification_type,
        "certificate_number": certificate_number,
    }
    try:
        return qualifications.get_qualifications_paginated(page, limit, criteria, db_path=_db())
    except ComplianceError as e:
        raise http_error(e)


@app.get("/qualifications/expiring")
def expiring_qualifications(days: int = EXPIRING_SOON_DAYS):
    return qualifications.get_expiring_qualifications(days, db_path=_db())


@app.get("/qualifications/renewal-reminders")
def renewal_reminders(days: int = RENEWAL_REMINDER_DAYS):
    return qualifications.get_qualifications_needing_renewal_reminder(days, db_path=_db())


@app.get("/qualifications/expired")
def expired_qualifications():
    return qualifications.get_expired_qualifications(db_path=_db())


@app.post("/qualifications/mark-expired")
def mark_expired_qualifications() -> Dict[str, Any]:
    marked = qualifications.mark_expired_qualifications(db_path=_db())
    return {"marked": len(marked), "qualification_ids": [q.id for q in marked]}


@app.get("/qualifications/statistics")
def qualification_statistics() -> Dict[str, Any]:
    return qualifications.get_qualification_statistics(db_path=_db())


@app.get("/qualifications/{qualification_id}")
def get_qualification(qualification_id: str):
    try:
        return qualifications.get_qualification(qualification_id, db_path=_db())
    except ComplianceError as e:
        raise http_error(e)


@app.put("/qualifications/{qualification_id}")
def update_qualification(qualification_id: str, payload: Dict[str, Any]):
    try:
        return qualifications.update_qualification(qualification_id, payload, db_path=_db())
    except ComplianceError as e:
        raise http_error(e)


@app.post("/qualifications/{qualification_id}/renew")
def renew_qualification(qualification_id: str, payload: RenewRequest):
    extra = payload.model_dump(include={"issuing_authority", "issue_date", "scope", "attachments"})
    try:
        return qualifications.renew_qualification(
            qualification_id,
            payload.new_valid_to,
            payload.new_certificate_number,
            extra=extra,
            db_path=_db(),
        )
    except ComplianceError as e:
        raise http_error(e)


@app.post("/qualifications/{qualification_id}/revoke")
def revoke_qualification(qualification_id: str, payload: ReasonRequest):
    try:
        return qualifications.revoke_qualification(qualification_id, payload.reason, db_path=_db())
    except ComplianceError as e:
        raise http_error(e)


@app.post("/qualifications/{qualification_id}/suspend")
def suspend_qualification(qualification_id: str, payload: ReasonRequest):
    try:
        return qualifications.suspend_qualification(qualification_id, payload.reason, db_path=_db())
    except ComplianceError as e:
        raise http_error(e)


@app.post("/qualifications/{qualification_id}/restore")
def restore_qualification(qualification_id: str):
    try:
        return qualifications.restore_qualification(qualification_id, db_path=_db())
    except ComplianceError as e:
        raise http_error(e)


@app.post("/qualifications/{qualification_id}/scope-check")
def check_qualification_scope(qualification_id: str, payload: ScopeRequest) -> Dict[str, Any]:
    try:
        covered = qualifications.validate_qualification_scope(
            qualification_id, payload.training_types, db_path=_db()
        )
    except ComplianceError as e:
        raise http_error(e)
    return {"qualification_id": qualification_id, "covered": covered}


# ------------------------------------------------------------------ facilities


@app.post("/institutions/{institution_id}/facilities", status_code=201)
def add_facility(institution_id: str, payload: Dict[str, Any]):
    try:
        return facilities.add_facility(institution_id, payload, db_path=_db())
    except ComplianceError as e:
        raise http_error(e)


@app.get("/institutions/{institution_id}/facility-requirements")
def facility_requirements(institution_id: str) -> Dict[str, Any]:
    try:
        return facilities.validate_facility_requirements(institution_id, db_path=_db())
    except ComplianceError as e:
        raise http_error(e)


@app.get("/institutions/{institution_id}/facility-report")
def facility_report(institution_id: str) -> Dict[str, Any]:
    try:
        return facilities.generate_facility_report(institution_id, db_path=_db())
    except ComplianceError as e:
        raise http_error(e)


@app.get("/facilities/needing-inspection")
def facilities_needing_inspection():
    return facilities.get_facilities_needing_inspection(db_path=_db())


@app.post("/facilities/inspections/batch")
def batch_schedule_inspections(payload: BatchScheduleRequest) -> Dict[str, Any]:
    results = facilities.batch_schedule_inspections(
        payload.facility_ids, payload.base_date, payload.interval_days, db_path=_db()
    )
    return {"results": results}


@app.get("/facilities/{facility_id}")
def get_facility(facility_id: str):
    try:
        return facilities.get_facility(facility_id, db_path=_db())
    except ComplianceError as e:
        raise http_error(e)


@app.put("/facilities/{facility_id}")
def update_facility(facility_id: str, payload: Dict[str, Any]):
    try:
        return facilities.update_facility(facility_id, payload, db_path=_db())
    except ComplianceError as e:
        raise http_error(e)


@app.post("/facilities/{facility_id}/inspection/schedule")
def schedule_inspection(facility_id: str, payload: ScheduleRequest):
    try:
        return facilities.schedule_inspection(facility_id, payload.inspection_date, db_path=_db())
    except ComplianceError as e:
        raise http_error(e)


@app.post("/facilities/{facility_id}/inspection/complete")
def complete_inspection(facility_id: str, payload: InspectionRequest):
    try:
        return facilities.complete_inspection(
            facility_id, payload.inspection_date, payload.next_inspection_date, db_path=_db()
        )
    except ComplianceError as e:
        raise http_error(e)


@app.post("/facilities/{facility_id}/equipment")
def add_equipment(facility_id: str, payload: Dict[str, Any]):
    try:
        return facilities.add_equipment(facility_id, payload, db_path=_db())
    except ComplianceError as e:
        raise http_error(e)


@app.post("/facilities/{facility_id}/safety-equipment")
def add_safety_equipment(facility_id: str, payload: Dict[str, Any]):
    try:
        return facilities.add_safety_equipment(facility_id, payload, db_path=_db())
    except ComplianceError as e:
        raise http_error(e)


# -------------------------------------------------------------- change records


@app.post("/institutions/{institution_id}/changes", status_code=201)
def record_change(institution_id: str, payload: Dict[str, Any]):
    try:
        return change_records.record_change(institution_id, payload, db_path=_db())
    except ComplianceError as e:
        raise http_error(e)


@app.get("/institutions/{institution_id}/changes")
def change_history(institution_id: str, start: Optional[datetime] = None, end: Optional[datetime] = None):
    try:
        if start is not None and end is not None:
            return change_records.get_changes_by_date_range(institution_id, start, end, db_path=_db())
        return change_records.get_change_history(institution_id, db_path=_db())
    except ComplianceError as e:
        raise http_error(e)


@app.get("/institutions/{institution_id}/change-report")
def change_report(institution_id: str) -> Dict[str, Any]:
    try:
        return change_records.generate_change_report(institution_id, db_path=_db())
    except ComplianceError as e:
        raise http_error(e)


@app.get("/changes")
def changes_by_type(change_type: str):
    return change_records.get_changes_by_type(change_type, db_path=_db())


@app.get("/changes/pending")
def pending_changes():
    return change_records.get_pending_changes(db_path=_db())


@app.get("/changes/statistics")
def change_statistics() -> Dict[str, Any]:
    return change_records.get_change_statistics(db_path=_db())


@app.post("/changes/batch-approve")
def batch_approve(payload: BatchApprovalRequest) -> Dict[str, Any]:
    return {"results": change_records.batch_approve_changes(payload.record_ids, payload.approver, db_path=_db())}


@app.post("/changes/batch-reject")
def batch_reject(payload: BatchApprovalRequest) -> Dict[str, Any]:
    results = change_records.batch_reject_changes(
        payload.record_ids, payload.approver, payload.reason, db_path=_db()
    )
    return {"results": results}


@app.get("/changes/{record_id}")
def change_detail(record_id: str) -> Dict[str, Any]:
    try:
        return change_records.get_change_detail(record_id, db_path=_db())
    except ComplianceError as e:
        raise http_error(e)


@app.post("/changes/{record_id}/approve")
def approve_change(record_id: str, payload: ApprovalRequest):
    try:
        return change_records.approve_change(record_id, payload.approver, db_path=_db())
    except ComplianceError as e:
        raise http_error(e)


@app.post("/changes/{record_id}/reject")
def reject_change(record_id: str, payload: ApprovalRequest):
    try:
        return change_records.reject_change(record_id, payload.approver, payload.reason, db_path=_db())
    except ComplianceError as e:
        raise http_error(e)
