"""
Domain entities for the compliance engine.

An :class:`Institution` owns its qualifications, facilities and change
records.  Children carry a non-nullable ``institution_id`` back-reference
and are stored in id-keyed lists on the owner.  The lifecycle logic that
depends only on an entity's own fields lives here as methods:

* :class:`Qualification` computes its temporal state against a
  :class:`~temporal.TemporalWindow` and handles renewal and status changes.
* :class:`Facility` knows its safety equipment and inspection schedule;
  the area and density rules live in ``rule_engine.py``.
* :class:`ChangeRecord` is a two-outcome state machine.  Leaving
  ``pending`` is allowed exactly once; a second transition raises
  :class:`~errors.ConflictError` and leaves the record untouched.

Every method that depends on the current instant takes ``now``.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Set, Union
from uuid import uuid4

import pydantic
from pydantic import BaseModel, ConfigDict, Field, model_validator

from errors import ConflictError, ValidationError
from temporal import LocalDatetime, TemporalWindow, current_time, to_local_naive

# Institution status
INSTITUTION_PENDING_REVIEW = "pending-review"
INSTITUTION_OPERATING = "operating"
INSTITUTION_SUSPENDED = "suspended"
INSTITUTION_DEREGISTERED = "deregistered"
InstitutionStatus = Literal["pending-review", "operating", "suspended", "deregistered"]

# Qualification status (operator-set, independent of the computed temporal state)
QUALIFICATION_VALID = "valid"
QUALIFICATION_EXPIRED = "expired"
QUALIFICATION_REVOKED = "revoked"
QUALIFICATION_SUSPENDED = "suspended"
QualificationStatus = Literal["valid", "expired", "revoked", "suspended"]

# Facility types and status
CLASSROOM = "classroom"
TRAINING_AREA = "training-area"
OFFICE = "office"
MEETING_ROOM = "meeting-room"
LIBRARY = "library"
OTHER_FACILITY = "other"
FACILITY_TYPES = (CLASSROOM, TRAINING_AREA, OFFICE, MEETING_ROOM, LIBRARY, OTHER_FACILITY)
FacilityType = Literal["classroom", "training-area", "office", "meeting-room", "library", "other"]

FACILITY_IN_USE = "in-use"
FACILITY_UNDER_MAINTENANCE = "under-maintenance"
FACILITY_DECOMMISSIONED = "decommissioned"
FACILITY_PENDING_INSPECTION = "pending-inspection"
FacilityStatus = Literal["in-use", "under-maintenance", "decommissioned", "pending-inspection"]

# Change approval status
APPROVAL_PENDING = "pending"
APPROVAL_APPROVED = "approved"
APPROVAL_REJECTED = "rejected"
ApprovalStatus = Literal["pending", "approved", "rejected"]


def new_id() -> str:
    return str(uuid4())


def parse_entity(model: type, data: Dict[str, Any]):
    """Build ``model`` from ``data``, reporting field problems as :class:`~errors.ValidationError`."""
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as e:
        raise ValidationError.from_pydantic(e) from e


def revise(entity: BaseModel, changes: Dict[str, Any]):
    """Return a re-validated copy of ``entity`` with ``changes`` applied."""
    return parse_entity(type(entity), {**entity.model_dump(), **changes})


class Qualification(BaseModel):
    id: str = Field(default_factory=new_id)
    institution_id: str
    qualification_type: str
    qualification_name: str
    certificate_number: str
    issuing_authority: str
    issue_date: LocalDatetime
    valid_from: LocalDatetime
    valid_to: LocalDatetime
    scope: List[str] = Field(default_factory=list)
    status: QualificationStatus = QUALIFICATION_VALID
    attachments: List[Any] = Field(default_factory=list)
    created_at: LocalDatetime = Field(default_factory=current_time)
    updated_at: LocalDatetime = Field(default_factory=current_time)

    @model_validator(mode="after")
    def _check_window(self) -> "Qualification":
        if self.valid_from >= self.valid_to:
            raise ValueError("valid_from must be earlier than valid_to")
        return self

    @property
    def window(self) -> TemporalWindow:
        return TemporalWindow(valid_from=self.valid_from, valid_to=self.valid_to)

    def is_valid(self, now: datetime) -> bool:
        return self.status == QUALIFICATION_VALID and self.window.contains(now)

    def is_expiring_soon(self, now: datetime, days: int = 30) -> bool:
        return self.is_valid(now) and self.window.ends_within(now, days)

    def remaining_days(self, now: datetime) -> int:
        return self.window.remaining_days(now)

    def covers_training_type(self, training_type: str) -> bool:
        return training_type in self.scope

    def renew(
        self,
        new_valid_to: datetime,
        now: datetime,
        new_certificate_number: Optional[str] = None,
    ) -> "Qualification":
        """Extend the window and force the status back to ``valid``.

        Certificate-number uniqueness is a cross-record check and belongs to
        the caller; it must run before this method.
        """
        new_valid_to, now = to_local_naive(new_valid_to), to_local_naive(now)
        if new_valid_to <= now:
            raise ValidationError("new valid_to must be in the future")
        if new_valid_to <= self.valid_from:
            raise ValidationError("new valid_to must be later than valid_from")
        self.valid_to = new_valid_to
        if new_certificate_number is not None:
            self.certificate_number = new_certificate_number
        self.status = QUALIFICATION_VALID
        self.updated_at = now
        return self

    def revoke(self, now: Optional[datetime] = None) -> "Qualification":
        self.status = QUALIFICATION_REVOKED
        self.updated_at = now or current_time()
        return self

    def suspend(self, now: Optional[datetime] = None) -> "Qualification":
        self.status = QUALIFICATION_SUSPENDED
        self.updated_at = now or current_time()
        return self

    def restore(self, now: datetime) -> "Qualification":
        if self.window.has_ended(now):
            raise ValidationError("qualification has expired and cannot be restored")
        self.status = QUALIFICATION_VALID
        self.updated_at = now
        return self


class SafetyItem(BaseModel):
    """Structured safety-equipment entry; anything beyond ``name`` is kept as-is."""

    model_config = ConfigDict(extra="allow")

    name: str


# A safety-equipment entry is either a bare label or a structured item.
SafetyEquipment = Union[str, SafetyItem]


def equipment_name(item: SafetyEquipment) -> str:
    if isinstance(item, SafetyItem):
        return item.name
    return item


def as_safety_equipment(item: Any) -> SafetyEquipment:
    if isinstance(item, (str, SafetyItem)):
        return item
    if isinstance(item, dict):
        return parse_entity(SafetyItem, item)
    raise ValidationError(f"unsupported safety equipment entry: {item!r}")


class Facility(BaseModel):
    id: str = Field(default_factory=new_id)
    institution_id: str
    facility_type: FacilityType
    facility_name: str
    location: str
    area: float = Field(gt=0)
    capacity: int = Field(gt=0)
    equipment: List[Any] = Field(default_factory=list)
    safety_equipment: List[SafetyEquipment] = Field(default_factory=list)
    status: FacilityStatus = FACILITY_IN_USE
    last_inspection_date: Optional[LocalDatetime] = None
    next_inspection_date: Optional[LocalDatetime] = None
    created_at: LocalDatetime = Field(default_factory=current_time)
    updated_at: LocalDatetime = Field(default_factory=current_time)

    def safety_equipment_names(self) -> Set[str]:
        return {equipment_name(item) for item in self.safety_equipment}

    def has_safety_equipment(self, name: str) -> bool:
        return name in self.safety_equipment_names()

    def needs_inspection(self, now: datetime) -> bool:
        return self.next_inspection_date is None or self.next_inspection_date <= now

    def schedule_inspection(self, inspection_date: datetime, now: Optional[datetime] = None) -> "Facility":
        self.next_inspection_date = to_local_naive(inspection_date)
        self.updated_at = now or current_time()
        return self

    def complete_inspection(
        self,
        inspection_date: datetime,
        next_inspection_date: datetime,
        now: Optional[datetime] = None,
    ) -> "Facility":
        inspection_date, next_inspection_date = to_local_naive(inspection_date), to_local_naive(next_inspection_date)
        if next_inspection_date <= inspection_date:
            raise ValidationError("next inspection date must be later than the inspection date")
        self.last_inspection_date = inspection_date
        self.next_inspection_date = next_inspection_date
        self.updated_at = now or current_time()
        return self

    def add_equipment(self, item: Any, now: Optional[datetime] = None) -> "Facility":
        self.equipment.append(item)
        self.updated_at = now or current_time()
        return self

    def add_safety_equipment(self, item: Any, now: Optional[datetime] = None) -> "Facility":
        self.safety_equipment.append(as_safety_equipment(item))
        self.updated_at = now or current_time()
        return self


class ChangeRecord(BaseModel):
    id: str = Field(default_factory=new_id)
    institution_id: str
    change_type: str
    change_details: Dict[str, Any]
    before_data: Dict[str, Any]
    after_data: Dict[str, Any]
    change_reason: str
    change_date: LocalDatetime = Field(default_factory=current_time)
    operator: str
    approval_status: ApprovalStatus = APPROVAL_PENDING
    approver: Optional[str] = None
    approved_at: Optional[LocalDatetime] = None
    created_at: LocalDatetime = Field(default_factory=current_time)

    @model_validator(mode="after")
    def _check_approval_fields(self) -> "ChangeRecord":
        decided = self.approver is not None or self.approved_at is not None
        complete = self.approver is not None and self.approved_at is not None
        if self.approval_status == APPROVAL_PENDING and decided:
            raise ValueError("a pending change record cannot carry an approver or approval time")
        if self.approval_status != APPROVAL_PENDING and not complete:
            raise ValueError("a processed change record needs an approver and approval time")
        return self

    @property
    def is_pending(self) -> bool:
        return self.approval_status == APPROVAL_PENDING

    def approve(self, approver: str, now: Optional[datetime] = None) -> "ChangeRecord":
        return self._decide(APPROVAL_APPROVED, approver, now)

    def reject(self, approver: str, now: Optional[datetime] = None) -> "ChangeRecord":
        return self._decide(APPROVAL_REJECTED, approver, now)

    def _decide(self, outcome: str, approver: str, now: Optional[datetime]) -> "ChangeRecord":
        if not self.is_pending:
            raise ConflictError(f"change record {self.id} already processed ({self.approval_status})")
        if not approver or not approver.strip():
            raise ValidationError("approver is required")
        # status, approver and timestamp change together
        self.approval_status, self.approver, self.approved_at = outcome, approver, to_local_naive(now) or current_time()
        return self


# Fields copied into change-record snapshots when basic data is edited
BASIC_FIELDS = (
    "name",
    "code",
    "institution_type",
    "legal_representative",
    "contact_person",
    "contact_phone",
    "contact_email",
    "address",
    "business_scope",
)


class Institution(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    code: str
    institution_type: str
    legal_representative: str
    contact_person: str = ""
    contact_phone: str
    contact_email: str = ""
    address: str = ""
    business_scope: str = ""
    established_on: LocalDatetime
    registration_number: str
    status: InstitutionStatus = INSTITUTION_PENDING_REVIEW
    organization_structure: Dict[str, Any] = Field(default_factory=dict)
    created_at: LocalDatetime = Field(default_factory=current_time)
    updated_at: LocalDatetime = Field(default_factory=current_time)

    qualifications: List[Qualification] = Field(default_factory=list)
    facilities: List[Facility] = Field(default_factory=list)
    change_records: List[ChangeRecord] = Field(default_factory=list)

    def basic_snapshot(self) -> Dict[str, Any]:
        return {field: getattr(self, field) for field in BASIC_FIELDS}

    def _adopt(self, children: list, child: Any, kind: str) -> None:
        if child.institution_id != self.id:
            raise ValidationError(f"{kind} {child.id} belongs to another institution")
        if any(existing.id == child.id for existing in children):
            raise ConflictError(f"{kind} {child.id} already attached to institution {self.id}")
        children.append(child)

    def add_qualification(self, qualification: Qualification) -> "Institution":
        self._adopt(self.qualifications, qualification, "qualification")
        return self

    def remove_qualification(self, qualification_id: str) -> "Institution":
        self.qualifications = [q for q in self.qualifications if q.id != qualification_id]
        return self

    def add_facility(self, facility: Facility) -> "Institution":
        self._adopt(self.facilities, facility, "facility")
        return self

    def remove_facility(self, facility_id: str) -> "Institution":
        self.facilities = [f for f in self.facilities if f.id != facility_id]
        return self

    def add_change_record(self, record: ChangeRecord) -> "Institution":
        self._adopt(self.change_records, record, "change record")
        return self

    def remove_change_record(self, record_id: str) -> "Institution":
        self.change_records = [r for r in self.change_records if r.id != record_id]
        return self

    def valid_qualifications(self, now: datetime) -> List[Qualification]:
        return [q for q in self.qualifications if q.is_valid(now)]

    def expiring_qualifications(self, now: datetime, days: int = 30) -> List[Qualification]:
        return [q for q in self.qualifications if q.is_expiring_soon(now, days)]

    def total_facility_area(self) -> float:
        return sum(f.area for f in self.facilities)
