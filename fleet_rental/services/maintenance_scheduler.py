from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.enums import EquipmentState, ServiceType
from models.fleet_models import Contract, Equipment, MaintenanceRecord, NotificationQueue
from services.equipment_registry import find_active_contract, get_equipment
from services.errors import InvalidTerms
from services.lifecycle_service import commit_or_raise


SERVICE_INTERVAL_HOURS = float(os.environ.get("SERVICE_INTERVAL_HOURS") or "300")
MAINTENANCE_LOGGER = logging.getLogger("fleet_rental.maintenance")
OVERDUE_NOTIFICATION = "MaintenanceOverdue"


@dataclass(frozen=True)
class MaintenanceStatus:
    current_hours: float
    last_service_hours: float
    hours_since_service: float
    due_at: float
    is_overdue: bool

    def to_dict(self) -> dict:
        return {
            "currentHours": self.current_hours,
            "lastServiceHours": self.last_service_hours,
            "hoursSinceService": self.hours_since_service,
            "dueAt": self.due_at,
            "isOverdue": self.is_overdue,
        }


def compute_maintenance_status(
    current_hours: float,
    last_service_hours: float,
    interval: float = SERVICE_INTERVAL_HOURS,
    next_due_hours: float | None = None,
) -> MaintenanceStatus:
    current = float(current_hours or 0)
    last = float(last_service_hours or 0)
    due_at = float(next_due_hours) if next_due_hours is not None else last + float(interval)
    return MaintenanceStatus(
        current_hours=current,
        last_service_hours=last,
        hours_since_service=current - last,
        due_at=due_at,
        is_overdue=current >= due_at,
    )


def latest_maintenance(db: Session, equipment_id: int) -> MaintenanceRecord | None:
    stmt = (
        select(MaintenanceRecord)
        .where(MaintenanceRecord.EquipmentID == equipment_id)
        .order_by(MaintenanceRecord.ServiceDate.desc(), MaintenanceRecord.MaintenanceID.desc())
        .limit(1)
    )
    return db.execute(stmt).scalars().first()


def _current_hours(db: Session, equipment_id: int) -> float:
    contract = find_active_contract(db, equipment_id)
    if contract is None:
        contract = db.execute(
            select(Contract)
            .where(Contract.EquipmentID == equipment_id)
            .order_by(Contract.UpdatedDate.desc(), Contract.ContractID.desc())
            .limit(1)
        ).scalars().first()
    return float(contract.HoursWorked or 0) if contract else 0.0


def get_maintenance_status(db: Session, equipment_id: int, interval: float | None = None) -> MaintenanceStatus:
    get_equipment(db, equipment_id)
    record = latest_maintenance(db, equipment_id)
    last_service_hours = float(record.HoursAtService) if record else 0.0
    next_due = float(record.NextDueHours) if record and record.NextDueHours is not None else None
    return compute_maintenance_status(
        _current_hours(db, equipment_id),
        last_service_hours,
        interval if interval is not None else SERVICE_INTERVAL_HOURS,
        next_due,
    )


def record_maintenance(
    db: Session,
    equipment_id: int,
    *,
    service_type: ServiceType,
    hours_at_service: float,
    description: str,
    service_date: date | None = None,
    next_due_hours: float | None = None,
    technician: str | None = None,
    service_order: str | None = None,
    actor: str | None = None,
) -> MaintenanceRecord:
    get_equipment(db, equipment_id)
    if hours_at_service < 0:
        raise InvalidTerms("Hours at service cannot be negative")
    if next_due_hours is not None and next_due_hours <= hours_at_service:
        raise InvalidTerms("Next service hours must be above the hours at service")
    if not (description or "").strip():
        raise InvalidTerms("A maintenance description is required")

    record = MaintenanceRecord(
        EquipmentID=equipment_id,
        ServiceDate=service_date or date.today(),
        ServiceType=service_type,
        HoursAtService=hours_at_service,
        NextDueHours=next_due_hours,
        Technician=technician,
        ServiceOrder=service_order,
        Description=description.strip(),
        Actor=actor,
        CreatedDate=datetime.now(),
    )
    db.add(record)
    commit_or_raise(db, "MaintenanceRecord", equipment_id)
    MAINTENANCE_LOGGER.info(
        "Maintenance recorded equipment_id=%s type=%s hours=%s next_due=%s",
        equipment_id,
        service_type.value,
        hours_at_service,
        next_due_hours,
    )
    return record


def list_maintenance(db: Session, equipment_id: int) -> list[MaintenanceRecord]:
    get_equipment(db, equipment_id)
    stmt = (
        select(MaintenanceRecord)
        .where(MaintenanceRecord.EquipmentID == equipment_id)
        .order_by(MaintenanceRecord.ServiceDate.desc(), MaintenanceRecord.MaintenanceID.desc())
    )
    return list(db.execute(stmt).scalars().all())


def list_overdue(db: Session, interval: float | None = None) -> list[tuple[Equipment, MaintenanceStatus]]:
    equipment_rows = db.execute(
        select(Equipment)
        .where(Equipment.State != EquipmentState.RETIRED)
        .order_by(Equipment.AssetNumber)
    ).scalars().all()
    overdue = []
    for equipment in equipment_rows:
        status = get_maintenance_status(db, equipment.EquipmentID, interval)
        if status.is_overdue:
            overdue.append((equipment, status))
    return overdue


def queue_overdue_notifications(db: Session, interval: float | None = None) -> int:
    created = 0
    for equipment, status in list_overdue(db, interval):
        pending = db.execute(
            select(NotificationQueue.NotificationID)
            .where(NotificationQueue.EquipmentID == equipment.EquipmentID)
            .where(NotificationQueue.NotificationType == OVERDUE_NOTIFICATION)
            .where(NotificationQueue.SentAt.is_(None))
        ).first()
        if pending:
            continue
        MAINTENANCE_LOGGER.warning(
            "Maintenance overdue equipment_id=%s asset=%s hours=%s due_at=%s",
            equipment.EquipmentID,
            equipment.AssetNumber,
            status.current_hours,
            status.due_at,
        )
        db.add(
            NotificationQueue(
                EquipmentID=equipment.EquipmentID,
                NotificationType=OVERDUE_NOTIFICATION,
                Payload=f"Equipment {equipment.AssetNumber} at {status.current_hours:g} h, service due at {status.due_at:g} h",
                CreatedAt=datetime.now(),
            )
        )
        created += 1
    commit_or_raise(db, "NotificationQueue", "overdue")
    return created


def serialize_maintenance(record: MaintenanceRecord) -> dict:
    return {
        "maintenanceID": record.MaintenanceID,
        "equipmentID": record.EquipmentID,
        "serviceDate": record.ServiceDate,
        "serviceType": record.ServiceType.value,
        "hoursAtService": record.HoursAtService,
        "nextDueHours": record.NextDueHours,
        "technician": record.Technician,
        "serviceOrder": record.ServiceOrder,
        "description": record.Description,
        "actor": record.Actor,
        "createdDate": record.CreatedDate,
    }
