from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from models.enums import ContractStatus, EquipmentState
from models.fleet_models import Contract, Equipment, Warehouse
from services.audit_service import log_audit
from services.errors import InvalidTerms, NotFound, StorageError


EDITABLE_FIELDS = {
    "assetNumber": "AssetNumber",
    "description": "Description",
    "brand": "Brand",
    "model": "Model",
    "serialNumber": "SerialNumber",
    "equipmentClass": "EquipmentClass",
    "category": "Category",
    "year": "Year",
    "locationCode": "LocationCode",
}


def _parse_seq(asset_number: str) -> Optional[int]:
    parts = asset_number.split("-")
    if len(parts) != 2:
        return None
    try:
        return int(parts[1])
    except ValueError:
        return None


def generate_next_asset_number(db: Session) -> str:
    prefix = f"EQ{date.today().year}-"
    existing = db.execute(
        select(Equipment.AssetNumber).where(Equipment.AssetNumber.startswith(prefix))
    ).scalars().all()

    max_seq = 0
    for asset_number in existing:
        if not asset_number:
            continue
        seq = _parse_seq(asset_number)
        if seq and seq > max_seq:
            max_seq = seq
    return f"{prefix}{max_seq + 1:04d}"


def get_equipment(db: Session, equipment_id: int) -> Equipment:
    equipment = db.get(Equipment, equipment_id)
    if not equipment:
        raise NotFound("Equipment", equipment_id)
    return equipment


def get_warehouse(db: Session, warehouse_id: int) -> Warehouse:
    warehouse = db.get(Warehouse, warehouse_id)
    if not warehouse:
        raise NotFound("Warehouse", warehouse_id)
    return warehouse


def find_active_contract(db: Session, equipment_id: int) -> Contract | None:
    stmt = (
        select(Contract)
        .where(Contract.EquipmentID == equipment_id)
        .where(Contract.Status == ContractStatus.ACTIVE)
    )
    return db.execute(stmt).scalars().first()


def list_equipment(db: Session, state: EquipmentState | None = None) -> list[Equipment]:
    stmt = select(Equipment).order_by(Equipment.AssetNumber)
    if state is not None:
        stmt = stmt.where(Equipment.State == state)
    return list(db.execute(stmt).scalars().all())


def register_equipment(db: Session, fields: dict, warehouse_id: int | None = None) -> Equipment:
    """Intake a new unit. It always starts out available."""
    equipment = Equipment()
    for field, value in fields.items():
        column = EDITABLE_FIELDS.get(field)
        if column:
            setattr(equipment, column, value)
    if not (equipment.Description or "").strip():
        raise InvalidTerms("Equipment description is required")
    if not equipment.AssetNumber:
        equipment.AssetNumber = generate_next_asset_number(db)
    if warehouse_id is not None:
        get_warehouse(db, warehouse_id)
        equipment.WarehouseID = warehouse_id

    equipment.State = EquipmentState.AVAILABLE
    equipment.CreatedDate = datetime.now()
    equipment.UpdatedDate = datetime.now()

    db.add(equipment)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise InvalidTerms(f"Asset number {equipment.AssetNumber} is already registered") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise StorageError("Could not register equipment") from exc
    db.refresh(equipment)
    return equipment


def update_equipment_metadata(db: Session, equipment_id: int, fields: dict, actor: str | None = None) -> Equipment:
    equipment = get_equipment(db, equipment_id)
    changes = []
    for field, value in fields.items():
        column = EDITABLE_FIELDS.get(field)
        if not column:
            continue
        previous = getattr(equipment, column)
        if previous == value:
            continue
        setattr(equipment, column, value)
        changes.append(f"{field}: {previous} -> {value}")
    if not changes:
        return equipment
    equipment.UpdatedDate = datetime.now()
    log_audit(db, "Equipment", equipment_id, "Update", "; ".join(changes), actor=actor)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise InvalidTerms(f"Asset number {equipment.AssetNumber} is already registered") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise StorageError(f"Could not update equipment {equipment_id}") from exc
    db.refresh(equipment)
    return equipment


def apply_registry_state(
    equipment: Equipment,
    new_state: EquipmentState,
    warehouse_id: int | None = None,
    location_code: str | None = None,
) -> None:
    equipment.State = new_state
    if warehouse_id is not None:
        equipment.WarehouseID = warehouse_id
    if location_code is not None:
        equipment.LocationCode = location_code or None
    equipment.UpdatedDate = datetime.now()


def serialize_equipment(equipment: Equipment, active_contract: Contract | None = None) -> dict:
    payload = {
        "equipmentID": equipment.EquipmentID,
        "assetNumber": equipment.AssetNumber,
        "description": equipment.Description,
        "brand": equipment.Brand,
        "model": equipment.Model,
        "serialNumber": equipment.SerialNumber,
        "equipmentClass": equipment.EquipmentClass,
        "category": equipment.Category,
        "year": equipment.Year,
        "state": equipment.State.value,
        "isRetired": equipment.State == EquipmentState.RETIRED,
        "warehouseID": equipment.WarehouseID,
        "locationCode": equipment.LocationCode,
        "version": equipment.Version,
        "createdDate": equipment.CreatedDate,
        "updatedDate": equipment.UpdatedDate,
    }
    if active_contract is not None:
        payload["activeContract"] = {
            "contractID": active_contract.ContractID,
            "folio": active_contract.Folio,
            "client": active_contract.Client,
        }
    return payload
