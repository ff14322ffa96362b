import os
from datetime import datetime

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

load_dotenv()

from db.deps import get_fleet_db
from models.enums import ContractStatus, EquipmentState, ServiceType
from models.fleet_models import NotificationQueue, Warehouse
from schemas.contracts import (
    BindContractRequest,
    CollectionRequest,
    CollectionStatusRequest,
    RenewContractRequest,
    TerminateContractRequest,
    UsageHoursRequest,
)
from schemas.equipment import EquipmentUpsert
from schemas.lifecycle import TransitionRequest
from schemas.maintenance import MaintenanceRecordCreate
from schemas.warehouse import WarehouseUpsert
from services.audit_service import list_audit_entries, log_audit
from services.contract_binder import (
    ContractTerms,
    RenewalTerms,
    bind_contract,
    complete_collection,
    get_contract,
    list_collections,
    list_contracts,
    record_usage_hours,
    renew_contract,
    schedule_collection,
    serialize_collection,
    serialize_contract,
    serialize_renewal,
    start_collection,
    terminate_contract,
)
from services.equipment_registry import (
    find_active_contract,
    get_equipment,
    get_warehouse,
    list_equipment,
    register_equipment,
    serialize_equipment,
    update_equipment_metadata,
)
from services.errors import LifecycleError
from services.lifecycle_engine import INITIAL_STATE, allowed_actions
from services.lifecycle_service import commit_or_raise, transition
from services.maintenance_scheduler import (
    get_maintenance_status,
    list_maintenance,
    list_overdue,
    queue_overdue_notifications,
    record_maintenance,
    serialize_maintenance,
)
from services.movement_ledger import history, latest_before, serialize_movement, verify_ledger

app = FastAPI(title="Fleet Rental Lifecycle")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5173,http://localhost:5173",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials; force safe behavior.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _http_error(exc: LifecycleError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.message)


def _resolve_actor(x_actor: str | None) -> str | None:
    actor = (x_actor or "").strip()
    return actor or None


def _serialize_warehouse(warehouse: Warehouse) -> dict:
    return {
        "warehouseID": warehouse.WarehouseID,
        "warehouseName": warehouse.WarehouseName,
        "description": warehouse.Description,
        "address": warehouse.Address,
        "contactPhone": warehouse.ContactPhone,
        "isActive": warehouse.IsActive,
    }


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_fleet_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.get("/api/equipment")
def get_equipment_list(
    state: str | None = Query(None),
    db: Session = Depends(get_fleet_db),
):
    state_filter = None
    if state:
        try:
            state_filter = EquipmentState(state)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Unknown equipment state: {state}") from exc
    return [serialize_equipment(item) for item in list_equipment(db, state_filter)]


@app.get("/api/equipment/maintenance-alerts")
def get_maintenance_alerts(db: Session = Depends(get_fleet_db)):
    alerts = []
    for equipment, status in list_overdue(db):
        payload = status.to_dict()
        payload.update(
            {
                "equipmentID": equipment.EquipmentID,
                "assetNumber": equipment.AssetNumber,
                "description": equipment.Description,
                "state": equipment.State.value,
            }
        )
        alerts.append(payload)
    alerts.sort(key=lambda item: item["dueAt"] - item["currentHours"])
    return alerts


@app.get("/api/equipment/{equipment_id}")
def get_equipment_item(equipment_id: int, db: Session = Depends(get_fleet_db)):
    try:
        equipment = get_equipment(db, equipment_id)
    except LifecycleError as exc:
        raise _http_error(exc) from exc
    payload = serialize_equipment(equipment, find_active_contract(db, equipment_id))
    payload["allowedActions"] = [action.value for action in allowed_actions(equipment.State)]
    payload["auditLog"] = list_audit_entries(db, "Equipment", equipment_id)
    return payload


@app.post("/api/equipment")
def create_equipment(payload: EquipmentUpsert, db: Session = Depends(get_fleet_db)):
    fields = payload.model_dump(exclude_unset=True)
    warehouse_id = fields.pop("warehouseID", None)
    try:
        equipment = register_equipment(db, fields, warehouse_id)
    except LifecycleError as exc:
        raise _http_error(exc) from exc
    return serialize_equipment(equipment)


@app.put("/api/equipment/{equipment_id}")
def update_equipment(
    equipment_id: int,
    payload: EquipmentUpsert,
    db: Session = Depends(get_fleet_db),
    x_actor: str | None = Header(None, alias="X-Actor"),
):
    fields = payload.model_dump(exclude_unset=True)
    if "warehouseID" in fields:
        raise HTTPException(status_code=400, detail="Warehouse changes go through a transfer.")
    try:
        equipment = update_equipment_metadata(db, equipment_id, fields, actor=_resolve_actor(x_actor))
    except LifecycleError as exc:
        raise _http_error(exc) from exc
    return serialize_equipment(equipment)


@app.post("/api/equipment/{equipment_id}/transitions")
def post_transition(
    equipment_id: int,
    payload: TransitionRequest,
    db: Session = Depends(get_fleet_db),
    x_actor: str | None = Header(None, alias="X-Actor"),
):
    try:
        outcome = transition(
            db,
            equipment_id,
            payload.action,
            actor=_resolve_actor(x_actor),
            request_id=payload.requestID,
            has_damage=payload.hasDamage,
            destination_warehouse_id=payload.warehouseID,
            location_code=payload.locationCode,
            notes=payload.notes,
        )
    except LifecycleError as exc:
        raise _http_error(exc) from exc
    return {
        "equipment": serialize_equipment(outcome.equipment),
        "movement": serialize_movement(outcome.movement),
        "newState": outcome.new_state.value,
        "replayed": outcome.replayed,
    }


@app.get("/api/equipment/{equipment_id}/history")
def get_equipment_history(equipment_id: int, db: Session = Depends(get_fleet_db)):
    try:
        get_equipment(db, equipment_id)
    except LifecycleError as exc:
        raise _http_error(exc) from exc
    return [serialize_movement(movement) for movement in history(db, equipment_id)]


@app.get("/api/equipment/{equipment_id}/state-at")
def get_equipment_state_at(
    equipment_id: int,
    timestamp: datetime = Query(...),
    db: Session = Depends(get_fleet_db),
):
    # Stored timestamps are naive local time.
    if timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone().replace(tzinfo=None)
    try:
        equipment = get_equipment(db, equipment_id)
    except LifecycleError as exc:
        raise _http_error(exc) from exc
    movement = latest_before(db, equipment_id, timestamp)
    if movement is None:
        registered = equipment.CreatedDate is None or equipment.CreatedDate <= timestamp
        return {
            "equipmentID": equipment_id,
            "timestamp": timestamp,
            "state": INITIAL_STATE.value if registered else None,
            "movement": None,
        }
    return {
        "equipmentID": equipment_id,
        "timestamp": timestamp,
        "state": movement.NewState.value,
        "movement": serialize_movement(movement),
    }


@app.get("/api/equipment/{equipment_id}/ledger-check")
def get_ledger_check(equipment_id: int, db: Session = Depends(get_fleet_db)):
    try:
        equipment = get_equipment(db, equipment_id)
    except LifecycleError as exc:
        raise _http_error(exc) from exc
    return verify_ledger(db, equipment)


@app.get("/api/equipment/{equipment_id}/maintenance-status")
def get_equipment_maintenance_status(equipment_id: int, db: Session = Depends(get_fleet_db)):
    try:
        status = get_maintenance_status(db, equipment_id)
    except LifecycleError as exc:
        raise _http_error(exc) from exc
    payload = status.to_dict()
    payload["equipmentID"] = equipment_id
    return payload


@app.get("/api/equipment/{equipment_id}/maintenance")
def get_equipment_maintenance(equipment_id: int, db: Session = Depends(get_fleet_db)):
    try:
        records = list_maintenance(db, equipment_id)
    except LifecycleError as exc:
        raise _http_error(exc) from exc
    return [serialize_maintenance(record) for record in records]


@app.post("/api/equipment/{equipment_id}/maintenance")
def create_equipment_maintenance(
    equipment_id: int,
    payload: MaintenanceRecordCreate,
    db: Session = Depends(get_fleet_db),
    x_actor: str | None = Header(None, alias="X-Actor"),
):
    try:
        record = record_maintenance(
            db,
            equipment_id,
            service_type=ServiceType(payload.serviceType),
            hours_at_service=payload.hoursAtService,
            description=payload.description,
            service_date=payload.serviceDate,
            next_due_hours=payload.nextDueHours,
            technician=payload.technician,
            service_order=payload.serviceOrder,
            actor=_resolve_actor(x_actor),
        )
    except LifecycleError as exc:
        raise _http_error(exc) from exc
    return serialize_maintenance(record)


@app.get("/api/contracts")
def get_contracts(
    status: str | None = Query(None),
    equipment_id: int | None = Query(None, alias="equipmentID"),
    db: Session = Depends(get_fleet_db),
):
    status_filter = None
    if status:
        try:
            status_filter = ContractStatus(status)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Unknown contract status: {status}") from exc
    return [serialize_contract(contract) for contract in list_contracts(db, status_filter, equipment_id)]


@app.post("/api/contracts")
def create_contract(
    payload: BindContractRequest,
    db: Session = Depends(get_fleet_db),
    x_actor: str | None = Header(None, alias="X-Actor"),
):
    terms = ContractTerms(
        folio=payload.folio,
        client=payload.client,
        start_date=payload.startDate,
        days_contracted=payload.daysContracted,
        end_date=payload.endDate,
        amount=payload.amount,
        hours_worked=payload.hoursWorked,
        site=payload.site,
        address=payload.address,
        seller=payload.seller,
        notes=payload.notes,
    )
    try:
        contract = bind_contract(
            db,
            payload.equipmentID,
            terms,
            actor=_resolve_actor(x_actor),
            request_id=payload.requestID,
        )
    except LifecycleError as exc:
        raise _http_error(exc) from exc
    return serialize_contract(contract)


@app.get("/api/contracts/{contract_id}")
def get_contract_item(contract_id: int, db: Session = Depends(get_fleet_db)):
    try:
        contract = get_contract(db, contract_id)
    except LifecycleError as exc:
        raise _http_error(exc) from exc
    payload = serialize_contract(contract, include_history=True)
    payload["auditLog"] = list_audit_entries(db, "Contract", contract_id)
    return payload


@app.post("/api/contracts/{contract_id}/renew")
def post_contract_renewal(
    contract_id: int,
    payload: RenewContractRequest,
    db: Session = Depends(get_fleet_db),
    x_actor: str | None = Header(None, alias="X-Actor"),
):
    terms = RenewalTerms(
        start_date=payload.startDate,
        days_contracted=payload.daysContracted,
        end_date=payload.endDate,
        amount=payload.amount,
        hours_worked=payload.hoursWorked,
        invoice_folio=payload.invoiceFolio,
        comments=payload.comments,
    )
    try:
        renewal = renew_contract(db, contract_id, terms, actor=_resolve_actor(x_actor))
        contract = get_contract(db, contract_id)
    except LifecycleError as exc:
        raise _http_error(exc) from exc
    return {"renewal": serialize_renewal(renewal), "contract": serialize_contract(contract)}


@app.get("/api/contracts/{contract_id}/renewals")
def get_contract_renewals(contract_id: int, db: Session = Depends(get_fleet_db)):
    try:
        contract = get_contract(db, contract_id)
    except LifecycleError as exc:
        raise _http_error(exc) from exc
    return [serialize_renewal(renewal) for renewal in contract.Renewals]


@app.post("/api/contracts/{contract_id}/terminate")
def post_contract_termination(
    contract_id: int,
    payload: TerminateContractRequest,
    db: Session = Depends(get_fleet_db),
    x_actor: str | None = Header(None, alias="X-Actor"),
):
    try:
        contract = terminate_contract(
            db,
            contract_id,
            payload.reason,
            actor=_resolve_actor(x_actor),
            status=ContractStatus(payload.status),
        )
        equipment = get_equipment(db, contract.EquipmentID)
    except LifecycleError as exc:
        raise _http_error(exc) from exc
    return {"contract": serialize_contract(contract), "equipment": serialize_equipment(equipment)}


@app.put("/api/contracts/{contract_id}/hours")
def put_contract_hours(
    contract_id: int,
    payload: UsageHoursRequest,
    db: Session = Depends(get_fleet_db),
    x_actor: str | None = Header(None, alias="X-Actor"),
):
    try:
        contract = record_usage_hours(db, contract_id, payload.hoursWorked, actor=_resolve_actor(x_actor))
        status = get_maintenance_status(db, contract.EquipmentID)
    except LifecycleError as exc:
        raise _http_error(exc) from exc
    return {"contract": serialize_contract(contract), "maintenanceStatus": status.to_dict()}


@app.get("/api/contracts/{contract_id}/collections")
def get_contract_collections(contract_id: int, db: Session = Depends(get_fleet_db)):
    try:
        collections = list_collections(db, contract_id)
    except LifecycleError as exc:
        raise _http_error(exc) from exc
    return [serialize_collection(collection) for collection in collections]


@app.post("/api/contracts/{contract_id}/collections")
def post_contract_collection(
    contract_id: int,
    payload: CollectionRequest,
    db: Session = Depends(get_fleet_db),
    x_actor: str | None = Header(None, alias="X-Actor"),
):
    try:
        collection = schedule_collection(
            db,
            contract_id,
            scheduled_date=payload.scheduledDate,
            address=payload.address,
            notes=payload.notes,
            actor=_resolve_actor(x_actor),
        )
    except LifecycleError as exc:
        raise _http_error(exc) from exc
    return serialize_collection(collection)


@app.put("/api/contracts/{contract_id}/collections/{collection_id}")
def put_contract_collection_status(
    contract_id: int,
    collection_id: int,
    payload: CollectionStatusRequest,
    db: Session = Depends(get_fleet_db),
    x_actor: str | None = Header(None, alias="X-Actor"),
):
    actor = _resolve_actor(x_actor)
    try:
        if payload.status == "in_progress":
            collection = start_collection(db, contract_id, collection_id, notes=payload.notes, actor=actor)
        else:
            collection = complete_collection(
                db,
                contract_id,
                collection_id,
                collected_date=payload.collectedDate,
                notes=payload.notes,
                actor=actor,
            )
        equipment = get_equipment(db, collection.EquipmentID)
    except LifecycleError as exc:
        raise _http_error(exc) from exc
    return {"collection": serialize_collection(collection), "equipment": serialize_equipment(equipment)}


@app.get("/api/warehouse")
def get_warehouses(db: Session = Depends(get_fleet_db)):
    warehouses = db.execute(select(Warehouse).order_by(Warehouse.WarehouseName)).scalars().all()
    return [_serialize_warehouse(w) for w in warehouses]


@app.post("/api/warehouse")
def create_warehouse(
    payload: WarehouseUpsert,
    db: Session = Depends(get_fleet_db),
    x_actor: str | None = Header(None, alias="X-Actor"),
):
    name = (payload.warehouseName or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="warehouseName is required")

    warehouse = Warehouse(
        WarehouseName=name,
        Description=payload.description,
        Address=payload.address,
        ContactPhone=payload.contactPhone,
        IsActive=True if payload.isActive is None else payload.isActive,
        CreatedDate=datetime.now(),
    )
    db.add(warehouse)
    try:
        db.flush()
        log_audit(db, "Warehouse", warehouse.WarehouseID, "Create", warehouse.WarehouseName, actor=_resolve_actor(x_actor))
        commit_or_raise(db, "Warehouse", name)
    except SQLAlchemyError as exc:
        db.rollback()
        raise HTTPException(status_code=503, detail="Could not create warehouse") from exc
    except LifecycleError as exc:
        raise _http_error(exc) from exc
    return _serialize_warehouse(warehouse)


@app.put("/api/warehouse/{warehouse_id}")
def update_warehouse(
    warehouse_id: int,
    payload: WarehouseUpsert,
    db: Session = Depends(get_fleet_db),
    x_actor: str | None = Header(None, alias="X-Actor"),
):
    try:
        warehouse = get_warehouse(db, warehouse_id)
    except LifecycleError as exc:
        raise _http_error(exc) from exc

    for key, value in payload.model_dump(exclude_unset=True).items():
        if key == "warehouseName":
            if not (value or "").strip():
                raise HTTPException(status_code=400, detail="warehouseName cannot be empty")
            warehouse.WarehouseName = value.strip()
        elif key == "description":
            warehouse.Description = value
        elif key == "address":
            warehouse.Address = value
        elif key == "contactPhone":
            warehouse.ContactPhone = value
        elif key == "isActive":
            warehouse.IsActive = value

    log_audit(db, "Warehouse", warehouse.WarehouseID, "Update", "Warehouse updated", actor=_resolve_actor(x_actor))
    try:
        commit_or_raise(db, "Warehouse", warehouse_id)
    except LifecycleError as exc:
        raise _http_error(exc) from exc
    return _serialize_warehouse(warehouse)


@app.post("/api/notifications/run")
def run_notifications(db: Session = Depends(get_fleet_db)):
    try:
        created = queue_overdue_notifications(db)
    except LifecycleError as exc:
        raise _http_error(exc) from exc
    return {"created": created}


@app.get("/api/notifications/pending")
def get_pending_notifications(db: Session = Depends(get_fleet_db)):
    notifications = db.execute(
        select(NotificationQueue).where(NotificationQueue.SentAt.is_(None))
    ).scalars().all()
    return [
        {
            "notificationID": n.NotificationID,
            "equipmentID": n.EquipmentID,
            "type": n.NotificationType,
            "payload": n.Payload,
            "createdAt": n.CreatedAt,
        }
        for n in notifications
    ]
