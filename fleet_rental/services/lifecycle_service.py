from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from models.enums import ContractStatus, EquipmentState, LifecycleAction, MovementKind
from models.fleet_models import Contract, Equipment, Movement
from services.equipment_registry import (
    apply_registry_state,
    find_active_contract,
    get_equipment,
    get_warehouse,
)
from services.errors import (
    ConcurrentModification,
    InvalidTransition,
    LifecycleError,
    RequestConflict,
    StorageError,
)
from services.lifecycle_engine import (
    TransitionContext,
    apply_transition,
    movement_kind_for,
    parse_action,
)
from services.movement_ledger import append_movement, build_movement, find_by_request, latest_before


LIFECYCLE_LOGGER = logging.getLogger("fleet_rental.lifecycle")
_LOCKS_GUARD = threading.Lock()
_EQUIPMENT_LOCKS: dict[int, threading.Lock] = {}


@dataclass
class TransitionOutcome:
    equipment: Equipment
    movement: Movement
    replayed: bool = False

    @property
    def new_state(self) -> EquipmentState:
        return self.movement.NewState


@contextmanager
def equipment_lock(equipment_id: int):
    """Serialize writers for one equipment id inside this process.

    Writers in other processes are caught by the Version column instead.
    """
    with _LOCKS_GUARD:
        lock = _EQUIPMENT_LOCKS.setdefault(int(equipment_id), threading.Lock())
    with lock:
        yield


def build_context(
    db: Session,
    equipment: Equipment,
    has_damage: bool = False,
    destination_warehouse_id: int | None = None,
) -> TransitionContext:
    active = find_active_contract(db, equipment.EquipmentID)
    return TransitionContext(
        equipment_id=equipment.EquipmentID,
        has_active_contract=active is not None,
        active_contract_id=active.ContractID if active else None,
        has_damage=has_damage,
        destination_warehouse_id=destination_warehouse_id,
    )


def close_contract(contract: Contract, status: ContractStatus, reason: str | None = None) -> None:
    contract.Status = status
    contract.ClosedAt = datetime.now()
    if reason:
        contract.TerminationReason = reason
    contract.UpdatedDate = datetime.now()


def _resolve_arrival_warehouse(db: Session, equipment: Equipment, requested: int | None) -> int | None:
    if requested is not None:
        return requested
    dispatch = latest_before(db, equipment.EquipmentID, datetime.now())
    if dispatch and dispatch.Kind == MovementKind.TRANSFER and dispatch.NewState == EquipmentState.IN_TRANSIT:
        return dispatch.ToWarehouseID
    return None


def stage_transition(
    db: Session,
    equipment: Equipment,
    action: LifecycleAction,
    context: TransitionContext,
    *,
    actor: str | None = None,
    request_id: str | None = None,
    contract_id: int | None = None,
    location_code: str | None = None,
    notes: str | None = None,
) -> Movement:
    """Validate, write the ledger entry, then update the registry.

    Nothing is committed here; the caller owns the transaction so the ledger
    entry and the registry change land together or not at all.
    """
    prior_state = equipment.State
    new_state = apply_transition(prior_state, action, context)

    from_warehouse_id = None
    to_warehouse_id = None
    if action == LifecycleAction.DISPATCH_TRANSFER:
        get_warehouse(db, context.destination_warehouse_id)
        from_warehouse_id = equipment.WarehouseID
        to_warehouse_id = context.destination_warehouse_id
    elif action == LifecycleAction.RECEIVE_TRANSFER:
        to_warehouse_id = _resolve_arrival_warehouse(db, equipment, context.destination_warehouse_id)
        if to_warehouse_id is not None:
            get_warehouse(db, to_warehouse_id)
        from_warehouse_id = equipment.WarehouseID

    movement_context = {}
    if notes:
        movement_context["notes"] = notes
    if action == LifecycleAction.RELEASE_INSPECTION:
        movement_context["hasDamage"] = bool(context.has_damage)
    if location_code is not None:
        movement_context["previousLocation"] = equipment.LocationCode
        movement_context["newLocation"] = location_code

    movement = build_movement(
        equipment,
        kind=movement_kind_for(action),
        action=action,
        prior_state=prior_state,
        new_state=new_state,
        actor=actor,
        contract_id=contract_id if contract_id is not None else context.active_contract_id,
        from_warehouse_id=from_warehouse_id,
        to_warehouse_id=to_warehouse_id,
        request_id=request_id,
        context=movement_context,
    )
    # Ledger first: if the append fails the registry is never touched.
    append_movement(db, movement)
    apply_registry_state(
        equipment,
        new_state,
        warehouse_id=to_warehouse_id if action == LifecycleAction.RECEIVE_TRANSFER else None,
        location_code=location_code,
    )
    return movement


def commit_or_raise(db: Session, entity: str, identifier) -> None:
    try:
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        raise ConcurrentModification(entity, identifier) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise StorageError(f"Could not save changes for {entity} {identifier}") from exc


def transition(
    db: Session,
    equipment_id: int,
    action,
    *,
    actor: str | None = None,
    request_id: str | None = None,
    has_damage: bool = False,
    destination_warehouse_id: int | None = None,
    location_code: str | None = None,
    notes: str | None = None,
) -> TransitionOutcome:
    with equipment_lock(equipment_id):
        equipment = get_equipment(db, equipment_id)
        try:
            action = parse_action(action)
        except ValueError as exc:
            raise InvalidTransition(equipment.State, action, reason=str(exc)) from exc
        if action == LifecycleAction.BIND_CONTRACT:
            raise InvalidTransition(
                equipment.State,
                action,
                reason="Equipment is rented by binding a contract, not by a bare transition",
            )

        if request_id:
            recorded = find_by_request(db, equipment_id, request_id)
            if recorded is not None:
                if recorded.Action != action.value:
                    raise RequestConflict(request_id, recorded.Action)
                LIFECYCLE_LOGGER.info(
                    "Transition replayed equipment_id=%s action=%s request_id=%s",
                    equipment_id,
                    action.value,
                    request_id,
                )
                return TransitionOutcome(equipment=equipment, movement=recorded, replayed=True)

        prior_state = equipment.State
        try:
            context = build_context(db, equipment, has_damage, destination_warehouse_id)
            active_contract = (
                db.get(Contract, context.active_contract_id)
                if action == LifecycleAction.RECORD_ENTRY and context.active_contract_id
                else None
            )
            movement = stage_transition(
                db,
                equipment,
                action,
                context,
                actor=actor,
                request_id=request_id,
                location_code=location_code,
                notes=notes,
            )
            if active_contract is not None:
                close_contract(active_contract, ContractStatus.FINISHED)
            commit_or_raise(db, "Equipment", equipment_id)
        except LifecycleError as exc:
            db.rollback()
            LIFECYCLE_LOGGER.warning(
                "Transition rejected equipment_id=%s action=%s state=%s reason=%s",
                equipment_id,
                action.value,
                prior_state.value,
                exc.message,
            )
            raise

        LIFECYCLE_LOGGER.info(
            "Transition applied equipment_id=%s action=%s from=%s to=%s movement_id=%s actor=%s",
            equipment_id,
            action.value,
            prior_state.value,
            movement.NewState.value,
            movement.MovementID,
            actor,
        )
        return TransitionOutcome(equipment=equipment, movement=movement)
