from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Iterator

from sqlalchemy import event, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.enums import EquipmentState
from models.fleet_models import Equipment, Movement
from services.errors import InvalidTransition, StorageError
from services.lifecycle_engine import replay_states


LEDGER_LOGGER = logging.getLogger("fleet_rental.ledger")
HISTORY_BATCH_SIZE = 200


@event.listens_for(Movement, "before_update")
def _refuse_movement_update(mapper, connection, target):
    raise StorageError(f"Movement {target.MovementID} is append-only and cannot be updated")


@event.listens_for(Movement, "before_delete")
def _refuse_movement_delete(mapper, connection, target):
    raise StorageError(f"Movement {target.MovementID} is append-only and cannot be deleted")


def _ordered(stmt):
    return stmt.order_by(Movement.Timestamp, Movement.MovementID)


class MovementHistory:
    """Lazy view over one equipment's ledger.

    Each iteration runs a fresh query, so the sequence can be walked again
    after new movements have been appended.
    """

    def __init__(self, db: Session, equipment_id: int, batch_size: int = HISTORY_BATCH_SIZE):
        self._db = db
        self.equipment_id = equipment_id
        self.batch_size = batch_size

    def __iter__(self) -> Iterator[Movement]:
        stmt = _ordered(select(Movement).where(Movement.EquipmentID == self.equipment_id))
        result = self._db.execute(stmt.execution_options(yield_per=self.batch_size))
        yield from result.scalars()


def build_movement(
    equipment: Equipment,
    *,
    kind,
    action,
    prior_state: EquipmentState,
    new_state: EquipmentState,
    actor: str | None = None,
    contract_id: int | None = None,
    from_warehouse_id: int | None = None,
    to_warehouse_id: int | None = None,
    request_id: str | None = None,
    context: dict | None = None,
    timestamp: datetime | None = None,
) -> Movement:
    return Movement(
        EquipmentID=equipment.EquipmentID,
        Kind=kind,
        Action=getattr(action, "value", action),
        PriorState=prior_state,
        NewState=new_state,
        Actor=actor,
        Timestamp=timestamp or datetime.now(),
        ContractID=contract_id,
        FromWarehouseID=from_warehouse_id,
        ToWarehouseID=to_warehouse_id,
        RequestID=request_id,
        Context=json.dumps(context, ensure_ascii=True, default=str) if context else None,
    )


def append_movement(db: Session, movement: Movement) -> int:
    """Write one ledger entry and flush it so the caller can mutate the registry."""
    try:
        db.add(movement)
        db.flush()
    except SQLAlchemyError as exc:
        LEDGER_LOGGER.warning(
            "Ledger append failed equipment_id=%s kind=%s error=%s",
            movement.EquipmentID,
            getattr(movement.Kind, "value", movement.Kind),
            exc,
        )
        raise StorageError(f"Could not append movement for equipment {movement.EquipmentID}") from exc
    return movement.MovementID


def history(db: Session, equipment_id: int) -> MovementHistory:
    return MovementHistory(db, equipment_id)


def latest_before(db: Session, equipment_id: int, timestamp: datetime) -> Movement | None:
    stmt = (
        select(Movement)
        .where(Movement.EquipmentID == equipment_id)
        .where(Movement.Timestamp <= timestamp)
        .order_by(Movement.Timestamp.desc(), Movement.MovementID.desc())
        .limit(1)
    )
    return db.execute(stmt).scalars().first()


def find_by_request(db: Session, equipment_id: int, request_id: str) -> Movement | None:
    stmt = (
        select(Movement)
        .where(Movement.EquipmentID == equipment_id)
        .where(Movement.RequestID == request_id)
    )
    return db.execute(stmt).scalars().first()


def count_movements(db: Session, equipment_id: int) -> int:
    return sum(1 for _ in MovementHistory(db, equipment_id))


def parse_context(raw: str | None) -> dict:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (ValueError, json.JSONDecodeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def verify_ledger(db: Session, equipment: Equipment) -> dict:
    entries = MovementHistory(db, equipment.EquipmentID)
    pairs = ((movement.PriorState, movement.NewState) for movement in entries)
    registry_state = equipment.State
    try:
        replayed = replay_states(pairs)
    except InvalidTransition as exc:
        return {
            "equipmentID": equipment.EquipmentID,
            "consistent": False,
            "registryState": registry_state.value,
            "replayedState": None,
            "detail": exc.message,
        }
    consistent = replayed == registry_state
    if not consistent:
        LEDGER_LOGGER.warning(
            "Ledger divergence equipment_id=%s registry=%s replayed=%s",
            equipment.EquipmentID,
            registry_state.value,
            replayed.value,
        )
    return {
        "equipmentID": equipment.EquipmentID,
        "consistent": consistent,
        "registryState": registry_state.value,
        "replayedState": replayed.value,
        "detail": "ok" if consistent else "registry state does not match ledger replay",
    }


def serialize_movement(movement: Movement) -> dict:
    return {
        "movementID": movement.MovementID,
        "equipmentID": movement.EquipmentID,
        "kind": movement.Kind.value,
        "action": movement.Action,
        "priorState": movement.PriorState.value,
        "newState": movement.NewState.value,
        "actor": movement.Actor,
        "timestamp": movement.Timestamp,
        "contractID": movement.ContractID,
        "fromWarehouseID": movement.FromWarehouseID,
        "toWarehouseID": movement.ToWarehouseID,
        "requestID": movement.RequestID,
        "context": parse_context(movement.Context),
    }
