"""Transition table for the equipment lifecycle.

Everything here is pure: callers fetch the current state, ask the engine for
the next one and persist the result themselves.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from models.enums import EquipmentState, LifecycleAction, MovementKind
from services.errors import AlreadyBound, InvalidTransition


INITIAL_STATE = EquipmentState.AVAILABLE
TERMINAL_STATES = {EquipmentState.RETIRED}

# (current_state, action) -> next state
TRANSITIONS: dict[tuple[EquipmentState, LifecycleAction], EquipmentState] = {
    (EquipmentState.AVAILABLE, LifecycleAction.BIND_CONTRACT): EquipmentState.RENTED,
    (EquipmentState.RENTED, LifecycleAction.RECORD_ENTRY): EquipmentState.IN_INSPECTION,
    (EquipmentState.IN_INSPECTION, LifecycleAction.RELEASE_INSPECTION): EquipmentState.AVAILABLE,
    (EquipmentState.IN_INSPECTION, LifecycleAction.SEND_TO_SHOP): EquipmentState.IN_SHOP,
    (EquipmentState.IN_SHOP, LifecycleAction.COMPLETE_MAINTENANCE): EquipmentState.AVAILABLE,
    (EquipmentState.AVAILABLE, LifecycleAction.DISPATCH_TRANSFER): EquipmentState.IN_TRANSIT,
    (EquipmentState.IN_TRANSIT, LifecycleAction.RECEIVE_TRANSFER): EquipmentState.AVAILABLE,
    (EquipmentState.AVAILABLE, LifecycleAction.RETIRE): EquipmentState.RETIRED,
}

MOVEMENT_KINDS: dict[LifecycleAction, MovementKind] = {
    LifecycleAction.BIND_CONTRACT: MovementKind.CONTRACT_BIND,
    LifecycleAction.RECORD_ENTRY: MovementKind.ENTRY,
    LifecycleAction.RELEASE_INSPECTION: MovementKind.STATUS_CHANGE,
    LifecycleAction.SEND_TO_SHOP: MovementKind.MAINTENANCE,
    LifecycleAction.COMPLETE_MAINTENANCE: MovementKind.MAINTENANCE,
    LifecycleAction.DISPATCH_TRANSFER: MovementKind.TRANSFER,
    LifecycleAction.RECEIVE_TRANSFER: MovementKind.TRANSFER,
    LifecycleAction.RETIRE: MovementKind.STATUS_CHANGE,
    LifecycleAction.RENEW_CONTRACT: MovementKind.RENEWAL,
}


@dataclass(frozen=True)
class TransitionContext:
    equipment_id: Optional[int] = None
    has_active_contract: bool = False
    active_contract_id: Optional[int] = None
    has_damage: bool = False
    destination_warehouse_id: Optional[int] = None


def parse_state(raw) -> EquipmentState:
    if isinstance(raw, EquipmentState):
        return raw
    try:
        return EquipmentState(str(raw or "").strip())
    except ValueError:
        raise ValueError(f"Unrecognized equipment state: {raw!r}") from None


def parse_action(raw) -> LifecycleAction:
    if isinstance(raw, LifecycleAction):
        return raw
    try:
        return LifecycleAction(str(raw or "").strip())
    except ValueError:
        raise ValueError(f"Unrecognized lifecycle action: {raw!r}") from None


def apply_transition(
    current: EquipmentState,
    action: LifecycleAction,
    context: TransitionContext | None = None,
) -> EquipmentState:
    context = context or TransitionContext()
    target = TRANSITIONS.get((current, action))
    if target is None:
        raise InvalidTransition(current, action)

    if action == LifecycleAction.BIND_CONTRACT and context.has_active_contract:
        raise AlreadyBound(context.equipment_id, context.active_contract_id)
    if action == LifecycleAction.RECORD_ENTRY and not context.has_active_contract:
        raise InvalidTransition(
            current,
            action,
            target,
            reason="An entry can only be recorded for equipment with an active contract",
        )
    if action == LifecycleAction.DISPATCH_TRANSFER and context.destination_warehouse_id is None:
        raise InvalidTransition(
            current,
            action,
            target,
            reason="A transfer needs a destination warehouse",
        )
    if action == LifecycleAction.RELEASE_INSPECTION and context.has_damage:
        target = EquipmentState.IN_SHOP
    return target


def allowed_actions(current: EquipmentState) -> list[LifecycleAction]:
    return [action for (state, action) in TRANSITIONS if state == current]


def movement_kind_for(action: LifecycleAction) -> MovementKind:
    return MOVEMENT_KINDS.get(action, MovementKind.STATUS_CHANGE)


def replay_states(transitions: Iterable[tuple[EquipmentState, EquipmentState]]) -> EquipmentState:
    """Fold (prior, new) pairs from the ledger into the state they lead to.

    Raises InvalidTransition when an entry does not start where the previous
    one ended.
    """
    state = INITIAL_STATE
    for prior, new in transitions:
        prior = parse_state(prior)
        if prior != state:
            raise InvalidTransition(
                prior,
                "replay",
                new,
                reason=f"Ledger chain broken: expected {state.value}, entry starts at {prior.value}",
            )
        state = parse_state(new)
    return state
