import os
import sys
import unittest
from pathlib import Path


os.environ.setdefault("FLEET_DB_URL", "sqlite+pysqlite:///:memory:")

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from models.enums import EquipmentState, LifecycleAction, MovementKind
from services.errors import AlreadyBound, InvalidTransition
from services.lifecycle_engine import (
    TRANSITIONS,
    TransitionContext,
    allowed_actions,
    apply_transition,
    movement_kind_for,
    parse_action,
    parse_state,
    replay_states,
)


class LifecycleEngineTests(unittest.TestCase):
    def test_bind_moves_available_equipment_to_rented(self):
        target = apply_transition(EquipmentState.AVAILABLE, LifecycleAction.BIND_CONTRACT, TransitionContext())
        self.assertEqual(target, EquipmentState.RENTED)

    def test_bind_with_active_contract_is_already_bound(self):
        context = TransitionContext(equipment_id=4, has_active_contract=True, active_contract_id=9)
        with self.assertRaises(AlreadyBound) as raised:
            apply_transition(EquipmentState.AVAILABLE, LifecycleAction.BIND_CONTRACT, context)
        self.assertEqual(raised.exception.contract_id, 9)

    def test_entry_requires_active_contract(self):
        with self.assertRaises(InvalidTransition):
            apply_transition(EquipmentState.RENTED, LifecycleAction.RECORD_ENTRY, TransitionContext())
        target = apply_transition(
            EquipmentState.RENTED,
            LifecycleAction.RECORD_ENTRY,
            TransitionContext(has_active_contract=True, active_contract_id=1),
        )
        self.assertEqual(target, EquipmentState.IN_INSPECTION)

    def test_release_with_damage_goes_to_shop(self):
        clean = apply_transition(EquipmentState.IN_INSPECTION, LifecycleAction.RELEASE_INSPECTION, TransitionContext())
        damaged = apply_transition(
            EquipmentState.IN_INSPECTION,
            LifecycleAction.RELEASE_INSPECTION,
            TransitionContext(has_damage=True),
        )
        self.assertEqual(clean, EquipmentState.AVAILABLE)
        self.assertEqual(damaged, EquipmentState.IN_SHOP)

    def test_dispatch_needs_destination(self):
        with self.assertRaises(InvalidTransition):
            apply_transition(EquipmentState.AVAILABLE, LifecycleAction.DISPATCH_TRANSFER, TransitionContext())
        target = apply_transition(
            EquipmentState.AVAILABLE,
            LifecycleAction.DISPATCH_TRANSFER,
            TransitionContext(destination_warehouse_id=2),
        )
        self.assertEqual(target, EquipmentState.IN_TRANSIT)

    def test_retired_equipment_accepts_no_action(self):
        self.assertEqual(allowed_actions(EquipmentState.RETIRED), [])
        for action in LifecycleAction:
            with self.assertRaises(InvalidTransition):
                apply_transition(EquipmentState.RETIRED, action, TransitionContext())

    def test_unlisted_pairs_are_rejected(self):
        for state in EquipmentState:
            for action in LifecycleAction:
                if (state, action) in TRANSITIONS:
                    continue
                with self.assertRaises(InvalidTransition) as raised:
                    apply_transition(state, action, TransitionContext())
                self.assertEqual(raised.exception.from_state, state.value)
                self.assertEqual(raised.exception.action, action.value)

    def test_in_transit_cannot_be_rented(self):
        self.assertNotIn(LifecycleAction.BIND_CONTRACT, allowed_actions(EquipmentState.IN_TRANSIT))

    def test_movement_kinds(self):
        self.assertEqual(movement_kind_for(LifecycleAction.BIND_CONTRACT), MovementKind.CONTRACT_BIND)
        self.assertEqual(movement_kind_for(LifecycleAction.RECORD_ENTRY), MovementKind.ENTRY)
        self.assertEqual(movement_kind_for(LifecycleAction.SEND_TO_SHOP), MovementKind.MAINTENANCE)
        self.assertEqual(movement_kind_for(LifecycleAction.RECEIVE_TRANSFER), MovementKind.TRANSFER)

    def test_parse_rejects_unknown_values(self):
        self.assertEqual(parse_state("in_shop"), EquipmentState.IN_SHOP)
        self.assertEqual(parse_action(" retire "), LifecycleAction.RETIRE)
        with self.assertRaises(ValueError):
            parse_state("lost")
        with self.assertRaises(ValueError):
            parse_action("sell")

    def test_replay_follows_the_chain(self):
        pairs = [
            (EquipmentState.AVAILABLE, EquipmentState.RENTED),
            (EquipmentState.RENTED, EquipmentState.RENTED),
            (EquipmentState.RENTED, EquipmentState.IN_INSPECTION),
            (EquipmentState.IN_INSPECTION, EquipmentState.AVAILABLE),
        ]
        self.assertEqual(replay_states(pairs), EquipmentState.AVAILABLE)
        self.assertEqual(replay_states([]), EquipmentState.AVAILABLE)

    def test_replay_detects_broken_chain(self):
        pairs = [
            (EquipmentState.AVAILABLE, EquipmentState.RENTED),
            (EquipmentState.IN_SHOP, EquipmentState.AVAILABLE),
        ]
        with self.assertRaises(InvalidTransition):
            replay_states(pairs)


if __name__ == "__main__":
    unittest.main()
