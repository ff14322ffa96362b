import os
import sys
import unittest
from datetime import date
from pathlib import Path


os.environ.setdefault("FLEET_DB_URL", "sqlite+pysqlite:///:memory:")

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from db.base import Base
from models.enums import CollectionStatus, ContractStatus, EquipmentState, LifecycleAction, MovementKind
from models.fleet_models import AuditLog, Collection, Contract, Equipment
from services.contract_binder import (
    ContractTerms,
    RenewalTerms,
    bind_contract,
    complete_collection,
    record_usage_hours,
    renew_contract,
    resolve_end_date,
    schedule_collection,
    start_collection,
    terminate_contract,
)
from services.equipment_registry import find_active_contract, register_equipment
from services.errors import AlreadyBound, InvalidTerms, InvalidTransition, NotFound, RequestConflict
from services.lifecycle_service import transition
from services.movement_ledger import history, verify_ledger


def _make_session_factory():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


def _terms(folio, **overrides):
    values = {
        "folio": folio,
        "client": "Constructora Norte",
        "start_date": date(2026, 3, 1),
        "days_contracted": 30,
        "amount": 1000,
        "address": "Av. Industrial 12",
    }
    values.update(overrides)
    return ContractTerms(**values)


class ContractBinderTests(unittest.TestCase):
    def setUp(self):
        self.db = _make_session_factory()()
        self.equipment = register_equipment(self.db, {"description": "Scissor lift 19ft", "assetNumber": "EQ-LIFT-01"})

    def tearDown(self):
        self.db.close()

    def test_end_date_defaults_from_contracted_days(self):
        self.assertEqual(resolve_end_date(date(2026, 3, 1), 30, None), date(2026, 3, 31))
        self.assertEqual(resolve_end_date(date(2026, 3, 1), None, date(2026, 3, 10)), date(2026, 3, 10))
        with self.assertRaises(InvalidTerms):
            resolve_end_date(date(2026, 3, 1), None, date(2026, 2, 1))
        with self.assertRaises(InvalidTerms):
            resolve_end_date(date(2026, 3, 1), None, None)

    def test_bind_rents_equipment_and_records_contract(self):
        contract = bind_contract(self.db, self.equipment.EquipmentID, _terms("C1"), actor="sales")

        self.assertEqual(contract.Status, ContractStatus.ACTIVE)
        self.assertEqual(contract.EndDate, date(2026, 3, 31))
        self.assertEqual(self.db.get(Equipment, self.equipment.EquipmentID).State, EquipmentState.RENTED)
        movements = list(history(self.db, self.equipment.EquipmentID))
        self.assertEqual(len(movements), 1)
        self.assertEqual(movements[0].Kind, MovementKind.CONTRACT_BIND)
        self.assertEqual(movements[0].ContractID, contract.ContractID)
        self.assertEqual(movements[0].Actor, "sales")

    def test_second_bind_is_rejected_without_side_effects(self):
        first = bind_contract(self.db, self.equipment.EquipmentID, _terms("C1"))

        with self.assertRaises(AlreadyBound) as raised:
            bind_contract(self.db, self.equipment.EquipmentID, _terms("C2"))
        self.assertEqual(raised.exception.contract_id, first.ContractID)

        self.assertEqual(self.db.execute(select(func.count(Contract.ContractID))).scalar(), 1)
        self.assertEqual(find_active_contract(self.db, self.equipment.EquipmentID).Folio, "C1")
        self.assertEqual(len(list(history(self.db, self.equipment.EquipmentID))), 1)

    def test_bind_requires_client_and_unique_folio(self):
        with self.assertRaises(InvalidTerms):
            bind_contract(self.db, self.equipment.EquipmentID, _terms("C1", client="  "))
        other = register_equipment(self.db, {"description": "Boom lift"})
        bind_contract(self.db, other.EquipmentID, _terms("C1"))
        with self.assertRaises(InvalidTerms):
            bind_contract(self.db, self.equipment.EquipmentID, _terms("C1"))
        with self.assertRaises(NotFound):
            bind_contract(self.db, 9999, _terms("C9"))

    def test_bind_rejected_for_unavailable_equipment(self):
        transition(self.db, self.equipment.EquipmentID, LifecycleAction.RETIRE)
        with self.assertRaises(InvalidTransition):
            bind_contract(self.db, self.equipment.EquipmentID, _terms("C1"))
        self.assertIsNone(find_active_contract(self.db, self.equipment.EquipmentID))
        self.assertEqual(self.db.execute(select(func.count(Contract.ContractID))).scalar(), 0)

    def test_renewal_keeps_previous_terms_and_cancels_open_collections(self):
        contract = bind_contract(self.db, self.equipment.EquipmentID, _terms("C1"))
        collection = schedule_collection(self.db, contract.ContractID, notes="pick up at gate 2")
        self.assertEqual(collection.ScheduledDate, date(2026, 3, 31))
        self.assertEqual(collection.Status, CollectionStatus.PENDING)

        renewal = renew_contract(
            self.db,
            contract.ContractID,
            RenewalTerms(start_date=date(2026, 3, 31), days_contracted=15, amount=600, invoice_folio="F-77"),
            actor="sales",
        )

        self.db.expire_all()
        refreshed = self.db.get(Contract, contract.ContractID)
        self.assertEqual(renewal.PreviousEndDate, date(2026, 3, 31))
        self.assertEqual(renewal.NewEndDate, date(2026, 4, 15))
        self.assertEqual(refreshed.EndDate, date(2026, 4, 15))
        self.assertEqual(float(refreshed.Amount), 600.0)
        self.assertEqual(self.db.get(Collection, collection.CollectionID).Status, CollectionStatus.CANCELLED)

        movements = list(history(self.db, self.equipment.EquipmentID))
        self.assertEqual(movements[-1].Kind, MovementKind.RENEWAL)
        self.assertEqual(movements[-1].PriorState, movements[-1].NewState)
        self.assertTrue(verify_ledger(self.db, self.db.get(Equipment, self.equipment.EquipmentID))["consistent"])

    def test_renewal_rejected_for_closed_contract(self):
        contract = bind_contract(self.db, self.equipment.EquipmentID, _terms("C1"))
        transition(self.db, self.equipment.EquipmentID, LifecycleAction.RECORD_ENTRY)
        with self.assertRaises(InvalidTerms):
            renew_contract(self.db, contract.ContractID, RenewalTerms(start_date=date(2026, 4, 1), days_contracted=5))

    def test_terminate_cancels_contract_and_returns_equipment(self):
        contract = bind_contract(self.db, self.equipment.EquipmentID, _terms("C1"))

        with self.assertRaises(InvalidTerms):
            terminate_contract(self.db, contract.ContractID, "   ")

        terminated = terminate_contract(self.db, contract.ContractID, "Client site closed", actor="ops")
        self.assertEqual(terminated.Status, ContractStatus.CANCELLED)
        self.assertEqual(terminated.TerminationReason, "Client site closed")
        self.assertIsNotNone(terminated.ClosedAt)

        equipment = self.db.get(Equipment, self.equipment.EquipmentID)
        self.assertEqual(equipment.State, EquipmentState.IN_INSPECTION)
        last = list(history(self.db, self.equipment.EquipmentID))[-1]
        self.assertEqual(last.Kind, MovementKind.ENTRY)

        with self.assertRaises(InvalidTerms):
            terminate_contract(self.db, contract.ContractID, "again")

        transition(self.db, self.equipment.EquipmentID, LifecycleAction.RELEASE_INSPECTION)
        again = bind_contract(self.db, self.equipment.EquipmentID, _terms("C2"))
        self.assertEqual(again.Status, ContractStatus.ACTIVE)

    def test_completed_collection_finishes_contract_and_returns_equipment(self):
        contract = bind_contract(self.db, self.equipment.EquipmentID, _terms("C1"))
        collection = schedule_collection(self.db, contract.ContractID)

        started = start_collection(self.db, contract.ContractID, collection.CollectionID, actor="dispatch")
        self.assertEqual(started.Status, CollectionStatus.IN_PROGRESS)
        with self.assertRaises(InvalidTerms):
            start_collection(self.db, contract.ContractID, collection.CollectionID)

        completed = complete_collection(
            self.db,
            contract.ContractID,
            collection.CollectionID,
            collected_date=date(2026, 3, 30),
            actor="driver",
        )
        self.assertEqual(completed.Status, CollectionStatus.COMPLETED)
        self.assertEqual(completed.CollectedDate, date(2026, 3, 30))

        self.db.expire_all()
        self.assertEqual(self.db.get(Equipment, self.equipment.EquipmentID).State, EquipmentState.IN_INSPECTION)
        self.assertEqual(self.db.get(Contract, contract.ContractID).Status, ContractStatus.FINISHED)
        last = list(history(self.db, self.equipment.EquipmentID))[-1]
        self.assertEqual(last.Kind, MovementKind.ENTRY)
        self.assertEqual(last.Actor, "driver")

        with self.assertRaises(InvalidTerms):
            complete_collection(self.db, contract.ContractID, collection.CollectionID)
        self.assertEqual(len(list(history(self.db, self.equipment.EquipmentID))), 2)

    def test_collection_of_another_contract_is_not_found(self):
        contract = bind_contract(self.db, self.equipment.EquipmentID, _terms("C1"))
        collection = schedule_collection(self.db, contract.ContractID)
        with self.assertRaises(NotFound):
            complete_collection(self.db, contract.ContractID + 1, collection.CollectionID)

    def test_collection_after_termination_only_closes_the_pickup(self):
        contract = bind_contract(self.db, self.equipment.EquipmentID, _terms("C1"))
        collection = schedule_collection(self.db, contract.ContractID)
        terminate_contract(self.db, contract.ContractID, "Client request")

        completed = complete_collection(self.db, contract.ContractID, collection.CollectionID)
        self.assertEqual(completed.Status, CollectionStatus.COMPLETED)
        self.assertEqual(self.db.get(Contract, contract.ContractID).Status, ContractStatus.CANCELLED)
        self.assertEqual(len(list(history(self.db, self.equipment.EquipmentID))), 2)
        self.assertTrue(verify_ledger(self.db, self.db.get(Equipment, self.equipment.EquipmentID))["consistent"])

    def test_bind_with_same_request_id_returns_recorded_contract(self):
        first = bind_contract(self.db, self.equipment.EquipmentID, _terms("C1"), request_id="tablet-1")
        again = bind_contract(self.db, self.equipment.EquipmentID, _terms("C1"), request_id="tablet-1")
        self.assertEqual(again.ContractID, first.ContractID)
        self.assertEqual(len(list(history(self.db, self.equipment.EquipmentID))), 1)

        transition(self.db, self.equipment.EquipmentID, LifecycleAction.RECORD_ENTRY, request_id="tablet-2")
        with self.assertRaises(RequestConflict):
            bind_contract(self.db, self.equipment.EquipmentID, _terms("C2"), request_id="tablet-2")

    def test_usage_hours_never_decrease(self):
        contract = bind_contract(self.db, self.equipment.EquipmentID, _terms("C1", hours_worked=120))
        record_usage_hours(self.db, contract.ContractID, 180, actor="field")
        self.assertEqual(float(self.db.get(Contract, contract.ContractID).HoursWorked), 180.0)

        with self.assertRaises(InvalidTerms):
            record_usage_hours(self.db, contract.ContractID, 150)
        audit_rows = self.db.execute(select(AuditLog).where(AuditLog.EntityType == "Contract")).scalars().all()
        self.assertEqual([row.Action for row in audit_rows], ["UsageHours"])


if __name__ == "__main__":
    unittest.main()
