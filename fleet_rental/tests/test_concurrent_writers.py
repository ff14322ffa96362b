import os
import sys
import tempfile
import threading
import unittest
from datetime import date
from pathlib import Path


os.environ.setdefault("FLEET_DB_URL", "sqlite+pysqlite:///:memory:")

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

import services.contract_binder as contract_binder_module
from db.base import Base
from models.enums import ContractStatus, EquipmentState, LifecycleAction
from models.fleet_models import Contract, Equipment, Movement
from services.contract_binder import ContractTerms, bind_contract
from services.equipment_registry import register_equipment
from services.errors import AlreadyBound, ConcurrentModification
from services.lifecycle_engine import TransitionContext
from services.lifecycle_service import equipment_lock, transition


def _terms(folio):
    return ContractTerms(folio=folio, client="Grupo Delta", start_date=date(2026, 5, 1), days_contracted=30, amount=1000)


class ConcurrentWriterTests(unittest.TestCase):
    """Two sessions on one file database, so each writer has its own connection."""

    def setUp(self):
        handle, self.db_path = tempfile.mkstemp(suffix=".db")
        os.close(handle)
        self.engine = create_engine(
            f"sqlite+pysqlite:///{self.db_path}",
            future=True,
            connect_args={"check_same_thread": False},
        )
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(
            bind=self.engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True
        )
        with self.SessionLocal() as db:
            self.equipment_id = register_equipment(db, {"description": "Telehandler 10k"}).EquipmentID

    def tearDown(self):
        self.engine.dispose()
        os.remove(self.db_path)

    def _count(self, db, column, *criteria):
        stmt = select(func.count(column))
        if criteria:
            stmt = stmt.where(*criteria)
        return db.execute(stmt).scalar()

    def test_stale_registry_row_raises_concurrent_modification(self):
        stale = self.SessionLocal()
        fresh = self.SessionLocal()
        try:
            self.assertEqual(stale.get(Equipment, self.equipment_id).State, EquipmentState.AVAILABLE)
            transition(fresh, self.equipment_id, LifecycleAction.RETIRE, actor="ops")

            # The stale session still sees version 1 in its identity map.
            with self.assertRaises(ConcurrentModification):
                transition(stale, self.equipment_id, LifecycleAction.RETIRE, actor="yard")
        finally:
            stale.close()
            fresh.close()

        with self.SessionLocal() as db:
            equipment = db.get(Equipment, self.equipment_id)
            self.assertEqual(equipment.State, EquipmentState.RETIRED)
            self.assertEqual(self._count(db, Movement.MovementID, Movement.EquipmentID == self.equipment_id), 1)
            actors = db.execute(select(Movement.Actor)).scalars().all()
            self.assertEqual(actors, ["ops"])

    def test_active_contract_index_rejects_bind_that_missed_the_check(self):
        with self.SessionLocal() as winner:
            first = bind_contract(winner, self.equipment_id, _terms("C1"))

        original = contract_binder_module.build_context
        # Simulate a writer whose pre-check ran before the other bind committed.
        contract_binder_module.build_context = lambda db, equipment, *args, **kwargs: TransitionContext(
            equipment_id=equipment.EquipmentID,
            has_active_contract=False,
        )
        loser = self.SessionLocal()
        try:
            with self.assertRaises(AlreadyBound):
                bind_contract(loser, self.equipment_id, _terms("C2"))
        finally:
            contract_binder_module.build_context = original
            loser.close()

        with self.SessionLocal() as db:
            active = db.execute(
                select(Contract).where(Contract.EquipmentID == self.equipment_id, Contract.Status == ContractStatus.ACTIVE)
            ).scalars().all()
            self.assertEqual([contract.ContractID for contract in active], [first.ContractID])
            self.assertEqual(self._count(db, Contract.ContractID), 1)
            self.assertEqual(self._count(db, Movement.MovementID), 1)
            self.assertEqual(db.get(Equipment, self.equipment_id).State, EquipmentState.RENTED)

    def test_equipment_lock_blocks_second_writer_until_released(self):
        acquired = threading.Event()

        def contender():
            with equipment_lock(self.equipment_id):
                acquired.set()

        with equipment_lock(self.equipment_id):
            worker = threading.Thread(target=contender)
            worker.start()
            self.assertFalse(acquired.wait(0.2))
        worker.join(timeout=5)
        self.assertTrue(acquired.is_set())

        # Locks are per equipment id.
        other = threading.Event()

        def neighbour():
            with equipment_lock(self.equipment_id + 1):
                other.set()

        with equipment_lock(self.equipment_id):
            worker = threading.Thread(target=neighbour)
            worker.start()
            self.assertTrue(other.wait(5))
        worker.join(timeout=5)

    def test_racing_binds_leave_exactly_one_contract(self):
        barrier = threading.Barrier(2)
        results = {}

        def bind(folio):
            db = self.SessionLocal()
            try:
                barrier.wait(timeout=5)
                results[folio] = bind_contract(db, self.equipment_id, _terms(folio), actor=folio).ContractID
            except (AlreadyBound, ConcurrentModification) as exc:
                results[folio] = exc
            finally:
                db.close()

        workers = [threading.Thread(target=bind, args=(folio,)) for folio in ("C1", "C2")]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join(timeout=10)

        self.assertEqual(sorted(results), ["C1", "C2"])
        winners = [folio for folio, outcome in results.items() if isinstance(outcome, int)]
        losers = [folio for folio, outcome in results.items() if isinstance(outcome, Exception)]
        self.assertEqual(len(winners), 1)
        self.assertEqual(len(losers), 1)

        with self.SessionLocal() as db:
            self.assertEqual(db.get(Equipment, self.equipment_id).State, EquipmentState.RENTED)
            movements = db.execute(select(Movement).where(Movement.EquipmentID == self.equipment_id)).scalars().all()
            self.assertEqual(len(movements), 1)
            self.assertEqual(movements[0].Actor, winners[0])
            self.assertEqual(movements[0].ContractID, results[winners[0]])
            folios = db.execute(select(Contract.Folio)).scalars().all()
            self.assertEqual(folios, winners)


if __name__ == "__main__":
    unittest.main()
