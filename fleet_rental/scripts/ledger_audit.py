#!/usr/bin/env python3
"""Replay every equipment ledger and report registry divergences."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from sqlalchemy import create_engine, func, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from models.enums import ContractStatus
from models.fleet_models import Contract, Equipment
from services.movement_ledger import count_movements, verify_ledger


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def run_ledger_checks(db: Session) -> list[CheckResult]:
    results: list[CheckResult] = []
    equipment_rows = db.execute(select(Equipment).order_by(Equipment.AssetNumber)).scalars().all()
    for equipment in equipment_rows:
        report = verify_ledger(db, equipment)
        entries = count_movements(db, equipment.EquipmentID)
        results.append(
            CheckResult(
                f"ledger:{equipment.AssetNumber}",
                report["consistent"],
                f"registry={report['registryState']} replayed={report['replayedState']} entries={entries} {report['detail']}",
            )
        )
    return results


def run_contract_checks(db: Session) -> list[CheckResult]:
    duplicates = db.execute(
        select(Contract.EquipmentID, func.count(Contract.ContractID))
        .where(Contract.Status == ContractStatus.ACTIVE)
        .group_by(Contract.EquipmentID)
        .having(func.count(Contract.ContractID) > 1)
    ).all()
    if not duplicates:
        return [CheckResult("contracts:duplicate_active", True, "count=0")]
    return [
        CheckResult(f"contracts:duplicate_active:{equipment_id}", False, f"active={count}")
        for equipment_id, count in duplicates
    ]


def _print_results(title: str, rows: Iterable[CheckResult]) -> bool:
    _print_section(title)
    all_ok = True
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")
        all_ok = all_ok and row.ok
    return all_ok


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Fleet rental ledger audit")
    parser.add_argument("--db-url", default=os.environ.get("FLEET_DB_URL", ""))
    args = parser.parse_args(argv)

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("FLEET_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    session_factory = sessionmaker(bind=engine, autoflush=False, future=True)
    with session_factory() as db:
        ledger_ok = _print_results("Ledger Replay", run_ledger_checks(db))
        contracts_ok = _print_results("Active Contracts", run_contract_checks(db))
    return 0 if ledger_ok and contracts_ok else 1


if __name__ == "__main__":
    sys.exit(main())
