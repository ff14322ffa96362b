from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from models.enums import (
    OPEN_COLLECTION_STATUSES,
    CollectionStatus,
    ContractStatus,
    EquipmentState,
    LifecycleAction,
    MovementKind,
)
from models.fleet_models import Collection, Contract, ContractRenewal
from services.audit_service import log_audit
from services.equipment_registry import get_equipment
from services.errors import AlreadyBound, InvalidTerms, LifecycleError, NotFound, RequestConflict, StorageError
from services.lifecycle_service import (
    build_context,
    close_contract,
    commit_or_raise,
    equipment_lock,
    stage_transition,
)
from services.movement_ledger import append_movement, build_movement, find_by_request


CONTRACT_LOGGER = logging.getLogger("fleet_rental.contracts")


@dataclass
class ContractTerms:
    folio: str
    client: str
    start_date: date
    days_contracted: int | None = None
    end_date: date | None = None
    amount: float | None = None
    hours_worked: float | None = None
    site: str | None = None
    address: str | None = None
    seller: str | None = None
    notes: str | None = None


@dataclass
class RenewalTerms:
    start_date: date
    days_contracted: int | None = None
    end_date: date | None = None
    amount: float | None = None
    hours_worked: float | None = None
    invoice_folio: str | None = None
    comments: str | None = None


def resolve_end_date(start_date: date, days_contracted: int | None, end_date: date | None) -> date:
    if end_date is None:
        if not days_contracted or days_contracted < 1:
            raise InvalidTerms("Either an end date or a positive number of contracted days is required")
        end_date = start_date + timedelta(days=days_contracted)
    if end_date < start_date:
        raise InvalidTerms("End date must be on or after start date")
    return end_date


def _days_between(start_date: date, end_date: date) -> int:
    return max((end_date - start_date).days, 1)


def _hours(value) -> float:
    return float(value or 0)


def get_contract(db: Session, contract_id: int) -> Contract:
    stmt = (
        select(Contract)
        .options(selectinload(Contract.Renewals), selectinload(Contract.Collections))
        .where(Contract.ContractID == contract_id)
    )
    contract = db.execute(stmt).scalars().first()
    if not contract:
        raise NotFound("Contract", contract_id)
    return contract


def list_contracts(db: Session, status: ContractStatus | None = None, equipment_id: int | None = None) -> list[Contract]:
    stmt = select(Contract).order_by(Contract.ContractID.desc())
    if status is not None:
        stmt = stmt.where(Contract.Status == status)
    if equipment_id is not None:
        stmt = stmt.where(Contract.EquipmentID == equipment_id)
    return list(db.execute(stmt).scalars().all())


def bind_contract(
    db: Session,
    equipment_id: int,
    terms: ContractTerms,
    actor: str | None = None,
    request_id: str | None = None,
) -> Contract:
    folio = (terms.folio or "").strip()
    if not folio:
        raise InvalidTerms("Contract folio is required")
    if not (terms.client or "").strip():
        raise InvalidTerms("Contract client is required")
    end_date = resolve_end_date(terms.start_date, terms.days_contracted, terms.end_date)
    if terms.hours_worked is not None and terms.hours_worked < 0:
        raise InvalidTerms("Worked hours cannot be negative")

    with equipment_lock(equipment_id):
        equipment = get_equipment(db, equipment_id)
        if request_id:
            recorded = find_by_request(db, equipment_id, request_id)
            if recorded is not None:
                if recorded.Action != LifecycleAction.BIND_CONTRACT.value:
                    raise RequestConflict(request_id, recorded.Action)
                CONTRACT_LOGGER.info(
                    "Bind replayed equipment_id=%s contract_id=%s request_id=%s",
                    equipment_id,
                    recorded.ContractID,
                    request_id,
                )
                return get_contract(db, recorded.ContractID)
        context = build_context(db, equipment)
        if context.has_active_contract:
            CONTRACT_LOGGER.warning(
                "Bind rejected equipment_id=%s folio=%s active_contract_id=%s",
                equipment_id,
                folio,
                context.active_contract_id,
            )
            raise AlreadyBound(equipment_id, context.active_contract_id)
        if db.execute(select(Contract.ContractID).where(Contract.Folio == folio)).first():
            raise InvalidTerms(f"Contract folio {folio} already exists")

        contract = Contract(
            Folio=folio,
            EquipmentID=equipment_id,
            Client=terms.client.strip(),
            Site=terms.site,
            Address=terms.address,
            Seller=terms.seller,
            StartDate=terms.start_date,
            EndDate=end_date,
            DaysContracted=terms.days_contracted or _days_between(terms.start_date, end_date),
            Amount=terms.amount,
            HoursWorked=terms.hours_worked or 0,
            Status=ContractStatus.ACTIVE,
            Notes=terms.notes,
            CreatedDate=datetime.now(),
            UpdatedDate=datetime.now(),
        )
        try:
            db.add(contract)
            try:
                db.flush()
            except IntegrityError as exc:
                # Another writer bound this equipment between our check and insert.
                raise AlreadyBound(equipment_id) from exc
            stage_transition(
                db,
                equipment,
                LifecycleAction.BIND_CONTRACT,
                context,
                actor=actor,
                request_id=request_id,
                contract_id=contract.ContractID,
            )
            commit_or_raise(db, "Equipment", equipment_id)
        except LifecycleError:
            db.rollback()
            raise
        except SQLAlchemyError as exc:
            db.rollback()
            raise StorageError(f"Could not bind contract {folio}") from exc

    CONTRACT_LOGGER.info(
        "Contract bound equipment_id=%s contract_id=%s folio=%s actor=%s",
        equipment_id,
        contract.ContractID,
        folio,
        actor,
    )
    return contract


def renew_contract(
    db: Session,
    contract_id: int,
    terms: RenewalTerms,
    actor: str | None = None,
) -> ContractRenewal:
    """Extend a contract, keeping its previous term in a renewal record.

    Open collections for the contract are cancelled in the same transaction.
    """
    contract = get_contract(db, contract_id)
    if contract.Status != ContractStatus.ACTIVE:
        raise InvalidTerms(f"Only active contracts can be renewed; contract {contract_id} is {contract.Status.value}")
    end_date = resolve_end_date(terms.start_date, terms.days_contracted, terms.end_date)
    if terms.hours_worked is not None and terms.hours_worked < _hours(contract.HoursWorked):
        raise InvalidTerms("Worked hours cannot decrease on renewal")

    with equipment_lock(contract.EquipmentID):
        equipment = get_equipment(db, contract.EquipmentID)
        new_days = terms.days_contracted or _days_between(terms.start_date, end_date)
        new_amount = terms.amount if terms.amount is not None else contract.Amount
        renewal = ContractRenewal(
            ContractID=contract.ContractID,
            PreviousStartDate=contract.StartDate,
            PreviousEndDate=contract.EndDate,
            PreviousDays=contract.DaysContracted,
            PreviousAmount=contract.Amount,
            NewStartDate=terms.start_date,
            NewEndDate=end_date,
            NewDays=new_days,
            NewAmount=new_amount,
            InvoiceFolio=terms.invoice_folio,
            Comments=terms.comments,
            Actor=actor,
            CreatedAt=datetime.now(),
        )
        try:
            db.add(renewal)
            cancelled = db.execute(
                update(Collection)
                .where(Collection.ContractID == contract.ContractID)
                .where(Collection.Status.in_(list(OPEN_COLLECTION_STATUSES)))
                .values(Status=CollectionStatus.CANCELLED, UpdatedAt=datetime.now())
                .execution_options(synchronize_session="fetch")
            ).rowcount

            contract.StartDate = terms.start_date
            contract.EndDate = end_date
            contract.DaysContracted = new_days
            contract.Amount = new_amount
            if terms.hours_worked is not None:
                contract.HoursWorked = terms.hours_worked
            contract.UpdatedDate = datetime.now()

            append_movement(
                db,
                build_movement(
                    equipment,
                    kind=MovementKind.RENEWAL,
                    action=LifecycleAction.RENEW_CONTRACT,
                    prior_state=equipment.State,
                    new_state=equipment.State,
                    actor=actor,
                    contract_id=contract.ContractID,
                    context={
                        "previousStartDate": renewal.PreviousStartDate,
                        "previousEndDate": renewal.PreviousEndDate,
                        "newStartDate": renewal.NewStartDate,
                        "newEndDate": renewal.NewEndDate,
                        "cancelledCollections": cancelled,
                    },
                ),
            )
            commit_or_raise(db, "Contract", contract_id)
        except LifecycleError:
            db.rollback()
            raise
        except SQLAlchemyError as exc:
            db.rollback()
            raise StorageError(f"Could not renew contract {contract_id}") from exc

    CONTRACT_LOGGER.info(
        "Contract renewed contract_id=%s renewal_id=%s new_end=%s cancelled_collections=%s actor=%s",
        contract_id,
        renewal.RenewalID,
        end_date,
        cancelled,
        actor,
    )
    return renewal


def terminate_contract(
    db: Session,
    contract_id: int,
    reason: str,
    actor: str | None = None,
    status: ContractStatus = ContractStatus.CANCELLED,
) -> Contract:
    if not (reason or "").strip():
        raise InvalidTerms("A termination reason is required")
    if status not in {ContractStatus.CANCELLED, ContractStatus.FINISHED}:
        raise InvalidTerms(f"Contracts can only be terminated as cancelled or finished, not {status.value}")

    contract = get_contract(db, contract_id)
    if contract.Status != ContractStatus.ACTIVE:
        raise InvalidTerms(f"Contract {contract_id} is already {contract.Status.value}")

    with equipment_lock(contract.EquipmentID):
        equipment = get_equipment(db, contract.EquipmentID)
        try:
            if equipment.State == EquipmentState.RENTED:
                stage_transition(
                    db,
                    equipment,
                    LifecycleAction.RECORD_ENTRY,
                    build_context(db, equipment),
                    actor=actor,
                    contract_id=contract.ContractID,
                    notes=f"Contract terminated: {reason.strip()}",
                )
            close_contract(contract, status, reason.strip())
            commit_or_raise(db, "Contract", contract_id)
        except LifecycleError:
            db.rollback()
            raise
        except SQLAlchemyError as exc:
            db.rollback()
            raise StorageError(f"Could not terminate contract {contract_id}") from exc

    CONTRACT_LOGGER.info(
        "Contract terminated contract_id=%s equipment_id=%s status=%s actor=%s",
        contract_id,
        contract.EquipmentID,
        status.value,
        actor,
    )
    return contract


def record_usage_hours(db: Session, contract_id: int, hours: float, actor: str | None = None) -> Contract:
    contract = get_contract(db, contract_id)
    if hours < 0:
        raise InvalidTerms("Worked hours cannot be negative")
    if contract.Status != ContractStatus.ACTIVE:
        raise InvalidTerms(f"Usage hours can only be recorded on active contracts; contract {contract_id} is {contract.Status.value}")
    previous = _hours(contract.HoursWorked)
    if hours < previous:
        raise InvalidTerms(f"Worked hours cannot decrease ({previous} -> {hours})")

    contract.HoursWorked = Decimal(str(hours))
    contract.UpdatedDate = datetime.now()
    log_audit(db, "Contract", contract_id, "UsageHours", f"{previous} -> {hours}", actor=actor)
    commit_or_raise(db, "Contract", contract_id)
    return contract


def schedule_collection(
    db: Session,
    contract_id: int,
    scheduled_date: date | None = None,
    address: str | None = None,
    notes: str | None = None,
    actor: str | None = None,
) -> Collection:
    contract = get_contract(db, contract_id)
    if contract.Status != ContractStatus.ACTIVE:
        raise InvalidTerms(f"Collections can only be scheduled for active contracts; contract {contract_id} is {contract.Status.value}")
    collection = Collection(
        ContractID=contract.ContractID,
        EquipmentID=contract.EquipmentID,
        ScheduledDate=scheduled_date or contract.EndDate,
        Address=address or contract.Address,
        Status=CollectionStatus.PENDING,
        Notes=notes,
        CreatedAt=datetime.now(),
        UpdatedAt=datetime.now(),
    )
    db.add(collection)
    db.flush()
    log_audit(db, "Collection", collection.CollectionID, "Schedule", f"Contract {contract.Folio}", actor=actor)
    commit_or_raise(db, "Collection", collection.CollectionID)
    return collection


def list_collections(db: Session, contract_id: int) -> list[Collection]:
    get_contract(db, contract_id)
    stmt = select(Collection).where(Collection.ContractID == contract_id).order_by(Collection.CollectionID)
    return list(db.execute(stmt).scalars().all())


def get_collection(db: Session, contract_id: int, collection_id: int) -> Collection:
    collection = db.get(Collection, collection_id)
    if not collection or collection.ContractID != contract_id:
        raise NotFound("Collection", collection_id)
    return collection


def start_collection(
    db: Session,
    contract_id: int,
    collection_id: int,
    notes: str | None = None,
    actor: str | None = None,
) -> Collection:
    collection = get_collection(db, contract_id, collection_id)
    if collection.Status != CollectionStatus.PENDING:
        raise InvalidTerms(f"Collection {collection_id} is {collection.Status.value}; only pending collections can be started")
    collection.Status = CollectionStatus.IN_PROGRESS
    if notes:
        collection.Notes = notes
    collection.UpdatedAt = datetime.now()
    log_audit(db, "Collection", collection_id, "Start", None, actor=actor)
    commit_or_raise(db, "Collection", collection_id)
    return collection


def complete_collection(
    db: Session,
    contract_id: int,
    collection_id: int,
    collected_date: date | None = None,
    notes: str | None = None,
    actor: str | None = None,
) -> Collection:
    """Mark a pickup done and bring the unit back from the client.

    While the contract is still active this records the entry through the
    engine and finishes the contract, in the same commit as the collection.
    """
    collection = get_collection(db, contract_id, collection_id)
    if collection.Status not in OPEN_COLLECTION_STATUSES:
        raise InvalidTerms(f"Collection {collection_id} is already {collection.Status.value}")
    contract = get_contract(db, contract_id)

    with equipment_lock(collection.EquipmentID):
        equipment = get_equipment(db, collection.EquipmentID)
        try:
            if contract.Status == ContractStatus.ACTIVE:
                stage_transition(
                    db,
                    equipment,
                    LifecycleAction.RECORD_ENTRY,
                    build_context(db, equipment),
                    actor=actor,
                    contract_id=contract.ContractID,
                    notes=f"Collected under contract {contract.Folio}",
                )
                close_contract(contract, ContractStatus.FINISHED)
            collection.Status = CollectionStatus.COMPLETED
            collection.CollectedDate = collected_date or date.today()
            if notes:
                collection.Notes = notes
            collection.UpdatedAt = datetime.now()
            log_audit(db, "Collection", collection_id, "Complete", f"Contract {contract.Folio}", actor=actor)
            commit_or_raise(db, "Collection", collection_id)
        except LifecycleError:
            db.rollback()
            raise
        except SQLAlchemyError as exc:
            db.rollback()
            raise StorageError(f"Could not complete collection {collection_id}") from exc

    CONTRACT_LOGGER.info(
        "Collection completed collection_id=%s contract_id=%s equipment_id=%s actor=%s",
        collection_id,
        contract_id,
        collection.EquipmentID,
        actor,
    )
    return collection


def serialize_renewal(renewal: ContractRenewal) -> dict:
    return {
        "renewalID": renewal.RenewalID,
        "contractID": renewal.ContractID,
        "previousStartDate": renewal.PreviousStartDate,
        "previousEndDate": renewal.PreviousEndDate,
        "previousDays": renewal.PreviousDays,
        "previousAmount": renewal.PreviousAmount,
        "newStartDate": renewal.NewStartDate,
        "newEndDate": renewal.NewEndDate,
        "newDays": renewal.NewDays,
        "newAmount": renewal.NewAmount,
        "invoiceFolio": renewal.InvoiceFolio,
        "comments": renewal.Comments,
        "actor": renewal.Actor,
        "createdAt": renewal.CreatedAt,
    }


def serialize_collection(collection: Collection) -> dict:
    return {
        "collectionID": collection.CollectionID,
        "contractID": collection.ContractID,
        "equipmentID": collection.EquipmentID,
        "scheduledDate": collection.ScheduledDate,
        "address": collection.Address,
        "status": collection.Status.value,
        "collectedDate": collection.CollectedDate,
        "notes": collection.Notes,
        "createdAt": collection.CreatedAt,
        "updatedAt": collection.UpdatedAt,
    }


def serialize_contract(contract: Contract, include_history: bool = False) -> dict:
    payload = {
        "contractID": contract.ContractID,
        "folio": contract.Folio,
        "equipmentID": contract.EquipmentID,
        "client": contract.Client,
        "site": contract.Site,
        "address": contract.Address,
        "seller": contract.Seller,
        "startDate": contract.StartDate,
        "endDate": contract.EndDate,
        "daysContracted": contract.DaysContracted,
        "amount": contract.Amount,
        "hoursWorked": contract.HoursWorked,
        "status": contract.Status.value,
        "terminationReason": contract.TerminationReason,
        "notes": contract.Notes,
        "closedAt": contract.ClosedAt,
        "createdDate": contract.CreatedDate,
        "updatedDate": contract.UpdatedDate,
    }
    if include_history:
        payload["renewals"] = [serialize_renewal(renewal) for renewal in contract.Renewals]
        payload["collections"] = [serialize_collection(collection) for collection in contract.Collections]
    return payload
