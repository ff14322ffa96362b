from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base
from models.enums import (
    CollectionStatus,
    ContractStatus,
    EquipmentState,
    MovementKind,
    ServiceType,
)


def _enum_column_type(enum_cls, name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        create_constraint=False,
        length=20,
        validate_strings=True,
        values_callable=lambda members: [member.value for member in members],
    )


class Warehouse(Base):
    __tablename__ = "Warehouses"

    WarehouseID = Column(Integer, primary_key=True)
    WarehouseName = Column(String(255), nullable=False)
    Description = Column(String(255))
    Address = Column(String(255))
    ContactPhone = Column(String(50))
    IsActive = Column(Boolean, default=True)
    CreatedDate = Column(DateTime, server_default=func.now())

    Equipment = relationship("Equipment", back_populates="Warehouse")


class Equipment(Base):
    __tablename__ = "Equipment"

    EquipmentID = Column(Integer, primary_key=True)
    AssetNumber = Column(String(50), nullable=False, unique=True)
    Description = Column(String(500), nullable=False)
    Brand = Column(String(100))
    Model = Column(String(100))
    SerialNumber = Column(String(100))
    EquipmentClass = Column(String(100))
    Category = Column(String(100))
    Year = Column(Integer)
    State = Column(_enum_column_type(EquipmentState, "equipment_state"), nullable=False, default=EquipmentState.AVAILABLE)
    WarehouseID = Column(Integer, ForeignKey("Warehouses.WarehouseID"))
    LocationCode = Column(String(255))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())
    Version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": Version}

    Warehouse = relationship("Warehouse", back_populates="Equipment")
    Contracts = relationship("Contract", back_populates="Equipment")
    MaintenanceRecords = relationship("MaintenanceRecord", back_populates="Equipment")


class Contract(Base):
    __tablename__ = "Contracts"

    ContractID = Column(Integer, primary_key=True)
    Folio = Column(String(50), nullable=False, unique=True)
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"), nullable=False)
    Client = Column(String(255), nullable=False)
    Site = Column(String(255))
    Address = Column(String(500))
    Seller = Column(String(255))
    StartDate = Column(Date, nullable=False)
    EndDate = Column(Date, nullable=False)
    DaysContracted = Column(Integer)
    Amount = Column(Numeric(12, 2))
    HoursWorked = Column(Numeric(10, 2), default=0)
    Status = Column(_enum_column_type(ContractStatus, "contract_status"), nullable=False, default=ContractStatus.ACTIVE)
    TerminationReason = Column(String(1000))
    Notes = Column(String(1000))
    ClosedAt = Column(DateTime)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())
    Version = Column(Integer, nullable=False)

    __table_args__ = (
        Index(
            "UX_Contracts_ActiveEquipment",
            EquipmentID,
            unique=True,
            sqlite_where=Status == ContractStatus.ACTIVE,
            postgresql_where=Status == ContractStatus.ACTIVE,
        ),
    )
    __mapper_args__ = {"version_id_col": Version}

    Equipment = relationship("Equipment", back_populates="Contracts")
    Renewals = relationship("ContractRenewal", back_populates="Contract", order_by="ContractRenewal.RenewalID")
    Collections = relationship("Collection", back_populates="Contract", order_by="Collection.CollectionID")


class ContractRenewal(Base):
    __tablename__ = "ContractRenewals"

    RenewalID = Column(Integer, primary_key=True)
    ContractID = Column(Integer, ForeignKey("Contracts.ContractID"), nullable=False)
    PreviousStartDate = Column(Date, nullable=False)
    PreviousEndDate = Column(Date, nullable=False)
    PreviousDays = Column(Integer)
    PreviousAmount = Column(Numeric(12, 2))
    NewStartDate = Column(Date, nullable=False)
    NewEndDate = Column(Date, nullable=False)
    NewDays = Column(Integer)
    NewAmount = Column(Numeric(12, 2))
    InvoiceFolio = Column(String(100))
    Comments = Column(String(1000))
    Actor = Column(String(255))
    CreatedAt = Column(DateTime, server_default=func.now())

    Contract = relationship("Contract", back_populates="Renewals")


class Collection(Base):
    __tablename__ = "Collections"

    CollectionID = Column(Integer, primary_key=True)
    ContractID = Column(Integer, ForeignKey("Contracts.ContractID"), nullable=False)
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"), nullable=False)
    ScheduledDate = Column(Date)
    Address = Column(String(500))
    Status = Column(_enum_column_type(CollectionStatus, "collection_status"), nullable=False, default=CollectionStatus.PENDING)
    CollectedDate = Column(Date)
    Notes = Column(String(1000))
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now())

    Contract = relationship("Contract", back_populates="Collections")


class Movement(Base):
    __tablename__ = "Movements"

    MovementID = Column(Integer, primary_key=True)
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"), nullable=False)
    Kind = Column(_enum_column_type(MovementKind, "movement_kind"), nullable=False)
    Action = Column(String(40))
    PriorState = Column(_enum_column_type(EquipmentState, "equipment_state"), nullable=False)
    NewState = Column(_enum_column_type(EquipmentState, "equipment_state"), nullable=False)
    Actor = Column(String(255))
    Timestamp = Column(DateTime, nullable=False)
    ContractID = Column(Integer, ForeignKey("Contracts.ContractID"))
    FromWarehouseID = Column(Integer, ForeignKey("Warehouses.WarehouseID"))
    ToWarehouseID = Column(Integer, ForeignKey("Warehouses.WarehouseID"))
    RequestID = Column(String(100))
    Context = Column(Text)

    __table_args__ = (
        UniqueConstraint("EquipmentID", "RequestID", name="UQ_Movements_EquipmentRequest"),
        Index("IX_Movements_EquipmentTimeline", "EquipmentID", "Timestamp", "MovementID"),
    )


class MaintenanceRecord(Base):
    __tablename__ = "MaintenanceRecords"

    MaintenanceID = Column(Integer, primary_key=True)
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"), nullable=False)
    ServiceDate = Column(Date, nullable=False)
    ServiceType = Column(_enum_column_type(ServiceType, "service_type"), nullable=False)
    HoursAtService = Column(Numeric(10, 2), nullable=False)
    NextDueHours = Column(Numeric(10, 2))
    Technician = Column(String(200))
    ServiceOrder = Column(String(100))
    Description = Column(String(1000), nullable=False)
    Actor = Column(String(255))
    CreatedDate = Column(DateTime, server_default=func.now())

    Equipment = relationship("Equipment", back_populates="MaintenanceRecords")


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    Actor = Column(String(255))
    CreatedAt = Column(DateTime, server_default=func.now())


class NotificationQueue(Base):
    __tablename__ = "NotificationQueue"

    NotificationID = Column(Integer, primary_key=True)
    EquipmentID = Column(Integer)
    NotificationType = Column(String(50), nullable=False)
    Payload = Column(String(2000))
    CreatedAt = Column(DateTime, server_default=func.now())
    SentAt = Column(DateTime)
