from enum import Enum


class EquipmentState(str, Enum):
    AVAILABLE = "available"
    RENTED = "rented"
    IN_TRANSIT = "in_transit"
    IN_INSPECTION = "in_inspection"
    IN_SHOP = "in_shop"
    RETIRED = "retired"


class LifecycleAction(str, Enum):
    BIND_CONTRACT = "bind_contract"
    RECORD_ENTRY = "record_entry"
    RELEASE_INSPECTION = "release_inspection"
    SEND_TO_SHOP = "send_to_shop"
    COMPLETE_MAINTENANCE = "complete_maintenance"
    DISPATCH_TRANSFER = "dispatch_transfer"
    RECEIVE_TRANSFER = "receive_transfer"
    RETIRE = "retire"
    RENEW_CONTRACT = "renew_contract"


class MovementKind(str, Enum):
    ENTRY = "entry"
    EXIT = "exit"
    TRANSFER = "transfer"
    MAINTENANCE = "maintenance"
    STATUS_CHANGE = "status_change"
    CONTRACT_BIND = "contract_bind"
    RENEWAL = "renewal"


class ContractStatus(str, Enum):
    ACTIVE = "active"
    FINISHED = "finished"
    CANCELLED = "cancelled"


class ServiceType(str, Enum):
    PREVENTIVE = "preventive"
    CORRECTIVE = "corrective"
    INSPECTION = "inspection"


class CollectionStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


OPEN_COLLECTION_STATUSES = {CollectionStatus.PENDING, CollectionStatus.IN_PROGRESS}
