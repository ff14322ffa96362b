from __future__ import annotations


class LifecycleError(Exception):
    """Base class for every failure the lifecycle services report to callers."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidTransition(LifecycleError):
    status_code = 409

    def __init__(self, from_state, action, to_state=None, reason: str | None = None):
        self.from_state = _value(from_state)
        self.action = _value(action)
        self.to_state = _value(to_state)
        if reason:
            message = reason
        elif self.to_state:
            message = f"Invalid transition: {self.from_state} -> {self.to_state} ({self.action})"
        else:
            message = f"Action {self.action} is not allowed from state {self.from_state}"
        super().__init__(message)


class AlreadyBound(LifecycleError):
    status_code = 409

    def __init__(self, equipment_id: int, contract_id: int | None = None):
        self.equipment_id = equipment_id
        self.contract_id = contract_id
        suffix = f" ({contract_id})" if contract_id is not None else ""
        super().__init__(f"Equipment {equipment_id} already has an active contract{suffix}")


class NotFound(LifecycleError):
    status_code = 404

    def __init__(self, entity: str, identifier):
        self.entity = entity
        self.identifier = identifier
        super().__init__(f"{entity} {identifier} not found")


class StorageError(LifecycleError):
    status_code = 503


class ConcurrentModification(StorageError):
    status_code = 409

    def __init__(self, entity: str, identifier):
        self.entity = entity
        self.identifier = identifier
        super().__init__(f"{entity} {identifier} was modified concurrently; reload and retry")


class InvalidTerms(LifecycleError):
    status_code = 400


class RequestConflict(LifecycleError):
    status_code = 409

    def __init__(self, request_id: str, recorded_action: str | None):
        self.request_id = request_id
        self.recorded_action = recorded_action
        super().__init__(f"Request {request_id} was already used for {recorded_action}")


def _value(raw):
    return getattr(raw, "value", raw)
