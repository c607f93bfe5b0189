"""Domain error taxonomy. Each error carries the HTTP status the API maps it to."""


class DomainError(Exception):
    status_code = 400
    code = "domain_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


class NotFoundError(DomainError):
    status_code = 404
    code = "not_found"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type.capitalize()} {entity_id} not found")


class InvalidStateError(DomainError):
    status_code = 409
    code = "invalid_state"


class DuplicateApproverError(DomainError):
    status_code = 409
    code = "duplicate_approver"

    def __init__(self, request_id: str, approver_id: str):
        self.request_id = request_id
        self.approver_id = approver_id
        super().__init__(f"Approver {approver_id} has already approved refund {request_id}")


class ValidationError(DomainError):
    status_code = 422
    code = "validation_error"


class AuthorityError(DomainError):
    status_code = 403
    code = "forbidden"


class CooldownError(DomainError):
    status_code = 429
    code = "cooldown"


class IdempotencyConflictError(DomainError):
    status_code = 422
    code = "idempotency_conflict"
