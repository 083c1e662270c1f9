"""
Unified exception taxonomy for all services.

Every service-layer failure is a ServiceError carrying an HTTP status code and
a stable machine-readable ``code``.  Routers let these propagate; the handler
registered in ``main.py`` renders them as ``{"error": ..., "code": ...}``.
"""


class ServiceError(Exception):
    """Base exception for all service-layer errors."""

    code = "service_error"

    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


class NotFoundError(ServiceError):
    code = "not_found"

    def __init__(self, entity: str, entity_id):
        super().__init__(f"{entity} {entity_id} not found", 404)


class InvalidTransitionError(ServiceError):
    code = "invalid_transition"

    def __init__(self, entity: str, entity_id, current_status: str, target_status: str):
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            f"{entity} {entity_id} cannot move from '{current_status}' to '{target_status}'",
            409,
        )


class InvalidRequestError(ServiceError):
    code = "invalid_request"

    def __init__(self, message: str):
        super().__init__(message, 400)


class InvalidMethodError(ServiceError):
    code = "invalid_method"

    def __init__(self, method: str):
        super().__init__(f"Invalid payment method '{method}'", 400)


class DuplicatePaymentError(ServiceError):
    code = "duplicate_payment"

    def __init__(self, order_id: int, existing_status: str):
        super().__init__(
            f"Payment already exists for order {order_id} (status '{existing_status}')",
            409,
        )


class AlreadyConfirmedError(ServiceError):
    code = "already_confirmed"

    def __init__(self, payment_id: int):
        super().__init__(f"Payment {payment_id} is already confirmed", 409)


class InvalidStateError(ServiceError):
    code = "invalid_state"

    def __init__(self, message: str):
        super().__init__(message, 409)


class ForbiddenError(ServiceError):
    code = "forbidden"

    def __init__(self, message: str = "Not allowed"):
        super().__init__(message, 403)


class ConflictError(ServiceError):
    """A concurrent writer changed the row between read and conditional update."""

    code = "conflict"

    def __init__(self, entity: str, entity_id):
        super().__init__(f"{entity} {entity_id} was modified concurrently, retry", 409)


class UnavailableError(ServiceError):
    code = "unavailable"

    def __init__(self, message: str = "Database is not available"):
        super().__init__(message, 503)


class ProviderError(ServiceError):
    code = "provider_error"

    def __init__(self, message: str):
        super().__init__(message, 502)
