"""Error taxonomy shared by the order workflow and the HTTP layer."""


class StorefrontError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(StorefrontError):
    """Malformed or missing input, rejected before touching the store."""


class ProductNotFound(ValidationError):
    """A cart line references a missing or inactive product."""

    def __init__(self, product_id: int):
        super().__init__(f"Product with ID {product_id} not found")
        self.product_id = product_id


class NotFound(StorefrontError):
    status_code = 404


class AccessDenied(StorefrontError):
    status_code = 403


class InsufficientStock(StorefrontError):
    def __init__(self, message: str, product_id: int | None = None):
        super().__init__(message)
        self.product_id = product_id


class InvalidTransition(StorefrontError):
    pass


class InvalidOperation(StorefrontError):
    pass


class StoreFailure(StorefrontError):
    status_code = 500


class NotificationFailure(StorefrontError):
    """Raised inside a channel; always swallowed by the dispatcher."""

    def __init__(self, message: str, channel: str, attempts: int = 1):
        super().__init__(message)
        self.channel = channel
        self.attempts = attempts
