class OrderCoreError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, detail: str = ""):
        super().__init__(detail)
        self.detail = detail


class ConflictError(OrderCoreError):
    status_code = 409
    code = "CONFLICT"


class IdempotencyConflict(ConflictError):
    code = "IDEMPOTENCY_CONFLICT"


class InvalidTransition(ConflictError):
    code = "INVALID_TRANSITION"

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot change status from {current} to {target}")
        self.current = current
        self.target = target


class NotFoundError(OrderCoreError):
    status_code = 404
    code = "NOT_FOUND"


class ProductNotFound(NotFoundError):
    def __init__(self, product_id):
        super().__init__(f"Product {product_id} not found")
        self.product_id = product_id


class OrderNotFound(NotFoundError):
    def __init__(self, order_id=None):
        super().__init__("Order not found")
        self.order_id = order_id


class BadRequestError(OrderCoreError):
    status_code = 400
    code = "BAD_REQUEST"


class OutOfStock(BadRequestError):
    code = "OUT_OF_STOCK"

    def __init__(self, product_name: str, available: int = 0, detail: str = ""):
        super().__init__(detail or f"Only {available} of {product_name} available")
        self.product_name = product_name
        self.available = available


class UnauthorizedError(OrderCoreError):
    status_code = 401
    code = "UNAUTHORIZED"


class TokenReuseDetected(UnauthorizedError):
    code = "TOKEN_REUSE"

    def __init__(self):
        super().__init__("Token reuse detected - all sessions revoked. Please log in again.")


class ForbiddenError(OrderCoreError):
    status_code = 403
    code = "FORBIDDEN"
