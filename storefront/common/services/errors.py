class CheckoutError(Exception):
    """Base for failures that map onto a JSON ``{ok: false, error}`` response."""

    status = 400

    def __init__(self, message: str, status=None) -> None:
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status


class ValidationFailed(CheckoutError):
    status = 400


class TamperingSuspected(CheckoutError):
    status = 400

    def __init__(self, message: str = "Order total mismatch. Please refresh your cart and try again.") -> None:
        super().__init__(message)


class RateLimited(CheckoutError):
    status = 429

    def __init__(self, message: str = "Too many requests. Please try again later.") -> None:
        super().__init__(message)


class CatalogUnavailable(CheckoutError):
    status = 500

    def __init__(self, message: str = "Unable to verify product availability. Please try again later.") -> None:
        super().__init__(message)


class GatewayNotConfigured(CheckoutError):
    status = 500

    def __init__(self, message: str = "Card payments are not available right now.") -> None:
        super().__init__(message)


class FulfillmentError(RuntimeError):
    """A fulfillment step that must succeed (stock write) failed."""
