class BusinessError(Exception):
    """Base for errors whose message is safe to show to the buyer."""

    default_message = "Something went wrong with your order."
    http_status = 400

    def __init__(self, message=None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class ConfigurationError(BusinessError):
    """A gateway or the panel is not configured; the service is unavailable."""

    default_message = "This service is temporarily unavailable."
    http_status = 503


class InvalidCheckout(BusinessError):
    default_message = "Invalid plan, region or currency."


class InsufficientFunds(BusinessError):
    default_message = "Insufficient balance. Please add funds."
    http_status = 402


class GatewayError(BusinessError):
    """The payment provider could not be reached or answered unexpectedly."""

    default_message = "The payment provider is unavailable. Please try again."
    http_status = 502


class PaymentDeclined(GatewayError):
    default_message = "Your payment was declined. Please try another method."
    http_status = 402


class ProvisioningFailed(BusinessError):
    default_message = "Your server could not be created yet."


class CouponUnavailable(BusinessError):
    """The coupon ran out between pricing and settlement of a paid order."""

    default_message = "The coupon on this order is no longer available."
    http_status = 409


class CheckoutInProgress(BusinessError):
    default_message = "Another checkout is already in progress."
    http_status = 409


class AlreadyProcessed(BusinessError):
    """Duplicate callback or double click; callers treat it as a no-op."""

    default_message = "This payment has already been processed."
    http_status = 409
