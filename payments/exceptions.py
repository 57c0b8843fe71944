class CheckoutError(Exception):
    """Base class for checkout failures that map onto a JSON error response."""
    status_code = 400
    error_code = 'checkout_error'

    def __init__(self, message, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def as_dict(self):
        payload = {'error': self.error_code, 'message': self.message}
        payload.update(self.extra)
        return payload


class InvalidCouponError(CheckoutError):
    """Unknown, inactive or inapplicable coupon. Carries the full-price quote."""
    error_code = 'invalid_coupon'

    def __init__(self, message, quote=None):
        super().__init__(message)
        self.quote = quote

    def as_dict(self):
        payload = super().as_dict()
        if self.quote is not None:
            payload.update(self.quote.as_dict())
        return payload


class InvalidChargeError(CheckoutError):
    error_code = 'invalid_charge'


class AmountMismatchError(InvalidChargeError):
    """The processor confirmed an amount that disagrees with the server-side quote."""
    error_code = 'amount_mismatch'


class PaymentGatewayError(CheckoutError):
    """Processor unreachable, timed out, declined or not yet confirmed."""
    status_code = 502
    error_code = 'payment_failed'

    def __init__(self, message, retryable=True):
        super().__init__(message, retryable=retryable)
        self.retryable = retryable


class DuplicateTransactionError(CheckoutError):
    """A purchase already exists for this transaction id. Resolved as success."""
    status_code = 200
    error_code = 'duplicate_transaction'

    def __init__(self, message, purchase=None):
        super().__init__(message)
        self.purchase = purchase


class PersistenceError(CheckoutError):
    status_code = 500
    error_code = 'persistence_failed'


class CheckoutNotFoundError(CheckoutError):
    status_code = 404
    error_code = 'checkout_not_found'


class CheckoutExpiredError(CheckoutError):
    status_code = 410
    error_code = 'checkout_expired'
