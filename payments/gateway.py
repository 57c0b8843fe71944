import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import stripe
from django.conf import settings

from products.pricing import from_minor_units, quantize_amount, to_minor_units
from .exceptions import InvalidChargeError, PaymentGatewayError

logger = logging.getLogger(__name__)

stripe.api_key = settings.STRIPE_SECRET_KEY
stripe.max_network_retries = 0
stripe.default_http_client = stripe.RequestsClient(timeout=settings.STRIPE_TIMEOUT_SECONDS)


@dataclass
class IntentHandle:
    """What the browser needs to take the next step of the checkout."""
    client_secret: Optional[str] = None
    payment_intent_id: Optional[str] = None
    free_confirmation: Optional[str] = None

    @property
    def is_free(self):
        return self.free_confirmation is not None


@dataclass
class PaymentConfirmation:
    transaction_id: str
    amount: Decimal
    currency: str
    is_free: bool = False


class PaymentIntentGateway:
    """
    Thin wrapper around Stripe PaymentIntents.

    Every create_intent call reserves a fresh intent; an intent's amount is
    never modified after creation. Processor errors are surfaced, never
    retried here.
    """

    def __init__(self, api_key=None):
        self.api_key = api_key or settings.STRIPE_SECRET_KEY
        if not self.api_key:
            logger.warning("STRIPE_SECRET_KEY not found in settings.")

    def validate_charge(self, amount, currency):
        if not currency or currency.upper() not in settings.SUPPORTED_CURRENCIES:
            raise InvalidChargeError(f"Unsupported currency: {currency}")
        try:
            amount = quantize_amount(amount, currency)
        except (TypeError, ValueError, ArithmeticError):
            raise InvalidChargeError(f"Invalid amount: {amount}")
        if amount < 0:
            raise InvalidChargeError("Amount must not be negative.")
        if 0 < amount < settings.STRIPE_MINIMUM_CHARGE:
            raise InvalidChargeError(
                f"Amount {amount} {currency.upper()} is below the minimum card charge of {settings.STRIPE_MINIMUM_CHARGE}."
            )
        return amount, currency.upper()

    def create_intent(self, final_amount, currency, customer_email, metadata=None, free_confirmation=None):
        """
        Returns an IntentHandle. Zero-amount charges skip the processor and
        come back with the synthetic `free_confirmation` marker instead.
        """
        amount, currency = self.validate_charge(final_amount, currency)
        metadata = {k: '' if v is None else str(v) for k, v in (metadata or {}).items()}

        if amount == 0:
            logger.info(f"Free checkout for {customer_email}; skipping processor intent.")
            return IntentHandle(free_confirmation=free_confirmation or 'free')

        try:
            intent = stripe.PaymentIntent.create(
                amount=to_minor_units(amount, currency),
                currency=currency.lower(),
                receipt_email=customer_email,
                metadata={**metadata, 'customer_email': customer_email},
                automatic_payment_methods={'enabled': True},
                api_key=self.api_key,
            )
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            logger.error(f"Stripe unreachable while creating intent for {customer_email}: {e}")
            raise PaymentGatewayError("Payment processor unavailable, please try again.", retryable=True)
        except stripe.InvalidRequestError as e:
            logger.error(f"Stripe rejected intent for {customer_email}: {e}")
            raise InvalidChargeError(f"Payment processor rejected the charge: {e.user_message or e}")
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating intent for {customer_email}: {e}", exc_info=True)
            raise PaymentGatewayError("Payment processor error.", retryable=False)

        logger.info(f"Created PaymentIntent {intent.id} for {amount} {currency} ({customer_email})")
        return IntentHandle(client_secret=intent.client_secret, payment_intent_id=intent.id)

    def confirm_intent(self, payment_intent_id):
        """Retrieves an intent and returns the processor-confirmed amount."""
        try:
            intent = stripe.PaymentIntent.retrieve(payment_intent_id, api_key=self.api_key)
        except stripe.InvalidRequestError:
            raise PaymentGatewayError("Invalid or expired payment.", retryable=False)
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            logger.error(f"Stripe unreachable while retrieving {payment_intent_id}: {e}")
            raise PaymentGatewayError("Payment processor unavailable, please try again.", retryable=True)
        except stripe.StripeError as e:
            logger.error(f"Stripe error retrieving {payment_intent_id}: {e}", exc_info=True)
            raise PaymentGatewayError("Payment processor error.", retryable=False)

        return self.confirmation_from_intent(intent)

    def cancel_intent(self, payment_intent_id):
        """
        Cancels an abandoned intent so it can no longer be paid. An intent that
        already succeeded or is processing cannot be cancelled; Stripe rejects
        the request and a non-retryable PaymentGatewayError is raised.
        """
        try:
            intent = stripe.PaymentIntent.cancel(
                payment_intent_id, cancellation_reason='abandoned', api_key=self.api_key,
            )
        except stripe.InvalidRequestError as e:
            logger.warning(f"Stripe refused to cancel {payment_intent_id}: {e}")
            raise PaymentGatewayError("Payment can no longer be cancelled.", retryable=False)
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            logger.error(f"Stripe unreachable while cancelling {payment_intent_id}: {e}")
            raise PaymentGatewayError("Payment processor unavailable, please try again.", retryable=True)
        except stripe.StripeError as e:
            logger.error(f"Stripe error cancelling {payment_intent_id}: {e}", exc_info=True)
            raise PaymentGatewayError("Payment processor error.", retryable=False)

        logger.info(f"Cancelled abandoned PaymentIntent {payment_intent_id}.")
        return intent

    def confirmation_from_intent(self, intent):
        if intent.status != 'succeeded':
            logger.info(f"PaymentIntent {intent.id} not completed (status={intent.status}).")
            raise PaymentGatewayError("Payment not completed.", retryable=intent.status == 'processing')
        currency = intent.currency.upper()
        # amount_received is what was actually captured.
        received = getattr(intent, 'amount_received', None) or intent.amount
        return PaymentConfirmation(
            transaction_id=intent.id,
            amount=from_minor_units(received, currency),
            currency=currency,
        )

    def free_confirmation_for(self, checkout):
        return PaymentConfirmation(
            transaction_id=checkout.free_confirmation,
            amount=quantize_amount(0, checkout.currency),
            currency=checkout.currency,
            is_free=True,
        )
