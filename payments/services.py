import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import DatabaseError, IntegrityError, transaction
from django.utils import timezone

from accounts.models import Entitlement
from products.models import Product
from products.pricing import get_coupon, minor_unit, resolve_price
from .exceptions import (
    AmountMismatchError,
    CheckoutExpiredError,
    CheckoutNotFoundError,
    DuplicateTransactionError,
    InvalidChargeError,
    PaymentGatewayError,
    PersistenceError,
)
from .gateway import PaymentIntentGateway
from .models import PendingCheckout, Purchase

logger = logging.getLogger(__name__)
User = get_user_model()

FREE_CONFIRMATION_PREFIX = 'free_'
FINALIZE_ATTEMPTS = 2


@dataclass
class PurchaseOutcome:
    purchase: Purchase
    customer: object
    is_new_customer: bool
    redirect_target: str
    duplicate: bool = False

    def as_dict(self):
        return {
            'success': True,
            'redirectTarget': self.redirect_target,
            'purchaseId': self.purchase.id,
            'duplicate': self.duplicate,
        }


def redirect_target_for(is_new_customer):
    if is_new_customer:
        return settings.CHECKOUT_REDIRECT_NEW_CUSTOMER
    return settings.CHECKOUT_REDIRECT_EXISTING_CUSTOMER


def start_checkout(product, customer_details, coupon_code=None, region=None, gateway=None):
    """
    Prices the product, records the pending checkout and reserves the charge.
    Returns (checkout, intent_handle, quote).

    A coupon change on the client calls this again: a new checkout and a new
    intent are created, the old ones are left to expire.
    """
    gateway = gateway or PaymentIntentGateway()
    quote = resolve_price(product, region, coupon_code)
    gateway.validate_charge(quote.final_amount, quote.currency)

    checkout = PendingCheckout.objects.create(
        product=product,
        region=quote.region,
        currency=quote.currency,
        coupon_code=quote.coupon_code or '',
        original_amount=quote.original_amount,
        discount_amount=quote.discount_amount,
        final_amount=quote.final_amount,
        email=customer_details['email'],
        first_name=customer_details.get('first_name', ''),
        last_name=customer_details.get('last_name', ''),
    )

    metadata = {
        'checkout_token': checkout.token,
        'product_id': product.id,
        'product_name': product.name,
        'coupon_code': checkout.coupon_code,
        'original_amount': quote.original_amount,
        'discount_amount': quote.discount_amount,
        'region': quote.region,
    }
    try:
        handle = gateway.create_intent(
            quote.final_amount, quote.currency, checkout.email, metadata,
            free_confirmation=checkout.free_confirmation,
        )
    except (PaymentGatewayError, InvalidChargeError) as e:
        checkout.transition(PendingCheckout.STATUS_FAILED, reason=e.message)
        raise

    if handle.payment_intent_id:
        checkout.stripe_payment_intent_id = handle.payment_intent_id
        checkout.save(update_fields=['stripe_payment_intent_id', 'updated_at'])

    logger.info(f"Checkout {checkout.token} started for {checkout.email}: {quote.final_amount} {quote.currency} (free={handle.is_free})")
    return checkout, handle, quote


def find_checkout(payment_intent_id=None, free_confirmation=None, token=None):
    try:
        if payment_intent_id:
            return PendingCheckout.objects.select_related('product').get(stripe_payment_intent_id=payment_intent_id)
        if free_confirmation:
            if not free_confirmation.startswith(FREE_CONFIRMATION_PREFIX):
                raise CheckoutNotFoundError("Unknown free confirmation.")
            token = uuid.UUID(hex=free_confirmation[len(FREE_CONFIRMATION_PREFIX):])
        if token:
            return PendingCheckout.objects.select_related('product').get(token=token)
    except (PendingCheckout.DoesNotExist, ValueError):
        pass
    raise CheckoutNotFoundError("Checkout not found.")


def complete_checkout(payment_intent_id=None, free_confirmation=None, checkout_token=None,
                      customer_details=None, gateway=None):
    """
    Handles a complete-purchase request: resolves the pending checkout,
    obtains the processor confirmation (or the free marker) and finalizes.
    """
    transaction_id = payment_intent_id or free_confirmation
    if not transaction_id:
        raise InvalidChargeError("A payment intent id or free confirmation is required.")

    existing = _existing_purchase(transaction_id)
    if existing:
        logger.info(f"Purchase for {transaction_id} already recorded; returning it.")
        return _duplicate_outcome(existing)

    checkout = find_checkout(payment_intent_id=payment_intent_id, free_confirmation=free_confirmation)
    if checkout_token and str(checkout.token) != str(checkout_token):
        raise CheckoutNotFoundError("Checkout not found.")

    gateway = gateway or PaymentIntentGateway()
    if free_confirmation:
        if not checkout.is_free:
            raise InvalidChargeError("This checkout requires payment.")
        if checkout.status == PendingCheckout.STATUS_EXPIRED or checkout.is_expired:
            if checkout.status != PendingCheckout.STATUS_EXPIRED:
                checkout.transition(PendingCheckout.STATUS_EXPIRED)
            raise CheckoutExpiredError("This checkout has expired, please start again.")
        confirmation = gateway.free_confirmation_for(checkout)
    else:
        # Paid checkouts are finalized even past expiry: the money was taken.
        confirmation = gateway.confirm_intent(payment_intent_id)

    return finalize_purchase(checkout, confirmation, customer_details)


def finalize_purchase(checkout, confirmation, customer_details=None):
    """
    Grants the entitlement and records the purchase for a confirmed payment.

    Idempotent on confirmation.transaction_id: a repeat returns the first
    purchase with duplicate=True.
    """
    existing = _existing_purchase(confirmation.transaction_id)
    if existing:
        logger.info(f"Duplicate confirmation for {confirmation.transaction_id}; purchase {existing.id} already recorded.")
        return _duplicate_outcome(existing)

    checkout.transition(PendingCheckout.STATUS_PAYMENT_CONFIRMED)
    _verify_amount(checkout, confirmation)

    for attempt in range(1, FINALIZE_ATTEMPTS + 1):
        try:
            with transaction.atomic():
                customer, is_new_customer = _identify_customer(checkout, customer_details or {})
                _grant_entitlement(customer, checkout.product)
                checkout.transition(PendingCheckout.STATUS_ENTITLEMENT_GRANTED)
                purchase = _persist_purchase(checkout, confirmation, customer, is_new_customer)
                checkout.transition(PendingCheckout.STATUS_RECORD_PERSISTED)
            break
        except DuplicateTransactionError as e:
            checkout.refresh_from_db(fields=['status', 'failure_reason'])
            logger.info(f"Concurrent confirmation for {confirmation.transaction_id}; using purchase {e.purchase.id}.")
            return _duplicate_outcome(e.purchase)
        except IntegrityError as e:
            # A concurrent confirmation may have created the same customer or
            # entitlement first. Its purchase is visible once it commits.
            checkout.refresh_from_db(fields=['status', 'failure_reason'])
            existing = _existing_purchase(confirmation.transaction_id)
            if existing:
                logger.info(f"Concurrent confirmation for {confirmation.transaction_id}; using purchase {existing.id}.")
                return _duplicate_outcome(existing)
            if attempt == FINALIZE_ATTEMPTS:
                _persistence_failed(checkout, confirmation, e)
            logger.warning(f"Integrity conflict recording {confirmation.transaction_id} (attempt {attempt}); retrying: {e}")
        except DatabaseError as e:
            checkout.refresh_from_db(fields=['status', 'failure_reason'])
            _persistence_failed(checkout, confirmation, e)

    logger.info(
        f"Purchase {purchase.id} recorded: {purchase.customer.email} bought {checkout.product.name} "
        f"for {purchase.final_amount} {purchase.currency} (new_customer={is_new_customer})"
    )
    return PurchaseOutcome(
        purchase=purchase,
        customer=customer,
        is_new_customer=is_new_customer,
        redirect_target=redirect_target_for(is_new_customer),
    )


def _persistence_failed(checkout, confirmation, error):
    logger.critical(
        f"Purchase persistence FAILED for {confirmation.transaction_id} "
        f"({checkout.email}, product {checkout.product_id}). Manual reconciliation required. Error: {error}",
        exc_info=True,
    )
    checkout.transition(PendingCheckout.STATUS_FAILED, reason=f"persistence: {error}")
    raise PersistenceError(
        "Your payment was received but we could not record your purchase. Our team has been alerted."
    ) from error


def _existing_purchase(transaction_id):
    return Purchase.objects.select_related('customer', 'product').filter(transaction_id=transaction_id).first()


def _duplicate_outcome(purchase):
    return PurchaseOutcome(
        purchase=purchase,
        customer=purchase.customer,
        is_new_customer=purchase.was_new_customer,
        redirect_target=redirect_target_for(purchase.was_new_customer),
        duplicate=True,
    )


def _verify_amount(checkout, confirmation):
    expected = max(Decimal('0'), checkout.original_amount - checkout.discount_amount)
    tolerance = minor_unit(checkout.currency)
    problem = None

    if abs(checkout.final_amount - expected) > tolerance:
        problem = f"stored final {checkout.final_amount} != original - discount ({expected})"
    elif confirmation.currency.upper() != checkout.currency.upper():
        problem = f"currency {confirmation.currency} != {checkout.currency}"
    elif abs(confirmation.amount - checkout.final_amount) > tolerance:
        problem = f"confirmed {confirmation.amount} != quoted {checkout.final_amount}"

    if problem:
        logger.critical(f"Amount mismatch on {confirmation.transaction_id} (checkout {checkout.token}): {problem}")
        checkout.transition(PendingCheckout.STATUS_FAILED, reason=f"amount mismatch: {problem}")
        raise AmountMismatchError("The confirmed payment does not match the checkout total.")


def _identify_customer(checkout, customer_details):
    """
    Returns (customer, is_new_customer). Existing accounts keep their profile
    fields untouched.
    """
    try:
        return User.objects.select_for_update().get(email__iexact=checkout.email), False
    except User.DoesNotExist:
        pass

    customer = User.objects.create_provisional_user(
        checkout.email,
        first_name=checkout.first_name or customer_details.get('first_name', ''),
        last_name=checkout.last_name or customer_details.get('last_name', ''),
    )
    logger.info(f"Provisional account created for {customer.email} (profile completion required).")
    return customer, True


def _grant_entitlement(customer, product):
    entitlement, created = Entitlement.objects.get_or_create(user=customer, product=product)
    if not created:
        logger.info(f"{customer.email} already owns {product.name}; entitlement unchanged.")
    if product.entitlement_type == Product.ENTITLEMENT_RECURRING and product.grants_tier:
        customer.upgrade_tier(product.grants_tier)
    return entitlement


def _persist_purchase(checkout, confirmation, customer, is_new_customer):
    try:
        with transaction.atomic():
            return Purchase.objects.create(
                transaction_id=confirmation.transaction_id,
                customer=customer,
                product=checkout.product,
                coupon=get_coupon(checkout.coupon_code),
                coupon_code=checkout.coupon_code,
                original_amount=checkout.original_amount,
                discount_amount=checkout.discount_amount,
                final_amount=checkout.final_amount,
                currency=checkout.currency,
                is_free=confirmation.is_free,
                was_new_customer=is_new_customer,
                checkout_token=checkout.token,
            )
    except IntegrityError:
        existing = _existing_purchase(confirmation.transaction_id)
        if existing is None:
            raise
        raise DuplicateTransactionError(f"Purchase for {confirmation.transaction_id} already exists.", purchase=existing)


def handle_payment_intent_succeeded(intent, gateway=None):
    """Webhook path for payment_intent.succeeded. Returns the outcome, or None if no checkout matches."""
    existing = _existing_purchase(intent.id)
    if existing:
        return _duplicate_outcome(existing)
    try:
        checkout = find_checkout(payment_intent_id=intent.id)
    except CheckoutNotFoundError:
        logger.warning(f"No pending checkout for PaymentIntent {intent.id}; ignoring webhook.")
        return None
    gateway = gateway or PaymentIntentGateway()
    return finalize_purchase(checkout, gateway.confirmation_from_intent(intent))


def mark_checkout_failed(payment_intent_id, reason):
    updated = PendingCheckout.objects.filter(
        stripe_payment_intent_id=payment_intent_id,
        status__in=[PendingCheckout.STATUS_INTENT_CREATED, PendingCheckout.STATUS_PAYMENT_CONFIRMED],
    ).update(status=PendingCheckout.STATUS_FAILED, failure_reason=reason[:255], updated_at=timezone.now())
    if updated:
        logger.info(f"Checkout for PaymentIntent {payment_intent_id} marked failed: {reason}")
    return updated


def purge_stale_checkouts(now=None, retention_hours=24, gateway=None):
    """
    Expires abandoned checkouts and deletes terminal ones older than the
    retention window. Returns (expired_count, deleted_count).

    A paid checkout is only expired once its PaymentIntent is cancelled. If
    Stripe refuses (the payment succeeded or is still processing) the checkout
    stays open so the payment_intent.succeeded webhook can still finalize it.
    """
    now = now or timezone.now()
    stale = PendingCheckout.objects.filter(status=PendingCheckout.STATUS_INTENT_CREATED, expires_at__lte=now)

    expired = stale.filter(stripe_payment_intent_id__isnull=True).update(
        status=PendingCheckout.STATUS_EXPIRED, updated_at=now,
    )

    paid = list(stale.exclude(stripe_payment_intent_id__isnull=True))
    if paid:
        gateway = gateway or PaymentIntentGateway()
    for checkout in paid:
        try:
            gateway.cancel_intent(checkout.stripe_payment_intent_id)
        except PaymentGatewayError as e:
            logger.warning(f"Checkout {checkout.token} left open: could not cancel {checkout.stripe_payment_intent_id} ({e.message})")
            continue
        expired += PendingCheckout.objects.filter(
            pk=checkout.pk, status=PendingCheckout.STATUS_INTENT_CREATED,
        ).update(status=PendingCheckout.STATUS_EXPIRED, updated_at=now)

    deleted, _ = PendingCheckout.objects.filter(
        status__in=PendingCheckout.TERMINAL_STATUSES,
        updated_at__lte=now - timedelta(hours=retention_hours),
    ).delete()
    logger.info(f"Checkout purge: {expired} expired, {deleted} deleted.")
    return expired, deleted
