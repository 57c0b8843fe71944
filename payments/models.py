import uuid
from datetime import timedelta
from decimal import Decimal
from django.conf import settings
from django.db import models
from django.utils import timezone


class Coupon(models.Model):
    code = models.CharField(max_length=50, unique=True)

    # Discount Logic
    DISCOUNT_TYPE_PERCENT = 'percent'
    DISCOUNT_TYPE_FIXED = 'fixed'
    DISCOUNT_TYPES = [
        (DISCOUNT_TYPE_PERCENT, 'Percentage Off'),
        (DISCOUNT_TYPE_FIXED, 'Fixed Amount Off'),
    ]
    discount_type = models.CharField(max_length=10, choices=DISCOUNT_TYPES)
    discount_value = models.DecimalField(max_digits=10, decimal_places=2, help_text="e.g., 25.00 for fixed amount, or 99 for 99%")

    # Scope
    specific_products = models.ManyToManyField('products.Product', blank=True, help_text="Applies only to these products.")

    # Constraints
    active = models.BooleanField(default=True)
    valid_from = models.DateTimeField(null=True, blank=True)
    valid_to = models.DateTimeField(null=True, blank=True)
    usage_limit = models.PositiveIntegerField(null=True, blank=True, help_text="Total times this code can be used.")
    created_at = models.DateTimeField(auto_now_add=True)

    def save(self, *args, **kwargs):
        self.code = self.code.strip().upper()
        super().save(*args, **kwargs)

    def is_valid(self, product=None):
        now = timezone.now()
        if not self.active:
            return False, "This coupon is not active."
        if self.valid_from and now < self.valid_from:
            return False, "This coupon is not active yet."
        if self.valid_to and now > self.valid_to:
            return False, "This coupon has expired."
        if self.usage_limit is not None and self.purchases.count() >= self.usage_limit:
            return False, "This coupon has reached its usage limit."
        if product is not None and self.pk and self.specific_products.exists():
            if not self.specific_products.filter(pk=product.pk).exists():
                return False, "This coupon does not apply to this product."
        return True, "Valid"

    def __str__(self):
        return self.code

    @property
    def description(self):
        if self.discount_type == self.DISCOUNT_TYPE_PERCENT:
            return f"{self.discount_value.normalize():f}% off"
        elif self.discount_type == self.DISCOUNT_TYPE_FIXED:
            return f"{self.discount_value} off"
        return "Discount"


def default_checkout_expiry():
    return timezone.now() + timedelta(minutes=settings.CHECKOUT_PENDING_TTL_MINUTES)


class PendingCheckout(models.Model):
    """
    Server-side state of one purchase attempt between "intent created" and
    "purchase completed". Keyed by a server-issued token and short-lived.
    """
    STATUS_INTENT_CREATED = 'intent_created'
    STATUS_PAYMENT_CONFIRMED = 'payment_confirmed'
    STATUS_ENTITLEMENT_GRANTED = 'entitlement_granted'
    STATUS_RECORD_PERSISTED = 'record_persisted'
    STATUS_FAILED = 'failed'
    STATUS_EXPIRED = 'expired'

    STATUS_CHOICES = [
        (STATUS_INTENT_CREATED, 'Intent created'),
        (STATUS_PAYMENT_CONFIRMED, 'Payment confirmed'),
        (STATUS_ENTITLEMENT_GRANTED, 'Entitlement granted'),
        (STATUS_RECORD_PERSISTED, 'Record persisted'),
        (STATUS_FAILED, 'Failed'),
        (STATUS_EXPIRED, 'Expired'),
    ]
    TERMINAL_STATUSES = (STATUS_RECORD_PERSISTED, STATUS_FAILED, STATUS_EXPIRED)

    token = models.UUIDField(default=uuid.uuid4, unique=True, editable=False)
    product = models.ForeignKey('products.Product', on_delete=models.CASCADE, related_name='pending_checkouts')
    region = models.CharField(max_length=8, blank=True)
    currency = models.CharField(max_length=3)
    coupon_code = models.CharField(max_length=50, blank=True)

    # Amounts are computed server-side when the intent is created.
    original_amount = models.DecimalField(max_digits=10, decimal_places=2)
    discount_amount = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0.00'))
    final_amount = models.DecimalField(max_digits=10, decimal_places=2)

    email = models.EmailField()
    first_name = models.CharField(max_length=150, blank=True)
    last_name = models.CharField(max_length=150, blank=True)

    stripe_payment_intent_id = models.CharField(max_length=255, null=True, blank=True, unique=True)
    status = models.CharField(max_length=30, choices=STATUS_CHOICES, default=STATUS_INTENT_CREATED)
    failure_reason = models.CharField(max_length=255, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    expires_at = models.DateTimeField(default=default_checkout_expiry)

    def save(self, *args, **kwargs):
        self.email = self.email.strip().lower()
        super().save(*args, **kwargs)

    @property
    def is_free(self):
        return self.final_amount == Decimal('0.00')

    @property
    def free_confirmation(self):
        """Synthetic transaction id used instead of a processor intent on free orders."""
        return f"free_{self.token.hex}"

    @property
    def is_expired(self):
        return timezone.now() >= self.expires_at

    @property
    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES

    def transition(self, status, reason=''):
        self.status = status
        if reason:
            self.failure_reason = reason[:255]
        self.save(update_fields=['status', 'failure_reason', 'updated_at'])

    def __str__(self):
        return f"Checkout {self.token} ({self.status})"


class Purchase(models.Model):
    """
    Append-only record of one confirmed payment. The processor transaction id
    is the idempotency key.
    """
    transaction_id = models.CharField(max_length=255, unique=True, help_text="Stripe PaymentIntent ID, or the free-order marker.")
    customer = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name='purchases')
    product = models.ForeignKey('products.Product', on_delete=models.PROTECT, related_name='purchases')

    coupon = models.ForeignKey(Coupon, on_delete=models.SET_NULL, null=True, blank=True, related_name='purchases')
    # --- IMMUTABLE ORDER HISTORY (SNAPSHOT) ---
    coupon_code = models.CharField(max_length=50, blank=True, help_text="The code used (e.g. CHECKOUT-99)")
    original_amount = models.DecimalField(max_digits=10, decimal_places=2)
    discount_amount = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0.00'))
    final_amount = models.DecimalField(max_digits=10, decimal_places=2)
    currency = models.CharField(max_length=3)

    is_free = models.BooleanField(default=False)
    was_new_customer = models.BooleanField(default=False)
    checkout_token = models.UUIDField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"Purchase {self.transaction_id} by {self.customer.email}"
