from django.conf import settings
from django.db import models


def default_currency():
    return settings.DEFAULT_CURRENCY


class Product(models.Model):
    """
    A course or membership plan that can be bought at checkout.
    The base price/currency is the fallback when no regional price applies.
    """
    ENTITLEMENT_ONE_TIME = 'one_time'
    ENTITLEMENT_RECURRING = 'recurring'
    ENTITLEMENT_CHOICES = [
        (ENTITLEMENT_ONE_TIME, 'One-time purchase'),
        (ENTITLEMENT_RECURRING, 'Recurring membership'),
    ]

    name = models.CharField(max_length=255)
    slug = models.SlugField(max_length=140, unique=True)
    description = models.TextField(blank=True)
    base_price = models.DecimalField(max_digits=10, decimal_places=2)
    currency = models.CharField(max_length=3, default=default_currency, help_text="ISO 4217 code, e.g. AUD")
    entitlement_type = models.CharField(max_length=20, choices=ENTITLEMENT_CHOICES, default=ENTITLEMENT_ONE_TIME)
    grants_tier = models.CharField(
        max_length=20, blank=True,
        help_text="Subscription tier granted by a recurring product (gold/platinum). Blank for courses."
    )
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['name']

    def save(self, *args, **kwargs):
        self.currency = self.currency.upper()
        super().save(*args, **kwargs)

    def __str__(self):
        return self.name


class ProductPrice(models.Model):
    """Operator-managed regional price for a product."""
    product = models.ForeignKey(Product, related_name='prices', on_delete=models.CASCADE)
    region = models.CharField(max_length=8, help_text="Pricing region code, e.g. AU, US, EU")
    currency = models.CharField(max_length=3)
    amount = models.DecimalField(max_digits=10, decimal_places=2)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=['product', 'region'], name='unique_product_region_price'),
        ]

    def save(self, *args, **kwargs):
        self.region = self.region.upper()
        self.currency = self.currency.upper()
        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.product.name} [{self.region}] {self.amount} {self.currency}"
