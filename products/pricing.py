"""
Checkout pricing: regional price lookup and coupon arithmetic.

Amounts are Decimals in major units (e.g. Decimal('120.00') AUD) and are
always quantized to the currency's minor unit.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from django.conf import settings

from payments.exceptions import InvalidChargeError, InvalidCouponError
from payments.models import Coupon
from .models import Product

logger = logging.getLogger(__name__)

REGION_COUNTRIES = {
    'AU': ['AU', 'NZ', 'FJ', 'PG', 'SB', 'VU', 'NC', 'PF'],
    'US': ['US', 'CA', 'MX'],
    'EU': ['DE', 'FR', 'IT', 'ES', 'NL', 'BE', 'AT', 'PT', 'FI', 'SE', 'NO', 'DK', 'IE', 'LU',
           'MT', 'CY', 'EE', 'LV', 'LT', 'SK', 'SI', 'BG', 'RO', 'HR', 'CZ', 'HU', 'PL', 'GR'],
}

ZERO_DECIMAL_CURRENCIES = {'BIF', 'CLP', 'DJF', 'GNF', 'JPY', 'KMF', 'KRW', 'MGA',
                           'PYG', 'RWF', 'UGX', 'VND', 'VUV', 'XAF', 'XOF', 'XPF'}


@dataclass
class PriceQuote:
    original_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    currency: str
    region: str = ''
    coupon_code: Optional[str] = None

    @property
    def is_free(self):
        return self.final_amount == 0

    def as_dict(self):
        return {
            'originalAmount': str(self.original_amount),
            'discountAmount': str(self.discount_amount),
            'finalAmount': str(self.final_amount),
            'currency': self.currency,
            'region': self.region,
            'couponCode': self.coupon_code,
        }


def minor_unit(currency):
    return Decimal('1') if currency.upper() in ZERO_DECIMAL_CURRENCIES else Decimal('0.01')


def quantize_amount(amount, currency):
    return Decimal(amount).quantize(minor_unit(currency), rounding=ROUND_HALF_UP)


def to_minor_units(amount, currency):
    """Decimal('1.20') AUD -> 120 (what Stripe expects)."""
    return int(quantize_amount(amount, currency) / minor_unit(currency))


def from_minor_units(value, currency):
    return quantize_amount(Decimal(value) * minor_unit(currency), currency)


def region_for_country(country_code):
    """Maps an ISO country code onto a pricing region, falling back to the default region."""
    if country_code:
        country_code = country_code.upper()
        for region, countries in REGION_COUNTRIES.items():
            if country_code in countries:
                return region
    return settings.DEFAULT_PRICING_REGION


def lookup_price(product, region_or_currency=None):
    """
    Returns (amount, currency, region) for a product.

    `region_or_currency` may be a pricing region ('AU'), a country code ('NZ')
    or a currency code ('AUD'). Anything unknown falls back to the product's
    base price and currency.
    """
    key = (region_or_currency or '').strip().upper()
    prices = {p.region: p for p in product.prices.all()}

    if key:
        price = prices.get(key)
        if price is None and key not in REGION_COUNTRIES and len(key) == 2:
            price = prices.get(region_for_country(key))
        if price is None and len(key) == 3:
            price = next((p for p in prices.values() if p.currency == key), None)
        if price is not None:
            return quantize_amount(price.amount, price.currency), price.currency, price.region
        logger.info(f"No regional price for product {product.id} and '{key}', using base price.")

    return quantize_amount(product.base_price, product.currency), product.currency, ''


def get_coupon(code):
    if not code:
        return None
    try:
        return Coupon.objects.get(code__iexact=code.strip())
    except Coupon.DoesNotExist:
        return None


def calculate_discount(coupon, amount, currency):
    """
    Percent-off: round(amount * percent / 100), capped at the amount.
    Fixed: min(amount, discount_value).
    """
    amount = quantize_amount(amount, currency)
    discount_amount = Decimal('0.00')
    if coupon.discount_type == Coupon.DISCOUNT_TYPE_PERCENT:
        discount_amount = amount * (coupon.discount_value / Decimal('100'))
    elif coupon.discount_type == Coupon.DISCOUNT_TYPE_FIXED:
        discount_amount = coupon.discount_value
    discount_amount = quantize_amount(min(max(discount_amount, Decimal('0')), amount), currency)
    return discount_amount


def apply_discount(coupon, amount, currency, product=None):
    """Prices an arbitrary amount with a coupon. Raises InvalidCouponError."""
    currency = currency.upper()
    amount = quantize_amount(amount, currency)
    if amount < 0:
        raise InvalidChargeError("Amount must not be negative.")
    full_price = PriceQuote(amount, quantize_amount(0, currency), amount, currency)

    if coupon is None:
        raise InvalidCouponError("Invalid coupon code.", quote=full_price)
    is_valid, message = coupon.is_valid(product=product)
    if not is_valid:
        raise InvalidCouponError(message, quote=full_price)

    discount_amount = calculate_discount(coupon, amount, currency)
    final_amount = quantize_amount(max(Decimal('0'), amount - discount_amount), currency)
    return PriceQuote(amount, discount_amount, final_amount, currency, coupon_code=coupon.code)


def resolve_price(product, region_or_currency=None, coupon_code=None):
    """
    Determines what to charge for a product.

    Raises InvalidCouponError (with the full-price quote attached) when a
    coupon code is given but cannot be applied.
    """
    if isinstance(product, (int, str)):
        try:
            product = Product.objects.get(pk=product, is_active=True)
        except (Product.DoesNotExist, ValueError):
            raise InvalidChargeError(f"Product {product} not found.")
    elif not product.is_active:
        raise InvalidChargeError(f"Product {product.id} is not available.")

    amount, currency, region = lookup_price(product, region_or_currency)
    zero = quantize_amount(0, currency)
    quote = PriceQuote(amount, zero, amount, currency, region)

    if not coupon_code:
        return quote

    try:
        discounted = apply_discount(get_coupon(coupon_code), amount, currency, product=product)
    except InvalidCouponError as e:
        logger.info(f"Coupon '{coupon_code}' rejected for product {product.id}: {e.message}")
        raise InvalidCouponError(e.message, quote=quote)

    discounted.region = region
    return discounted
