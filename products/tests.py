from decimal import Decimal
from io import StringIO
from datetime import timedelta

from django.core.management import call_command
from django.test import TestCase, override_settings
from django.utils import timezone

from payments.exceptions import InvalidChargeError, InvalidCouponError
from payments.models import Coupon
from .models import Product, ProductPrice
from .pricing import (
    apply_discount,
    from_minor_units,
    lookup_price,
    region_for_country,
    resolve_price,
    to_minor_units,
)


class PricingTestMixin:
    @classmethod
    def setUpTestData(cls):
        cls.product = Product.objects.create(
            name='Big Baby Sleep Program',
            slug='big-baby',
            base_price=Decimal('120.00'),
            currency='USD',
        )
        ProductPrice.objects.create(product=cls.product, region='AU', currency='AUD', amount=Decimal('120.00'))
        ProductPrice.objects.create(product=cls.product, region='US', currency='USD', amount=Decimal('120.00'))
        ProductPrice.objects.create(product=cls.product, region='EU', currency='EUR', amount=Decimal('110.00'))

        cls.checkout99 = Coupon.objects.create(code='CHECKOUT-99', discount_type='percent', discount_value=Decimal('99'))
        cls.fixed25 = Coupon.objects.create(code='SAVE25', discount_type='fixed', discount_value=Decimal('25.00'))
        cls.free100 = Coupon.objects.create(code='FREE100', discount_type='percent', discount_value=Decimal('100'))
        cls.big_fixed = Coupon.objects.create(code='HUGE', discount_type='fixed', discount_value=Decimal('500.00'))


class ResolvePriceTests(PricingTestMixin, TestCase):

    def test_no_coupon_returns_regional_price(self):
        quote = resolve_price(self.product, 'AU')
        self.assertEqual(quote.original_amount, Decimal('120.00'))
        self.assertEqual(quote.discount_amount, Decimal('0.00'))
        self.assertEqual(quote.final_amount, Decimal('120.00'))
        self.assertEqual(quote.currency, 'AUD')
        self.assertEqual(quote.region, 'AU')
        self.assertIsNone(quote.coupon_code)

    def test_percent_coupon_99(self):
        quote = resolve_price(self.product, 'AU', 'CHECKOUT-99')
        self.assertEqual(quote.discount_amount, Decimal('118.80'))
        self.assertEqual(quote.final_amount, Decimal('1.20'))
        self.assertEqual(quote.coupon_code, 'CHECKOUT-99')
        self.assertEqual(quote.region, 'AU')

    def test_coupon_code_is_case_insensitive(self):
        quote = resolve_price(self.product, 'AU', 'checkout-99')
        self.assertEqual(quote.final_amount, Decimal('1.20'))

    def test_fixed_coupon(self):
        quote = resolve_price(self.product, 'US', 'SAVE25')
        self.assertEqual(quote.discount_amount, Decimal('25.00'))
        self.assertEqual(quote.final_amount, Decimal('95.00'))

    def test_full_discount_is_free(self):
        quote = resolve_price(self.product, 'US', 'FREE100')
        self.assertEqual(quote.final_amount, Decimal('0.00'))
        self.assertTrue(quote.is_free)

    def test_fixed_discount_is_capped_at_price(self):
        quote = resolve_price(self.product, 'US', 'HUGE')
        self.assertEqual(quote.discount_amount, Decimal('120.00'))
        self.assertEqual(quote.final_amount, Decimal('0.00'))

    def test_unknown_coupon_keeps_original_price(self):
        with self.assertRaises(InvalidCouponError) as ctx:
            resolve_price(self.product, 'AU', 'BOGUS')
        quote = ctx.exception.quote
        self.assertEqual(quote.original_amount, Decimal('120.00'))
        self.assertEqual(quote.final_amount, Decimal('120.00'))
        self.assertEqual(quote.currency, 'AUD')

    def test_expired_coupon_rejected(self):
        Coupon.objects.create(
            code='OLD', discount_type='percent', discount_value=Decimal('50'),
            valid_to=timezone.now() - timedelta(days=1),
        )
        with self.assertRaises(InvalidCouponError) as ctx:
            resolve_price(self.product, 'US', 'OLD')
        self.assertIn('expired', ctx.exception.message)

    def test_inactive_coupon_rejected(self):
        Coupon.objects.create(code='OFF', discount_type='percent', discount_value=Decimal('10'), active=False)
        with self.assertRaises(InvalidCouponError):
            resolve_price(self.product, 'US', 'OFF')

    def test_product_scoped_coupon(self):
        other = Product.objects.create(name='Other', slug='other', base_price=Decimal('50.00'), currency='USD')
        scoped = Coupon.objects.create(code='ONLYOTHER', discount_type='percent', discount_value=Decimal('10'))
        scoped.specific_products.add(other)
        with self.assertRaises(InvalidCouponError):
            resolve_price(self.product, 'US', 'ONLYOTHER')
        self.assertEqual(resolve_price(other, None, 'ONLYOTHER').final_amount, Decimal('45.00'))

    def test_inactive_product_rejected(self):
        hidden = Product.objects.create(name='Hidden', slug='hidden', base_price=Decimal('10.00'), is_active=False)
        with self.assertRaises(InvalidChargeError):
            resolve_price(hidden)
        with self.assertRaises(InvalidChargeError):
            resolve_price(hidden.pk)

    def test_accepts_product_id(self):
        quote = resolve_price(self.product.pk, 'EU')
        self.assertEqual(quote.final_amount, Decimal('110.00'))
        self.assertEqual(quote.currency, 'EUR')

    def test_discount_plus_final_equals_original(self):
        for region in ('AU', 'US', 'EU'):
            for code in (None, 'CHECKOUT-99', 'SAVE25', 'FREE100', 'HUGE'):
                quote = resolve_price(self.product, region, code)
                self.assertEqual(quote.discount_amount + quote.final_amount, quote.original_amount)
                self.assertGreaterEqual(quote.final_amount, Decimal('0'))
                self.assertGreaterEqual(quote.discount_amount, Decimal('0'))


class LookupPriceTests(PricingTestMixin, TestCase):

    def test_lookup_by_currency(self):
        amount, currency, region = lookup_price(self.product, 'eur')
        self.assertEqual((amount, currency, region), (Decimal('110.00'), 'EUR', 'EU'))

    def test_lookup_by_country(self):
        amount, currency, region = lookup_price(self.product, 'NZ')
        self.assertEqual((currency, region), ('AUD', 'AU'))

    def test_unknown_falls_back_to_base_price(self):
        amount, currency, region = lookup_price(self.product, 'JPY')
        self.assertEqual((amount, currency, region), (Decimal('120.00'), 'USD', ''))

    @override_settings(DEFAULT_PRICING_REGION='US')
    def test_region_for_country(self):
        self.assertEqual(region_for_country('au'), 'AU')
        self.assertEqual(region_for_country('DE'), 'EU')
        self.assertEqual(region_for_country('BR'), 'US')
        self.assertEqual(region_for_country(None), 'US')


class ApplyDiscountTests(PricingTestMixin, TestCase):

    def test_apply_to_arbitrary_amount(self):
        quote = apply_discount(self.checkout99, Decimal('120.00'), 'aud')
        self.assertEqual(quote.final_amount, Decimal('1.20'))
        self.assertEqual(quote.currency, 'AUD')

    def test_rounds_half_up_to_minor_unit(self):
        coupon = Coupon.objects.create(code='THIRD', discount_type='percent', discount_value=Decimal('33.33'))
        quote = apply_discount(coupon, Decimal('10.00'), 'USD')
        self.assertEqual(quote.discount_amount, Decimal('3.33'))
        self.assertEqual(quote.final_amount, Decimal('6.67'))

    def test_missing_coupon(self):
        with self.assertRaises(InvalidCouponError) as ctx:
            apply_discount(None, Decimal('50.00'), 'USD')
        self.assertEqual(ctx.exception.quote.final_amount, Decimal('50.00'))

    def test_usage_limit(self):
        limited = Coupon.objects.create(code='ONCE', discount_type='percent', discount_value=Decimal('10'), usage_limit=0)
        with self.assertRaises(InvalidCouponError):
            apply_discount(limited, Decimal('50.00'), 'USD')


class MinorUnitTests(TestCase):

    def test_conversion(self):
        self.assertEqual(to_minor_units(Decimal('1.20'), 'AUD'), 120)
        self.assertEqual(to_minor_units(Decimal('120'), 'USD'), 12000)
        self.assertEqual(to_minor_units(Decimal('500'), 'JPY'), 500)
        self.assertEqual(from_minor_units(120, 'AUD'), Decimal('1.20'))


class SeedCatalogCommandTests(TestCase):

    def test_seed_is_idempotent(self):
        call_command('seed_catalog', stdout=StringIO())
        call_command('seed_catalog', stdout=StringIO())
        self.assertEqual(Product.objects.count(), 3)
        self.assertEqual(ProductPrice.objects.count(), 9)
        self.assertEqual(Coupon.objects.filter(code='CHECKOUT-99').count(), 1)
        quote = resolve_price(Product.objects.first(), 'AU', 'CHECKOUT-99')
        self.assertEqual(quote.final_amount, Decimal('1.20'))
