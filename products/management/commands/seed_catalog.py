from decimal import Decimal
from django.core.management.base import BaseCommand
from django.db import transaction
from products.models import Product, ProductPrice
from payments.models import Coupon

REGIONAL_PRICES = [
    ('AU', 'AUD', Decimal('120.00')),
    ('US', 'USD', Decimal('120.00')),
    ('EU', 'EUR', Decimal('120.00')),
]

COURSES = [
    ('Big Baby Sleep Program', 'big-baby-sleep-program', 'Sleep program for babies 4-8 months.'),
    ('Little Baby Sleep Program', 'little-baby-sleep-program', 'Sleep program for babies 4-16 weeks.'),
    ('Pre-Toddler Sleep Program', 'pre-toddler-sleep-program', 'Sleep program for babies 8-12 months.'),
]


class Command(BaseCommand):
    help = 'Creates the course catalog with regional prices and the launch coupon. Safe to run repeatedly.'

    def add_arguments(self, parser):
        parser.add_argument('--skip-coupon', action='store_true', help='Do not create the CHECKOUT-99 coupon.')

    @transaction.atomic
    def handle(self, *args, **options):
        for name, slug, description in COURSES:
            product, created = Product.objects.update_or_create(
                slug=slug,
                defaults={
                    'name': name,
                    'description': description,
                    'base_price': Decimal('120.00'),
                    'currency': 'USD',
                    'entitlement_type': Product.ENTITLEMENT_ONE_TIME,
                    'is_active': True,
                },
            )
            for region, currency, amount in REGIONAL_PRICES:
                ProductPrice.objects.update_or_create(
                    product=product, region=region,
                    defaults={'currency': currency, 'amount': amount},
                )
            verb = 'Created' if created else 'Updated'
            self.stdout.write(f"{verb} {product.name} ({len(REGIONAL_PRICES)} regional prices)")

        if not options['skip_coupon']:
            coupon, created = Coupon.objects.get_or_create(
                code='CHECKOUT-99',
                defaults={
                    'discount_type': Coupon.DISCOUNT_TYPE_PERCENT,
                    'discount_value': Decimal('99'),
                    'active': True,
                },
            )
            if created:
                self.stdout.write(f"Created coupon {coupon.code} ({coupon.description})")

        self.stdout.write(self.style.SUCCESS('Catalog seeded.'))
