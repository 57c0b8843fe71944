from decimal import Decimal

from django.db import IntegrityError
from django.test import TestCase

from products.models import Product
from .models import User, Entitlement


class UserManagerTests(TestCase):

    def test_create_user_normalizes_email(self):
        user = User.objects.create_user('  Parent@Example.COM ', password='password123')
        self.assertEqual(user.email, 'parent@example.com')
        self.assertEqual(user.username, 'parent@example.com')
        self.assertTrue(user.check_password('password123'))
        self.assertFalse(user.requires_profile_completion)

    def test_create_provisional_user(self):
        user = User.objects.create_provisional_user('new@example.com', first_name='Ana', last_name='Lee')
        self.assertTrue(user.requires_profile_completion)
        self.assertFalse(user.has_usable_password())
        self.assertEqual(user.first_name, 'Ana')
        self.assertEqual(user.subscription_tier, User.TIER_FREE)

    def test_get_by_email_is_case_insensitive(self):
        user = User.objects.create_user('someone@example.com')
        self.assertEqual(User.objects.get_by_email('SomeOne@Example.com'), user)

    def test_email_is_unique(self):
        User.objects.create_user('dup@example.com')
        with self.assertRaises(IntegrityError):
            User.objects.create_user('DUP@example.com', username='other')

    def test_create_superuser(self):
        admin = User.objects.create_superuser('admin@example.com', password='x')
        self.assertTrue(admin.is_staff)
        self.assertTrue(admin.is_superuser)


class TierAndEntitlementTests(TestCase):
    @classmethod
    def setUpTestData(cls):
        cls.user = User.objects.create_user('member@example.com')
        cls.course = Product.objects.create(name='Course', slug='course', base_price=Decimal('120.00'))

    def test_upgrade_tier_never_lowers(self):
        self.assertTrue(self.user.upgrade_tier(User.TIER_PLATINUM))
        self.assertFalse(self.user.upgrade_tier(User.TIER_GOLD))
        self.user.refresh_from_db()
        self.assertEqual(self.user.subscription_tier, User.TIER_PLATINUM)

    def test_one_entitlement_per_product(self):
        Entitlement.objects.create(user=self.user, product=self.course)
        self.assertTrue(self.user.has_entitlement(self.course))
        with self.assertRaises(IntegrityError):
            Entitlement.objects.create(user=self.user, product=self.course)
