from django.db import models
from django.conf import settings
from django.contrib.auth.models import AbstractUser, BaseUserManager
from django.utils.translation import gettext_lazy as _


class UserManager(BaseUserManager):
    """Custom manager for the User model. Accounts are keyed by email."""

    def normalize_email(self, email):
        return (email or '').strip().lower()

    def get_by_email(self, email):
        """Case-insensitive exact match on email."""
        return self.get_queryset().get(email__iexact=self.normalize_email(email))

    def create_user(self, email, password=None, **extra_fields):
        if not email:
            raise ValueError('The Email field must be set')
        email = self.normalize_email(email)
        extra_fields.setdefault('username', email)
        user = self.model(email=email, **extra_fields)
        user.set_password(password)
        user.save(using=self._db)
        return user

    def create_provisional_user(self, email, first_name='', last_name='', **extra_fields):
        """
        Creates the account for a first-time purchaser. The owner still has to
        set a name/password before getting full account access.
        """
        extra_fields.setdefault('requires_profile_completion', True)
        return self.create_user(email, password=None, first_name=first_name, last_name=last_name, **extra_fields)

    def create_superuser(self, email, password=None, **extra_fields):
        extra_fields.setdefault('is_staff', True)
        extra_fields.setdefault('is_superuser', True)
        extra_fields.setdefault('is_active', True)

        if extra_fields.get('is_staff') is not True:
            raise ValueError('Superuser must have is_staff=True.')
        if extra_fields.get('is_superuser') is not True:
            raise ValueError('Superuser must have is_superuser=True.')
        return self.create_user(email, password, **extra_fields)


class User(AbstractUser):
    TIER_FREE = 'free'
    TIER_GOLD = 'gold'
    TIER_PLATINUM = 'platinum'
    TIER_CHOICES = [
        (TIER_FREE, 'Free'),
        (TIER_GOLD, 'Gold'),
        (TIER_PLATINUM, 'Platinum'),
    ]
    TIER_RANK = {TIER_FREE: 0, TIER_GOLD: 1, TIER_PLATINUM: 2}

    email = models.EmailField(_('email address'), unique=True)
    subscription_tier = models.CharField(max_length=20, choices=TIER_CHOICES, default=TIER_FREE)
    requires_profile_completion = models.BooleanField(
        default=False,
        help_text=_("Set for accounts created at checkout until the owner sets a name and password.")
    )
    phone = models.CharField(max_length=30, blank=True)
    country = models.CharField(max_length=2, blank=True)

    # Stripe Customer ID
    stripe_customer_id = models.CharField(max_length=255, blank=True, null=True,
                                          help_text="The ID of this user in Stripe (e.g. cus_12345).")

    objects = UserManager()

    EMAIL_FIELD = 'email'
    REQUIRED_FIELDS = ['email']

    def save(self, *args, **kwargs):
        self.email = (self.email or '').strip().lower()
        if not self.username:
            self.username = self.email
        super().save(*args, **kwargs)

    def upgrade_tier(self, tier):
        """Raises the subscription tier; a purchase never lowers it."""
        if self.TIER_RANK.get(tier, 0) > self.TIER_RANK.get(self.subscription_tier, 0):
            self.subscription_tier = tier
            self.save(update_fields=['subscription_tier'])
            return True
        return False

    def has_entitlement(self, product):
        return self.entitlements.filter(product=product).exists()

    def __str__(self):
        return self.email


class Entitlement(models.Model):
    """The right of a customer to access a product's content. One row per (user, product)."""
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='entitlements')
    product = models.ForeignKey('products.Product', on_delete=models.CASCADE, related_name='entitlements')
    granted_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=['user', 'product'], name='unique_user_product_entitlement'),
        ]

    def __str__(self):
        return f"{self.user.email} -> {self.product.name}"
