import json
from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

import stripe
from django.core.management import call_command
from django.db import DatabaseError, IntegrityError
from django.test import TestCase, Client, override_settings
from django.urls import reverse
from django.utils import timezone

from accounts.models import User, Entitlement
from products.models import Product, ProductPrice
from .exceptions import (
    AmountMismatchError,
    CheckoutExpiredError,
    CheckoutNotFoundError,
    InvalidChargeError,
    PaymentGatewayError,
    PersistenceError,
)
from .gateway import PaymentConfirmation, PaymentIntentGateway
from .models import Coupon, PendingCheckout, Purchase
from .notifications import notify_purchase
from .services import (
    PurchaseOutcome,
    complete_checkout,
    finalize_purchase,
    handle_payment_intent_succeeded,
    purge_stale_checkouts,
    start_checkout,
)


def make_intent(intent_id='pi_abc123', amount=120, currency='aud', status='succeeded', amount_received=None, **extra):
    data = {
        'id': intent_id,
        'object': 'payment_intent',
        'amount': amount,
        'amount_received': amount if amount_received is None else amount_received,
        'currency': currency,
        'status': status,
        'client_secret': f'{intent_id}_secret_test',
        'metadata': {},
    }
    data.update(extra)
    return stripe.PaymentIntent.construct_from(data, 'sk_test')


class CheckoutTestMixin:
    @classmethod
    def setUpTestData(cls):
        cls.product = Product.objects.create(
            name='Big Baby Sleep Program', slug='big-baby', base_price=Decimal('120.00'), currency='USD',
        )
        ProductPrice.objects.create(product=cls.product, region='AU', currency='AUD', amount=Decimal('120.00'))
        ProductPrice.objects.create(product=cls.product, region='US', currency='USD', amount=Decimal('120.00'))
        cls.coupon = Coupon.objects.create(code='CHECKOUT-99', discount_type='percent', discount_value=Decimal('99'))
        cls.free_coupon = Coupon.objects.create(code='FREE100', discount_type='percent', discount_value=Decimal('100'))

    def make_checkout(self, email='new@example.com', intent_id='pi_abc123', final=Decimal('1.20'),
                      discount=Decimal('118.80'), coupon_code='CHECKOUT-99', **extra):
        return PendingCheckout.objects.create(
            product=self.product,
            region='AU',
            currency='AUD',
            coupon_code=coupon_code,
            original_amount=Decimal('120.00'),
            discount_amount=discount,
            final_amount=final,
            email=email,
            first_name='Ana',
            last_name='Lee',
            stripe_payment_intent_id=intent_id,
            **extra
        )

    def make_free_checkout(self, email='free@example.com', **extra):
        return self.make_checkout(
            email=email, intent_id=None, final=Decimal('0.00'), discount=Decimal('120.00'),
            coupon_code='FREE100', **extra
        )


class PaymentIntentGatewayTests(TestCase):

    def setUp(self):
        self.gateway = PaymentIntentGateway(api_key='sk_test_123')

    @patch('stripe.PaymentIntent.create')
    def test_create_intent_in_minor_units(self, mock_create):
        mock_create.return_value = make_intent(amount=120)
        handle = self.gateway.create_intent(Decimal('1.20'), 'AUD', 'a@example.com', {'checkout_token': 'tok'})

        self.assertEqual(handle.payment_intent_id, 'pi_abc123')
        self.assertEqual(handle.client_secret, 'pi_abc123_secret_test')
        self.assertFalse(handle.is_free)
        kwargs = mock_create.call_args.kwargs
        self.assertEqual(kwargs['amount'], 120)
        self.assertEqual(kwargs['currency'], 'aud')
        self.assertEqual(kwargs['metadata']['checkout_token'], 'tok')
        self.assertEqual(kwargs['metadata']['customer_email'], 'a@example.com')

    @patch('stripe.PaymentIntent.create')
    def test_zero_amount_skips_processor(self, mock_create):
        handle = self.gateway.create_intent(Decimal('0'), 'AUD', 'a@example.com', free_confirmation='free_abc')
        self.assertTrue(handle.is_free)
        self.assertEqual(handle.free_confirmation, 'free_abc')
        self.assertIsNone(handle.client_secret)
        mock_create.assert_not_called()

    def test_rejects_bad_charges(self):
        with self.assertRaises(InvalidChargeError):
            self.gateway.create_intent(Decimal('-1.00'), 'AUD', 'a@example.com')
        with self.assertRaises(InvalidChargeError):
            self.gateway.create_intent(Decimal('10.00'), 'XYZ', 'a@example.com')
        with self.assertRaises(InvalidChargeError):
            self.gateway.create_intent(Decimal('0.30'), 'USD', 'a@example.com')

    @patch('stripe.PaymentIntent.create')
    def test_connection_error_is_retryable(self, mock_create):
        mock_create.side_effect = stripe.APIConnectionError('network down')
        with self.assertRaises(PaymentGatewayError) as ctx:
            self.gateway.create_intent(Decimal('1.20'), 'AUD', 'a@example.com')
        self.assertTrue(ctx.exception.retryable)

    @patch('stripe.PaymentIntent.create')
    def test_invalid_request_maps_to_invalid_charge(self, mock_create):
        mock_create.side_effect = stripe.InvalidRequestError('Amount must be at least 50 cents', 'amount')
        with self.assertRaises(InvalidChargeError):
            self.gateway.create_intent(Decimal('1.20'), 'AUD', 'a@example.com')

    @patch('stripe.PaymentIntent.create')
    def test_other_stripe_errors_are_not_retryable(self, mock_create):
        mock_create.side_effect = stripe.AuthenticationError('bad key')
        with self.assertRaises(PaymentGatewayError) as ctx:
            self.gateway.create_intent(Decimal('1.20'), 'AUD', 'a@example.com')
        self.assertFalse(ctx.exception.retryable)

    @patch('stripe.PaymentIntent.retrieve')
    def test_confirm_intent_uses_amount_received(self, mock_retrieve):
        mock_retrieve.return_value = make_intent(amount=12000, amount_received=120)
        confirmation = self.gateway.confirm_intent('pi_abc123')
        self.assertEqual(confirmation.transaction_id, 'pi_abc123')
        self.assertEqual(confirmation.amount, Decimal('1.20'))
        self.assertEqual(confirmation.currency, 'AUD')
        self.assertFalse(confirmation.is_free)

    @patch('stripe.PaymentIntent.retrieve')
    def test_confirm_intent_not_succeeded(self, mock_retrieve):
        mock_retrieve.return_value = make_intent(status='processing')
        with self.assertRaises(PaymentGatewayError) as ctx:
            self.gateway.confirm_intent('pi_abc123')
        self.assertTrue(ctx.exception.retryable)

        mock_retrieve.return_value = make_intent(status='requires_payment_method')
        with self.assertRaises(PaymentGatewayError) as ctx:
            self.gateway.confirm_intent('pi_abc123')
        self.assertFalse(ctx.exception.retryable)

    @patch('stripe.PaymentIntent.create')
    def test_key_is_passed_per_call(self, mock_create):
        mock_create.return_value = make_intent()
        http_client = stripe.default_http_client
        global_key = stripe.api_key
        PaymentIntentGateway(api_key='sk_test_other').create_intent(Decimal('1.20'), 'AUD', 'a@example.com')

        self.assertEqual(mock_create.call_args.kwargs['api_key'], 'sk_test_other')
        self.assertEqual(stripe.api_key, global_key)
        self.assertIs(stripe.default_http_client, http_client)

    @patch('stripe.PaymentIntent.cancel')
    def test_cancel_intent(self, mock_cancel):
        mock_cancel.return_value = make_intent(status='canceled')
        self.assertEqual(self.gateway.cancel_intent('pi_abc123').status, 'canceled')
        self.assertEqual(mock_cancel.call_args.kwargs['cancellation_reason'], 'abandoned')

    @patch('stripe.PaymentIntent.cancel')
    def test_cancel_succeeded_intent_refused(self, mock_cancel):
        mock_cancel.side_effect = stripe.InvalidRequestError(
            'You cannot cancel this PaymentIntent because it has a status of succeeded.', 'intent',
        )
        with self.assertRaises(PaymentGatewayError) as ctx:
            self.gateway.cancel_intent('pi_abc123')
        self.assertFalse(ctx.exception.retryable)

    @patch('stripe.PaymentIntent.retrieve')
    def test_confirm_unknown_intent(self, mock_retrieve):
        mock_retrieve.side_effect = stripe.InvalidRequestError('No such payment_intent', 'id')
        with self.assertRaises(PaymentGatewayError) as ctx:
            self.gateway.confirm_intent('pi_missing')
        self.assertFalse(ctx.exception.retryable)


class StartCheckoutTests(CheckoutTestMixin, TestCase):

    def setUp(self):
        self.gateway = PaymentIntentGateway(api_key='sk_test_123')
        self.details = {'email': 'Parent@Example.com', 'first_name': 'Ana', 'last_name': 'Lee'}

    @patch('stripe.PaymentIntent.create')
    def test_paid_checkout_records_intent(self, mock_create):
        mock_create.return_value = make_intent(amount=120)
        checkout, handle, quote = start_checkout(self.product, self.details, 'CHECKOUT-99', 'AU', gateway=self.gateway)

        self.assertEqual(quote.final_amount, Decimal('1.20'))
        self.assertEqual(checkout.stripe_payment_intent_id, 'pi_abc123')
        self.assertEqual(checkout.email, 'parent@example.com')
        self.assertEqual(checkout.final_amount, Decimal('1.20'))
        self.assertEqual(checkout.status, PendingCheckout.STATUS_INTENT_CREATED)
        self.assertEqual(mock_create.call_args.kwargs['amount'], 120)
        self.assertEqual(mock_create.call_args.kwargs['metadata']['checkout_token'], str(checkout.token))

    @patch('stripe.PaymentIntent.create')
    def test_free_checkout_skips_processor(self, mock_create):
        checkout, handle, quote = start_checkout(self.product, self.details, 'FREE100', 'AU', gateway=self.gateway)
        self.assertTrue(handle.is_free)
        self.assertEqual(handle.free_confirmation, checkout.free_confirmation)
        self.assertIsNone(checkout.stripe_payment_intent_id)
        mock_create.assert_not_called()

    @patch('stripe.PaymentIntent.create')
    def test_every_call_reserves_a_new_intent(self, mock_create):
        mock_create.side_effect = [make_intent('pi_one', amount=12000), make_intent('pi_two', amount=120)]
        first, _, _ = start_checkout(self.product, self.details, None, 'AU', gateway=self.gateway)
        second, _, _ = start_checkout(self.product, self.details, 'CHECKOUT-99', 'AU', gateway=self.gateway)

        self.assertNotEqual(first.token, second.token)
        self.assertEqual(mock_create.call_count, 2)
        self.assertEqual(first.final_amount, Decimal('120.00'))
        self.assertEqual(second.final_amount, Decimal('1.20'))

    def test_below_minimum_creates_nothing(self):
        Coupon.objects.create(code='ALMOST', discount_type='fixed', discount_value=Decimal('119.70'))
        with self.assertRaises(InvalidChargeError):
            start_checkout(self.product, self.details, 'ALMOST', 'AU', gateway=self.gateway)
        self.assertFalse(PendingCheckout.objects.exists())

    @patch('stripe.PaymentIntent.create')
    def test_gateway_failure_marks_checkout_failed(self, mock_create):
        mock_create.side_effect = stripe.APIConnectionError('timeout')
        with self.assertRaises(PaymentGatewayError):
            start_checkout(self.product, self.details, None, 'AU', gateway=self.gateway)
        checkout = PendingCheckout.objects.get()
        self.assertEqual(checkout.status, PendingCheckout.STATUS_FAILED)


class FinalizePurchaseTests(CheckoutTestMixin, TestCase):

    def confirmation(self, transaction_id='pi_abc123', amount='1.20', currency='AUD'):
        return PaymentConfirmation(transaction_id, Decimal(amount), currency)

    def test_new_customer(self):
        checkout = self.make_checkout()
        outcome = finalize_purchase(checkout, self.confirmation())

        self.assertTrue(outcome.is_new_customer)
        self.assertFalse(outcome.duplicate)
        self.assertEqual(outcome.redirect_target, 'profile-completion')

        customer = User.objects.get(email='new@example.com')
        self.assertTrue(customer.requires_profile_completion)
        self.assertEqual(customer.first_name, 'Ana')
        self.assertTrue(customer.has_entitlement(self.product))

        purchase = outcome.purchase
        self.assertEqual(purchase.transaction_id, 'pi_abc123')
        self.assertEqual(purchase.final_amount, Decimal('1.20'))
        self.assertEqual(purchase.discount_amount, Decimal('118.80'))
        self.assertEqual(purchase.coupon, self.coupon)
        self.assertTrue(purchase.was_new_customer)

        checkout.refresh_from_db()
        self.assertEqual(checkout.status, PendingCheckout.STATUS_RECORD_PERSISTED)
        self.assertEqual(
            outcome.as_dict(),
            {'success': True, 'redirectTarget': 'profile-completion', 'purchaseId': purchase.id, 'duplicate': False},
        )

    def test_existing_customer(self):
        existing = User.objects.create_user('Parent@example.com', first_name='Maria')
        checkout = self.make_checkout(email='PARENT@example.com')
        outcome = finalize_purchase(checkout, self.confirmation(), {'first_name': 'Other'})

        self.assertFalse(outcome.is_new_customer)
        self.assertEqual(outcome.redirect_target, 'home')
        self.assertEqual(outcome.customer, existing)
        existing.refresh_from_db()
        self.assertEqual(existing.first_name, 'Maria')
        self.assertEqual(User.objects.count(), 1)

    def test_same_transaction_is_idempotent(self):
        checkout = self.make_checkout()
        first = finalize_purchase(checkout, self.confirmation())
        second = finalize_purchase(checkout, self.confirmation())

        self.assertTrue(second.duplicate)
        self.assertEqual(first.purchase.id, second.purchase.id)
        self.assertEqual(second.redirect_target, 'profile-completion')
        self.assertEqual(Purchase.objects.count(), 1)
        self.assertEqual(Entitlement.objects.count(), 1)
        self.assertEqual(User.objects.count(), 1)

    def test_repurchase_of_owned_course(self):
        finalize_purchase(self.make_checkout(), self.confirmation())
        outcome = finalize_purchase(
            self.make_checkout(intent_id='pi_def456'), self.confirmation('pi_def456'),
        )

        self.assertFalse(outcome.is_new_customer)
        self.assertFalse(outcome.duplicate)
        self.assertEqual(Purchase.objects.count(), 2)
        self.assertEqual(Entitlement.objects.count(), 1)

    def test_amount_mismatch_rejected(self):
        checkout = self.make_checkout()
        with self.assertLogs('payments.services', level='CRITICAL'):
            with self.assertRaises(AmountMismatchError):
                finalize_purchase(checkout, self.confirmation(amount='120.00'))

        self.assertFalse(Purchase.objects.exists())
        self.assertFalse(User.objects.exists())
        checkout.refresh_from_db()
        self.assertEqual(checkout.status, PendingCheckout.STATUS_FAILED)

    def test_currency_mismatch_rejected(self):
        with self.assertRaises(AmountMismatchError):
            finalize_purchase(self.make_checkout(), self.confirmation(currency='USD'))

    def test_one_minor_unit_rounding_tolerated(self):
        outcome = finalize_purchase(self.make_checkout(), self.confirmation(amount='1.21'))
        self.assertEqual(outcome.purchase.final_amount, Decimal('1.20'))

    def test_persistence_failure_rolls_back(self):
        checkout = self.make_checkout()
        with patch('payments.services.Purchase.objects.create', side_effect=DatabaseError('disk full')):
            with self.assertLogs('payments.services', level='CRITICAL') as logs:
                with self.assertRaises(PersistenceError):
                    finalize_purchase(checkout, self.confirmation())

        self.assertIn('pi_abc123', logs.output[0])
        self.assertFalse(User.objects.filter(email='new@example.com').exists())
        self.assertFalse(Entitlement.objects.exists())
        checkout.refresh_from_db()
        self.assertEqual(checkout.status, PendingCheckout.STATUS_FAILED)

    def test_concurrent_duplicate_resolves_to_existing_purchase(self):
        # Another request recorded the purchase after our initial lookup.
        owner = User.objects.create_user('first@example.com')
        existing = Purchase.objects.create(
            transaction_id='pi_abc123', customer=owner, product=self.product,
            original_amount=Decimal('120.00'), discount_amount=Decimal('118.80'),
            final_amount=Decimal('1.20'), currency='AUD',
        )
        with patch('payments.services._existing_purchase', side_effect=[None, existing]):
            outcome = finalize_purchase(self.make_checkout(), self.confirmation())

        self.assertTrue(outcome.duplicate)
        self.assertEqual(outcome.purchase.id, existing.id)
        self.assertEqual(Purchase.objects.count(), 1)
        self.assertFalse(User.objects.filter(email='new@example.com').exists())

    def test_concurrent_new_customer_resolves_to_existing_purchase(self):
        # The winning request already created the same new customer and the
        # purchase; this request did not see that user when it looked.
        winner = User.objects.create_provisional_user('new@example.com')
        existing = Purchase.objects.create(
            transaction_id='pi_abc123', customer=winner, product=self.product,
            original_amount=Decimal('120.00'), discount_amount=Decimal('118.80'),
            final_amount=Decimal('1.20'), currency='AUD', was_new_customer=True,
        )
        checkout = self.make_checkout()

        def create_user_again(checkout, details):
            return User.objects.create_provisional_user(checkout.email), True

        with patch('payments.services._existing_purchase', side_effect=[None, existing]), \
                patch('payments.services._identify_customer', side_effect=create_user_again):
            outcome = finalize_purchase(checkout, self.confirmation())

        self.assertTrue(outcome.duplicate)
        self.assertEqual(outcome.purchase.id, existing.id)
        self.assertEqual(outcome.redirect_target, 'profile-completion')
        self.assertEqual(User.objects.filter(email='new@example.com').count(), 1)
        self.assertEqual(Purchase.objects.count(), 1)
        self.assertEqual(checkout.status, PendingCheckout.STATUS_PAYMENT_CONFIRMED)
        checkout.refresh_from_db()
        self.assertEqual(checkout.status, PendingCheckout.STATUS_PAYMENT_CONFIRMED)

    def test_integrity_conflict_without_purchase_is_retried(self):
        customer = User.objects.create_user('new@example.com')
        checkout = self.make_checkout()
        with patch('payments.services._identify_customer',
                   side_effect=[IntegrityError('duplicate email'), (customer, False)]):
            outcome = finalize_purchase(checkout, self.confirmation())

        self.assertFalse(outcome.duplicate)
        self.assertEqual(outcome.customer, customer)
        self.assertEqual(Purchase.objects.get().transaction_id, 'pi_abc123')
        checkout.refresh_from_db()
        self.assertEqual(checkout.status, PendingCheckout.STATUS_RECORD_PERSISTED)

    def test_repeated_integrity_conflict_is_a_persistence_failure(self):
        checkout = self.make_checkout()
        with patch('payments.services._identify_customer', side_effect=IntegrityError('duplicate email')):
            with self.assertLogs('payments.services', level='CRITICAL'):
                with self.assertRaises(PersistenceError):
                    finalize_purchase(checkout, self.confirmation())

        self.assertFalse(Purchase.objects.exists())
        checkout.refresh_from_db()
        self.assertEqual(checkout.status, PendingCheckout.STATUS_FAILED)

    def test_duplicate_transaction_leaves_checkout_status_in_sync(self):
        owner = User.objects.create_user('first@example.com')
        existing = Purchase.objects.create(
            transaction_id='pi_abc123', customer=owner, product=self.product,
            original_amount=Decimal('120.00'), discount_amount=Decimal('118.80'),
            final_amount=Decimal('1.20'), currency='AUD',
        )
        checkout = self.make_checkout()
        with patch('payments.services._existing_purchase', side_effect=[None, existing]):
            finalize_purchase(checkout, self.confirmation())

        self.assertEqual(checkout.status, PendingCheckout.STATUS_PAYMENT_CONFIRMED)

    def test_recurring_product_upgrades_tier(self):
        plan = Product.objects.create(
            name='Gold Membership', slug='gold', base_price=Decimal('199.00'), currency='AUD',
            entitlement_type=Product.ENTITLEMENT_RECURRING, grants_tier=User.TIER_GOLD,
        )
        checkout = PendingCheckout.objects.create(
            product=plan, currency='AUD', original_amount=Decimal('199.00'),
            final_amount=Decimal('199.00'), email='gold@example.com', stripe_payment_intent_id='pi_gold',
        )
        outcome = finalize_purchase(checkout, self.confirmation('pi_gold', amount='199.00'))
        outcome.customer.refresh_from_db()
        self.assertEqual(outcome.customer.subscription_tier, User.TIER_GOLD)


class CompleteCheckoutTests(CheckoutTestMixin, TestCase):

    def setUp(self):
        self.gateway = PaymentIntentGateway(api_key='sk_test_123')

    @patch('stripe.PaymentIntent.retrieve')
    def test_paid_completion(self, mock_retrieve):
        checkout = self.make_checkout()
        mock_retrieve.return_value = make_intent(amount=120)
        outcome = complete_checkout(payment_intent_id='pi_abc123', checkout_token=str(checkout.token), gateway=self.gateway)
        self.assertEqual(outcome.purchase.transaction_id, 'pi_abc123')

        # A retry never goes back to the processor.
        mock_retrieve.reset_mock()
        again = complete_checkout(payment_intent_id='pi_abc123', gateway=self.gateway)
        self.assertTrue(again.duplicate)
        mock_retrieve.assert_not_called()

    @patch('stripe.PaymentIntent.retrieve')
    def test_paid_completion_not_succeeded(self, mock_retrieve):
        self.make_checkout()
        mock_retrieve.return_value = make_intent(status='requires_payment_method')
        with self.assertRaises(PaymentGatewayError):
            complete_checkout(payment_intent_id='pi_abc123', gateway=self.gateway)
        self.assertFalse(Purchase.objects.exists())

    @patch('stripe.PaymentIntent.retrieve')
    def test_free_completion(self, mock_retrieve):
        checkout = self.make_free_checkout()
        outcome = complete_checkout(free_confirmation=checkout.free_confirmation, gateway=self.gateway)

        self.assertTrue(outcome.purchase.is_free)
        self.assertEqual(outcome.purchase.transaction_id, checkout.free_confirmation)
        self.assertEqual(outcome.purchase.final_amount, Decimal('0.00'))
        self.assertTrue(User.objects.get(email='free@example.com').has_entitlement(self.product))
        mock_retrieve.assert_not_called()

    def test_free_marker_reused_after_success_is_duplicate(self):
        checkout = self.make_free_checkout()
        first = complete_checkout(free_confirmation=checkout.free_confirmation, gateway=self.gateway)
        second = complete_checkout(free_confirmation=checkout.free_confirmation, gateway=self.gateway)
        self.assertEqual(first.purchase.id, second.purchase.id)
        self.assertTrue(second.duplicate)

    def test_expired_free_checkout(self):
        checkout = self.make_free_checkout(expires_at=timezone.now() - timedelta(minutes=1))
        with self.assertRaises(CheckoutExpiredError):
            complete_checkout(free_confirmation=checkout.free_confirmation, gateway=self.gateway)
        checkout.refresh_from_db()
        self.assertEqual(checkout.status, PendingCheckout.STATUS_EXPIRED)

    def test_free_marker_on_paid_checkout_rejected(self):
        checkout = self.make_checkout()
        with self.assertRaises(InvalidChargeError):
            complete_checkout(free_confirmation=checkout.free_confirmation, gateway=self.gateway)

    def test_unknown_free_marker(self):
        with self.assertRaises(CheckoutNotFoundError):
            complete_checkout(free_confirmation='free_not-a-token', gateway=self.gateway)
        with self.assertRaises(CheckoutNotFoundError):
            complete_checkout(free_confirmation='bogus', gateway=self.gateway)

    def test_checkout_token_must_match(self):
        checkout = self.make_free_checkout()
        with self.assertRaises(CheckoutNotFoundError):
            complete_checkout(
                free_confirmation=checkout.free_confirmation,
                checkout_token='00000000-0000-0000-0000-000000000000',
                gateway=self.gateway,
            )


class NotifyPurchaseTests(CheckoutTestMixin, TestCase):

    def setUp(self):
        self.outcome = finalize_purchase(
            self.make_checkout(), PaymentConfirmation('pi_abc123', Decimal('1.20'), 'AUD'),
        )

    @patch('core.email_utils.send_transactional_email_task.delay')
    @patch('payments.notifications.send_klaviyo_event_task.delay')
    @patch('payments.notifications.send_slack_message_task.delay')
    def test_fans_out_to_every_channel(self, slack, klaviyo, email):
        results = notify_purchase(self.outcome)

        self.assertEqual(results, {'slack': True, 'klaviyo': True, 'email': True})
        slack.assert_called_once_with(self.outcome.purchase.id)
        klaviyo.assert_called_once_with(self.outcome.purchase.id)
        recipient, subject, template_name, context = email.call_args.args
        self.assertEqual(recipient, 'new@example.com')
        self.assertEqual(template_name, 'emails/welcome_profile_completion.html')
        self.assertEqual(context['purchase_id'], self.outcome.purchase.id)
        self.assertTrue(context['redirect_url'].endswith('/profile-completion'))

    @patch('core.email_utils.send_transactional_email_task.delay')
    @patch('payments.notifications.send_klaviyo_event_task.delay')
    @patch('payments.notifications.send_slack_message_task.delay')
    def test_existing_customer_gets_confirmation(self, slack, klaviyo, email):
        outcome = PurchaseOutcome(
            purchase=self.outcome.purchase, customer=self.outcome.customer,
            is_new_customer=False, redirect_target='home',
        )
        notify_purchase(outcome)
        self.assertEqual(email.call_args.args[2], 'emails/purchase_confirmation.html')

    @patch('core.email_utils.send_transactional_email_task.delay')
    @patch('payments.notifications.send_klaviyo_event_task.delay')
    @patch('payments.notifications.send_slack_message_task.delay')
    def test_channel_failure_is_isolated(self, slack, klaviyo, email):
        slack.side_effect = ConnectionError('broker down')
        with self.assertLogs('payments.notifications', level='WARNING'):
            results = notify_purchase(self.outcome)

        self.assertEqual(results, {'slack': False, 'klaviyo': True, 'email': True})
        klaviyo.assert_called_once()
        email.assert_called_once()

    @patch('payments.notifications.send_slack_message_task.delay')
    def test_duplicates_are_not_renotified(self, slack):
        duplicate = finalize_purchase(
            self.make_checkout(intent_id=None), PaymentConfirmation('pi_abc123', Decimal('1.20'), 'AUD'),
        )
        self.assertTrue(duplicate.duplicate)
        self.assertEqual(notify_purchase(duplicate), {})
        slack.assert_not_called()


class PurgeStaleCheckoutsTests(CheckoutTestMixin, TestCase):

    def setUp(self):
        self.gateway = PaymentIntentGateway(api_key='sk_test_123')

    @patch('stripe.PaymentIntent.cancel')
    def test_expires_and_deletes(self, mock_cancel):
        mock_cancel.return_value = make_intent('pi_old', status='canceled')
        abandoned = self.make_checkout(intent_id='pi_old', expires_at=timezone.now() - timedelta(minutes=5))
        active = self.make_checkout(intent_id='pi_new')
        finished = self.make_checkout(intent_id='pi_done', status=PendingCheckout.STATUS_RECORD_PERSISTED)
        PendingCheckout.objects.filter(pk=finished.pk).update(updated_at=timezone.now() - timedelta(hours=48))

        expired, deleted = purge_stale_checkouts(gateway=self.gateway)

        self.assertEqual((expired, deleted), (1, 1))
        mock_cancel.assert_called_once()
        self.assertEqual(mock_cancel.call_args.args[0], 'pi_old')
        self.assertEqual(mock_cancel.call_args.kwargs['api_key'], 'sk_test_123')
        abandoned.refresh_from_db()
        self.assertEqual(abandoned.status, PendingCheckout.STATUS_EXPIRED)
        active.refresh_from_db()
        self.assertEqual(active.status, PendingCheckout.STATUS_INTENT_CREATED)
        self.assertFalse(PendingCheckout.objects.filter(pk=finished.pk).exists())

    @patch('stripe.PaymentIntent.cancel')
    def test_free_checkout_expires_without_processor(self, mock_cancel):
        free = self.make_free_checkout(expires_at=timezone.now() - timedelta(minutes=5))
        self.assertEqual(purge_stale_checkouts(gateway=self.gateway), (1, 0))
        mock_cancel.assert_not_called()
        free.refresh_from_db()
        self.assertEqual(free.status, PendingCheckout.STATUS_EXPIRED)

    @patch('stripe.PaymentIntent.cancel')
    def test_uncancellable_intent_stays_open_for_late_payment(self, mock_cancel):
        # Delayed payment methods can still succeed after the checkout window.
        mock_cancel.side_effect = stripe.InvalidRequestError(
            'You cannot cancel this PaymentIntent because it has a status of processing.', 'intent',
        )
        checkout = self.make_checkout(intent_id='pi_late', expires_at=timezone.now() - timedelta(minutes=5))
        now = timezone.now()

        self.assertEqual(purge_stale_checkouts(now=now + timedelta(hours=1), gateway=self.gateway), (0, 0))
        self.assertEqual(purge_stale_checkouts(now=now + timedelta(hours=26), gateway=self.gateway), (0, 0))
        checkout.refresh_from_db()
        self.assertEqual(checkout.status, PendingCheckout.STATUS_INTENT_CREATED)

        outcome = handle_payment_intent_succeeded(make_intent('pi_late'), gateway=self.gateway)
        self.assertIsNotNone(outcome)
        self.assertEqual(outcome.purchase.transaction_id, 'pi_late')
        self.assertTrue(User.objects.get(email='new@example.com').has_entitlement(self.product))

    @patch('stripe.PaymentIntent.cancel')
    def test_processor_outage_retries_next_run(self, mock_cancel):
        mock_cancel.side_effect = stripe.APIConnectionError('network down')
        checkout = self.make_checkout(expires_at=timezone.now() - timedelta(minutes=5))
        self.assertEqual(purge_stale_checkouts(gateway=self.gateway), (0, 0))

        mock_cancel.side_effect = None
        mock_cancel.return_value = make_intent(status='canceled')
        self.assertEqual(purge_stale_checkouts(gateway=self.gateway), (1, 0))
        checkout.refresh_from_db()
        self.assertEqual(checkout.status, PendingCheckout.STATUS_EXPIRED)

    @override_settings(STRIPE_SECRET_KEY='sk_test_123')
    @patch('stripe.PaymentIntent.cancel')
    def test_management_command(self, mock_cancel):
        mock_cancel.return_value = make_intent(status='canceled')
        self.make_checkout(expires_at=timezone.now() - timedelta(minutes=5))
        out = StringIO()
        call_command('purge_checkouts', stdout=out)
        self.assertIn('Expired 1', out.getvalue())


@override_settings(STRIPE_SECRET_KEY='sk_test_123', STRIPE_WEBHOOK_SECRET='whsec_test')
class CheckoutViewTests(CheckoutTestMixin, TestCase):

    def setUp(self):
        self.client = Client()

    def post_json(self, name, payload):
        return self.client.post(reverse(name), data=json.dumps(payload), content_type='application/json')

    def test_product_price_by_country(self):
        response = self.client.get(reverse('payments:product_price', args=[self.product.id]), {'country': 'NZ'})
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data['currency'], 'AUD')
        self.assertEqual(data['price'], '120.00')
        self.assertEqual(data['region'], 'AU')

    def test_product_price_from_cdn_header(self):
        response = self.client.get(reverse('payments:product_price', args=[self.product.id]), HTTP_CF_IPCOUNTRY='AU')
        self.assertEqual(response.json()['currency'], 'AUD')

    def test_product_price_unknown_product(self):
        response = self.client.get(reverse('payments:product_price', args=[9999]))
        self.assertEqual(response.status_code, 404)

    def test_validate_coupon_by_amount(self):
        response = self.post_json('payments:validate_coupon', {'code': 'checkout-99', 'amount': '120.00', 'currency': 'AUD'})
        data = response.json()
        self.assertTrue(data['valid'])
        self.assertEqual(data['discountAmount'], '118.80')
        self.assertEqual(data['finalAmount'], '1.20')
        self.assertEqual(data['coupon']['code'], 'CHECKOUT-99')

    def test_validate_coupon_by_product(self):
        response = self.post_json('payments:validate_coupon', {'code': 'CHECKOUT-99', 'productId': self.product.id, 'region': 'AU'})
        self.assertEqual(response.json()['finalAmount'], '1.20')

    def test_validate_bogus_coupon(self):
        response = self.post_json('payments:validate_coupon', {'code': 'BOGUS', 'amount': 120, 'currency': 'AUD'})
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertFalse(data['valid'])
        self.assertEqual(data['discountAmount'], '0.00')
        self.assertEqual(data['finalAmount'], '120.00')

    def test_validate_coupon_bad_requests(self):
        response = self.client.post(reverse('payments:validate_coupon'), data='not json', content_type='application/json')
        self.assertEqual(response.status_code, 400)
        response = self.post_json('payments:validate_coupon', {'code': 'CHECKOUT-99'})
        self.assertEqual(response.status_code, 400)

    @patch('stripe.PaymentIntent.create')
    def test_create_payment_intent(self, mock_create):
        mock_create.return_value = make_intent(amount=120)
        response = self.post_json('payments:create_payment_intent', {
            'productId': self.product.id,
            'couponCode': 'CHECKOUT-99',
            'region': 'AU',
            'customerDetails': {'email': 'new@example.com', 'firstName': 'Ana', 'lastName': 'Lee'},
        })
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data['clientSecret'], 'pi_abc123_secret_test')
        self.assertEqual(data['paymentIntentId'], 'pi_abc123')
        self.assertEqual(data['finalAmount'], '1.20')
        self.assertEqual(data['originalAmount'], '120.00')
        self.assertEqual(data['discountAmount'], '118.80')
        self.assertTrue(PendingCheckout.objects.filter(token=data['checkoutToken'], first_name='Ana').exists())

    @patch('stripe.PaymentIntent.create')
    def test_create_payment_intent_free(self, mock_create):
        response = self.post_json('payments:create_payment_intent', {
            'productId': self.product.id,
            'couponCode': 'FREE100',
            'customerDetails': {'email': 'free@example.com'},
        })
        data = response.json()
        self.assertTrue(data['free'])
        self.assertTrue(data['freeConfirmation'].startswith('free_'))
        self.assertNotIn('clientSecret', data)
        mock_create.assert_not_called()

    def test_create_payment_intent_invalid_coupon(self):
        response = self.post_json('payments:create_payment_intent', {
            'productId': self.product.id,
            'couponCode': 'BOGUS',
            'region': 'AU',
            'customerDetails': {'email': 'new@example.com'},
        })
        self.assertEqual(response.status_code, 400)
        data = response.json()
        self.assertEqual(data['error'], 'invalid_coupon')
        self.assertEqual(data['finalAmount'], '120.00')

    def test_create_payment_intent_requires_email(self):
        response = self.post_json('payments:create_payment_intent', {
            'productId': self.product.id, 'customerDetails': {'firstName': 'Ana'},
        })
        self.assertEqual(response.status_code, 400)
        self.assertIn('email', response.json()['errors'])

    @patch('payments.views.notify_purchase')
    @patch('stripe.PaymentIntent.retrieve')
    def test_complete_purchase(self, mock_retrieve, mock_notify):
        checkout = self.make_checkout()
        mock_retrieve.return_value = make_intent(amount=120)

        response = self.post_json('payments:complete_purchase', {
            'paymentIntentId': 'pi_abc123',
            'checkoutToken': str(checkout.token),
            'customerDetails': {'email': 'new@example.com'},
        })
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertTrue(data['success'])
        self.assertEqual(data['redirectTarget'], 'profile-completion')
        purchase_id = data['purchaseId']

        again = self.post_json('payments:complete_purchase', {'paymentIntentId': 'pi_abc123'})
        self.assertEqual(again.json()['purchaseId'], purchase_id)
        self.assertEqual(again.json()['redirectTarget'], 'profile-completion')
        self.assertEqual(Purchase.objects.count(), 1)
        self.assertTrue(mock_notify.call_args.args[0].duplicate)

    @patch('payments.views.notify_purchase')
    def test_complete_free_purchase(self, mock_notify):
        checkout = self.make_free_checkout()
        response = self.post_json('payments:complete_purchase', {'freeConfirmation': checkout.free_confirmation})
        self.assertEqual(response.status_code, 200)
        self.assertTrue(Purchase.objects.get(pk=response.json()['purchaseId']).is_free)
        mock_notify.assert_called_once()

    def test_complete_purchase_errors(self):
        response = self.post_json('payments:complete_purchase', {})
        self.assertEqual(response.status_code, 400)

        expired = self.make_free_checkout(expires_at=timezone.now() - timedelta(minutes=1))
        response = self.post_json('payments:complete_purchase', {'freeConfirmation': expired.free_confirmation})
        self.assertEqual(response.status_code, 410)
        self.assertEqual(response.json()['error'], 'checkout_expired')

    def _event(self, event_type, intent):
        return stripe.Event.construct_from(
            {'id': 'evt_test', 'object': 'event', 'type': event_type, 'data': {'object': intent}}, 'sk_test',
        )

    @patch('payments.views.notify_purchase')
    @patch('stripe.Webhook.construct_event')
    def test_webhook_payment_succeeded(self, mock_construct, mock_notify):
        self.make_checkout()
        intent = {
            'id': 'pi_abc123', 'object': 'payment_intent', 'amount': 120, 'amount_received': 120,
            'currency': 'aud', 'status': 'succeeded', 'metadata': {},
        }
        mock_construct.return_value = self._event('payment_intent.succeeded', intent)

        response = self.client.post(reverse('payments:webhook'), data=b'{}', content_type='application/json', HTTP_STRIPE_SIGNATURE='t=1,v1=x')
        self.assertEqual(response.status_code, 200)
        purchase = Purchase.objects.get(transaction_id='pi_abc123')
        mock_notify.assert_called_once()

        # Browser completes after the webhook: same purchase.
        with patch('stripe.PaymentIntent.retrieve') as mock_retrieve:
            response = self.post_json('payments:complete_purchase', {'paymentIntentId': 'pi_abc123'})
            mock_retrieve.assert_not_called()
        self.assertEqual(response.json()['purchaseId'], purchase.id)

    @patch('stripe.Webhook.construct_event')
    def test_webhook_payment_failed(self, mock_construct):
        checkout = self.make_checkout()
        intent = {
            'id': 'pi_abc123', 'object': 'payment_intent', 'amount': 120, 'currency': 'aud',
            'status': 'requires_payment_method', 'last_payment_error': {'message': 'Your card was declined.'},
        }
        mock_construct.return_value = self._event('payment_intent.payment_failed', intent)

        response = self.client.post(reverse('payments:webhook'), data=b'{}', content_type='application/json')
        self.assertEqual(response.status_code, 200)
        checkout.refresh_from_db()
        self.assertEqual(checkout.status, PendingCheckout.STATUS_FAILED)
        self.assertEqual(checkout.failure_reason, 'Your card was declined.')

    @patch('stripe.Webhook.construct_event')
    def test_webhook_bad_signature(self, mock_construct):
        mock_construct.side_effect = stripe.SignatureVerificationError('bad signature', 't=1,v1=x')
        response = self.client.post(reverse('payments:webhook'), data=b'{}', content_type='application/json')
        self.assertEqual(response.status_code, 400)
