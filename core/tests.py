from decimal import Decimal
from unittest.mock import patch, Mock

import requests
from django.core import mail
from django.test import TestCase, override_settings

from accounts.models import User
from payments.models import Purchase
from products.models import Product
from .klaviyo_service import KlaviyoError, KlaviyoService, placed_order_properties
from .slack_service import SlackService, build_payment_blocks
from .tasks import send_klaviyo_event_task, send_slack_message_task, send_transactional_email_task


class PurchaseFixtureMixin:
    @classmethod
    def setUpTestData(cls):
        cls.customer = User.objects.create_user('parent@example.com', first_name='Ana', last_name='Lee')
        cls.product = Product.objects.create(name='Big Baby Sleep Program', slug='big-baby', base_price=Decimal('120.00'))
        cls.purchase = Purchase.objects.create(
            transaction_id='pi_abc123',
            customer=cls.customer,
            product=cls.product,
            coupon_code='CHECKOUT-99',
            original_amount=Decimal('120.00'),
            discount_amount=Decimal('118.80'),
            final_amount=Decimal('1.20'),
            currency='AUD',
        )


class SlackServiceTests(PurchaseFixtureMixin, TestCase):

    @patch('core.slack_service.requests.post')
    def test_send_message(self, mock_post):
        mock_post.return_value = Mock(ok=True)
        service = SlackService(webhook_url='https://hooks.slack.test/abc', timeout=3)
        self.assertTrue(service.send_message('hello', blocks=[{'type': 'divider'}]))

        args, kwargs = mock_post.call_args
        self.assertEqual(args[0], 'https://hooks.slack.test/abc')
        self.assertEqual(kwargs['json']['blocks'], [{'type': 'divider'}])
        self.assertEqual(kwargs['timeout'], 3)

    @override_settings(SLACK_PAYMENT_WEBHOOK_URL=None)
    @patch('core.slack_service.requests.post')
    def test_unconfigured_is_a_no_op(self, mock_post):
        self.assertFalse(SlackService().send_message('hello'))
        mock_post.assert_not_called()

    def test_payment_blocks(self):
        blocks = build_payment_blocks(self.purchase)
        self.assertEqual(blocks[0]['text']['text'], '💰 Single Course Purchase')
        text = ' '.join(field['text'] for field in blocks[1]['fields'])
        self.assertIn('Ana Lee', text)
        self.assertIn('parent@example.com', text)
        self.assertIn('CHECKOUT-99', text)
        self.assertIn('$118.80 AUD', text)

    @override_settings(SLACK_PAYMENT_WEBHOOK_URL='https://hooks.slack.test/abc')
    @patch('core.slack_service.requests.post')
    def test_task_posts_purchase(self, mock_post):
        mock_post.return_value = Mock(ok=True)
        self.assertTrue(send_slack_message_task(self.purchase.id))
        self.assertIn('Big Baby Sleep Program', mock_post.call_args.kwargs['json']['text'])


class KlaviyoServiceTests(PurchaseFixtureMixin, TestCase):

    @patch('core.klaviyo_service.requests.post')
    def test_create_event(self, mock_post):
        mock_post.return_value = Mock(status_code=202, text='')
        service = KlaviyoService(api_key='pk_test')
        self.assertTrue(service.create_event('Placed Order', 'a@example.com', {'total': 1.2}, value=Decimal('1.20'), unique_id='purchase:1'))

        kwargs = mock_post.call_args.kwargs
        attributes = kwargs['json']['data']['attributes']
        self.assertEqual(attributes['unique_id'], 'purchase:1')
        self.assertEqual(attributes['value'], 1.2)
        self.assertEqual(attributes['metric']['data']['attributes']['name'], 'Placed Order')
        self.assertEqual(kwargs['headers']['Authorization'], 'Klaviyo-API-Key pk_test')
        self.assertIn('revision', kwargs['headers'])

    @patch('core.klaviyo_service.requests.post')
    def test_errors(self, mock_post):
        service = KlaviyoService(api_key='pk_test')

        mock_post.return_value = Mock(status_code=503, text='unavailable')
        with self.assertRaises(KlaviyoError) as ctx:
            service.create_event('Placed Order', 'a@example.com', {})
        self.assertTrue(ctx.exception.retryable)

        mock_post.return_value = Mock(status_code=400, text='bad')
        with self.assertRaises(KlaviyoError) as ctx:
            service.create_event('Placed Order', 'a@example.com', {})
        self.assertFalse(ctx.exception.retryable)

        mock_post.side_effect = requests.Timeout('slow')
        with self.assertRaises(KlaviyoError) as ctx:
            service.create_event('Placed Order', 'a@example.com', {})
        self.assertTrue(ctx.exception.retryable)

    def test_placed_order_properties(self):
        properties = placed_order_properties(self.purchase)
        self.assertEqual(properties['order_id'], str(self.purchase.id))
        self.assertEqual(properties['subtotal'], 120.0)
        self.assertEqual(properties['discount_total'], 118.8)
        self.assertEqual(properties['total'], 1.2)
        self.assertEqual(properties['stripe_payment_intent_id'], 'pi_abc123')
        self.assertEqual(properties['line_items'][0]['product_name'], 'Big Baby Sleep Program')

    @override_settings(KLAVIYO_API_KEY='pk_test')
    @patch('core.tasks.KlaviyoService.create_event')
    def test_task_uses_purchase_idempotency_key(self, mock_create):
        mock_create.return_value = True
        self.assertTrue(send_klaviyo_event_task(self.purchase.id))
        self.assertEqual(mock_create.call_args.kwargs['unique_id'], f'purchase:{self.purchase.id}')

    @override_settings(KLAVIYO_API_KEY='pk_test')
    @patch('core.tasks.KlaviyoService.create_event')
    def test_task_gives_up_on_client_errors(self, mock_create):
        mock_create.side_effect = KlaviyoError('bad request', status_code=400)
        self.assertFalse(send_klaviyo_event_task(self.purchase.id))

    @override_settings(KLAVIYO_API_KEY=None)
    @patch('core.tasks.KlaviyoService.create_event')
    def test_task_skipped_when_unconfigured(self, mock_create):
        self.assertFalse(send_klaviyo_event_task(self.purchase.id))
        mock_create.assert_not_called()


class TransactionalEmailTests(PurchaseFixtureMixin, TestCase):

    def test_confirmation_email_renders_purchase(self):
        send_transactional_email_task(
            'parent@example.com',
            'Your purchase: Big Baby Sleep Program',
            'emails/purchase_confirmation.html',
            {'purchase_id': self.purchase.id, 'user_id': self.customer.id, 'redirect_url': 'http://testserver/home'},
        )
        self.assertEqual(len(mail.outbox), 1)
        message = mail.outbox[0]
        self.assertEqual(message.to, ['parent@example.com'])
        self.assertIn('Big Baby Sleep Program', message.body)
        self.assertIn('CHECKOUT-99', message.body)
        self.assertIn('http://testserver/home', message.alternatives[0][0])

    def test_welcome_email(self):
        send_transactional_email_task(
            'parent@example.com', 'Welcome', 'emails/welcome_profile_completion.html',
            {'purchase_id': self.purchase.id, 'user_id': self.customer.id, 'redirect_url': 'http://testserver/profile-completion'},
        )
        self.assertIn('Complete my profile', mail.outbox[0].alternatives[0][0])
