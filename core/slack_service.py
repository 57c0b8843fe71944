import requests
import logging
from django.conf import settings

logger = logging.getLogger(__name__)


class SlackService:
    """Posts Block Kit messages to an incoming-webhook URL."""

    def __init__(self, webhook_url=None, timeout=None):
        self.webhook_url = webhook_url or getattr(settings, 'SLACK_PAYMENT_WEBHOOK_URL', None)
        self.timeout = timeout or getattr(settings, 'NOTIFICATION_HTTP_TIMEOUT', 10)
        if not self.webhook_url:
            logger.warning("SLACK_PAYMENT_WEBHOOK_URL not found in settings.")

    @property
    def is_configured(self):
        return bool(self.webhook_url)

    def send_message(self, text, blocks=None):
        """
        Returns True on a 2xx. Raises requests.RequestException on transport
        errors so the calling task can retry.
        """
        if not self.is_configured:
            logger.info(f"Slack not configured, dropping message: {text}")
            return False

        payload = {'text': text}
        if blocks:
            payload['blocks'] = blocks

        response = requests.post(self.webhook_url, json=payload, timeout=self.timeout)
        if response.ok:
            return True
        logger.error(f"Slack webhook rejected message: {response.status_code} - {response.text}")
        return False


def build_payment_blocks(purchase):
    """Block Kit layout for a single-course purchase."""
    customer = purchase.customer
    customer_name = f"{customer.first_name} {customer.last_name}".strip() or customer.email
    amount = f"${purchase.final_amount} {purchase.currency}"
    if purchase.is_free:
        amount = f"FREE ({purchase.currency})"

    fields = [
        {'type': 'mrkdwn', 'text': f"*Customer:*\n{customer_name}"},
        {'type': 'mrkdwn', 'text': f"*Email:*\n{customer.email}"},
        {'type': 'mrkdwn', 'text': f"*Details:*\n{purchase.product.name}"},
        {'type': 'mrkdwn', 'text': f"*Amount:*\n{amount}"},
    ]
    if purchase.coupon_code:
        fields.append({'type': 'mrkdwn', 'text': f"*Promotional Code:*\n{purchase.coupon_code}"})
        fields.append({'type': 'mrkdwn', 'text': f"*Discount Amount:*\n${purchase.discount_amount} {purchase.currency}"})

    return [
        {
            'type': 'header',
            'text': {'type': 'plain_text', 'text': '💰 Single Course Purchase', 'emoji': True},
        },
        {'type': 'section', 'fields': fields},
        {
            'type': 'context',
            'elements': [
                {'type': 'mrkdwn', 'text': f"Transaction: `{purchase.transaction_id}`"},
            ],
        },
    ]
