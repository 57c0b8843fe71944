from celery import shared_task
from django.core.mail import EmailMultiAlternatives
from django.template.loader import render_to_string
from django.utils.html import strip_tags
from django.conf import settings
import logging
import requests

from .klaviyo_service import KlaviyoError, KlaviyoService, placed_order_properties
from .slack_service import SlackService, build_payment_blocks

logger = logging.getLogger(__name__)


def _get_purchase(purchase_id):
    from django.apps import apps
    Purchase = apps.get_model('payments', 'Purchase')
    return Purchase.objects.select_related('customer', 'product').get(pk=purchase_id)


@shared_task(bind=True, max_retries=3, default_retry_delay=300)
def send_transactional_email_task(self, recipient_email, subject, template_name, context):
    """
    Celery task: Sends a multipart (HTML and plain text) transactional email.

    Context carries ids only; the objects are fetched again here.
    """
    try:
        from django.apps import apps

        purchase_id = context.get('purchase_id')
        user_id = context.get('user_id')

        if purchase_id:
            try:
                purchase = _get_purchase(purchase_id)
                context['purchase'] = purchase
                context['product'] = purchase.product
            except Exception as e:
                logger.warning(f"Purchase ID {purchase_id} not found for email task: {e}")

        if user_id:
            try:
                User = apps.get_model('accounts', 'User')
                context['user'] = User.objects.get(pk=user_id)
            except Exception as e:
                logger.warning(f"User ID {user_id} not found for email task: {e}")

        context['site_name'] = settings.SITE_NAME
        context['site_url'] = settings.SITE_URL

        html_content = render_to_string(template_name, context)
        text_content = strip_tags(html_content)

        email = EmailMultiAlternatives(
            subject=subject,
            body=text_content,
            from_email=settings.DEFAULT_FROM_EMAIL,
            to=[recipient_email]
        )
        email.attach_alternative(html_content, "text/html")
        # fail_silently=False so SMTP errors reach the retry below.
        email.send(fail_silently=False)

        logger.info(f"Successfully sent email to {recipient_email} with subject: {subject}")
        return True

    except Exception as exc:
        logger.error(f"Attempt {self.request.retries + 1} failed for email to {recipient_email}. Error: {exc}", exc_info=True)
        raise self.retry(exc=exc)


@shared_task(bind=True, max_retries=3, default_retry_delay=60)
def send_slack_message_task(self, purchase_id):
    """Posts the sales-channel message for a recorded purchase."""
    purchase = _get_purchase(purchase_id)
    customer_name = f"{purchase.customer.first_name} {purchase.customer.last_name}".strip() or purchase.customer.email
    text = f"New purchase: {customer_name} bought {purchase.product.name} ({purchase.final_amount} {purchase.currency})"

    try:
        return SlackService().send_message(text, blocks=build_payment_blocks(purchase))
    except requests.RequestException as exc:
        logger.error(f"Attempt {self.request.retries + 1} failed posting purchase {purchase_id} to Slack: {exc}")
        raise self.retry(exc=exc)


@shared_task(bind=True, max_retries=3, default_retry_delay=120)
def send_klaviyo_event_task(self, purchase_id):
    """Records a 'Placed Order' event. Keyed on the purchase so retries never double count."""
    service = KlaviyoService()
    if not service.is_configured:
        logger.info(f"Klaviyo not configured, skipping Placed Order for purchase {purchase_id}.")
        return False

    purchase = _get_purchase(purchase_id)
    try:
        return service.create_event(
            'Placed Order',
            purchase.customer.email,
            placed_order_properties(purchase),
            value=purchase.final_amount,
            unique_id=f"purchase:{purchase.id}",
            time=purchase.created_at.isoformat(),
        )
    except KlaviyoError as exc:
        if not exc.retryable:
            logger.error(f"Klaviyo event for purchase {purchase_id} rejected, not retrying: {exc}")
            return False
        logger.error(f"Attempt {self.request.retries + 1} failed sending Klaviyo event for purchase {purchase_id}: {exc}")
        raise self.retry(exc=exc)
