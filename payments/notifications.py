"""
Post-purchase fan-out: sales channel, marketing analytics, customer email.

Every channel is queued independently. A failure is logged and reported in
the returned map but never reaches the caller; the purchase is already
recorded by the time this runs.
"""
import logging

from django.conf import settings

from core.email_utils import send_transactional_email
from core.tasks import send_klaviyo_event_task, send_slack_message_task

logger = logging.getLogger(__name__)


def _queue(channel, task, purchase_id):
    try:
        task.delay(purchase_id)
        logger.info(f"Queued {channel} notification for purchase {purchase_id}")
        return True
    except Exception as e:
        logger.warning(f"Failed to queue {channel} notification for purchase {purchase_id}: {e}", exc_info=True)
        return False


def _absolute_url(target):
    # Redirect targets are front-end routes, not Django url names.
    return f"{settings.SITE_URL.rstrip('/')}/{target}"


def send_customer_email(outcome):
    purchase = outcome.purchase
    context = {
        'purchase_id': purchase.id,
        'user_id': outcome.customer.id,
        'redirect_url': _absolute_url(outcome.redirect_target),
    }
    if outcome.is_new_customer:
        subject = f"Welcome! Finish setting up your account for {purchase.product.name}"
        template_name = 'emails/welcome_profile_completion.html'
    else:
        subject = f"Your purchase: {purchase.product.name}"
        template_name = 'emails/purchase_confirmation.html'
    return send_transactional_email(outcome.customer.email, subject, template_name, context)


def notify_purchase(outcome):
    """
    Returns {'slack': bool, 'klaviyo': bool, 'email': bool}, or {} for a
    duplicate outcome (the first call already notified).
    """
    if outcome.duplicate:
        logger.info(f"Purchase {outcome.purchase.id} is a duplicate confirmation; notifications skipped.")
        return {}

    purchase_id = outcome.purchase.id
    results = {
        'slack': _queue('slack', send_slack_message_task, purchase_id),
        'klaviyo': _queue('klaviyo', send_klaviyo_event_task, purchase_id),
    }
    try:
        results['email'] = send_customer_email(outcome)
    except Exception as e:
        logger.warning(f"Failed to prepare customer email for purchase {purchase_id}: {e}", exc_info=True)
        results['email'] = False

    failed = [channel for channel, ok in results.items() if not ok]
    if failed:
        logger.warning(f"Purchase {purchase_id} notifications not queued for: {', '.join(failed)}")
    return results
