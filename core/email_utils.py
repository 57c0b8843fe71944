from .tasks import send_transactional_email_task
import logging

logger = logging.getLogger(__name__)

def send_transactional_email(recipient_email, subject, template_name, context):
    """
    Queues a multipart transactional email for asynchronous sending via Celery.

    Args:
        recipient_email (str): The email address of the recipient.
        subject (str): The subject of the email.
        template_name (str): The path to the HTML email template.
        context (dict): JSON-serializable template context. Pass model ids
            (purchase_id, user_id), not instances.

    Returns:
        bool: Whether the task was queued. SMTP failures are retried by the task.
    """
    try:
        send_transactional_email_task.delay(recipient_email, subject, template_name, context)
        logger.info(f"Queued email task for {recipient_email} with subject: {subject}")
        return True

    except Exception as e:
        # Only queuing errors land here (broker down etc.).
        logger.error(f"Failed to queue email task for {recipient_email} with subject: {subject}. Error: {e}", exc_info=True)
        return False
