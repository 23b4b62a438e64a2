"""
Returns Module - Background Tasks

Nothing here is on the critical path of a webhook: the refund chain runs
inline. Celery only carries admin alerts and the manual "resume" action.
Neither task retries on its own.
"""

import logging

from django.conf import settings
from django.core.mail import send_mail
from django.db import transaction

from jewelry_oms.celery import app

from .models import AdminNote, ReturnRequest

logger = logging.getLogger('returns')


@app.task(ignore_result=True)
def notify_admins_pickup_failed(return_id, status_code, status_label):
    """Email the ops team that the courier could not complete a reverse pickup."""
    try:
        return_request = ReturnRequest.objects.select_related('order').get(pk=return_id)
    except ReturnRequest.DoesNotExist:
        logger.error(f"Pickup failure alert skipped: return {return_id} not found")
        return

    recipients = settings.RETURNS_ADMIN_EMAILS
    if not recipients:
        logger.warning(f"No RETURNS_ADMIN_EMAILS configured; pickup failure for {return_request.return_number} not emailed")
        return

    subject = f"Reverse pickup failed: {return_request.return_number}"
    message = (
        f"The courier reported status {status_code} ({status_label or 'no label'}) "
        f"for return {return_request.return_number} on order {return_request.order.order_number}.\n\n"
        f"AWB: {return_request.awb_code or '-'}\n"
        f"Courier: {return_request.courier or '-'}\n"
        f"Current location: {return_request.current_location or '-'}\n\n"
        f"Reschedule the pickup or contact the customer."
    )
    try:
        send_mail(
            subject=subject,
            message=message,
            from_email=settings.DEFAULT_FROM_EMAIL,
            recipient_list=recipients,
            fail_silently=False,
        )
        logger.info(f"Pickup failure alert sent for return {return_request.return_number}")
    except Exception as exc:
        logger.error(f"Failed to send pickup failure alert for {return_request.return_number}: {exc}")


@app.task(ignore_result=True)
def resume_return_automation(return_id, requested_by='system_automation'):
    """Re-run the post-receipt automation for a return that stalled part way."""
    from .automation import run_post_receipt_automation

    try:
        return_request = ReturnRequest.objects.select_related('order').get(pk=return_id)
    except ReturnRequest.DoesNotExist:
        logger.error(f"Cannot resume automation: return {return_id} not found")
        return

    result = run_post_receipt_automation(return_request, changed_by=requested_by)
    AdminNote.objects.create(
        return_request=return_request,
        note=f"Automation resumed by {requested_by}: {result.message}",
        added_by=str(requested_by),
    )
    logger.info(f"Automation resumed for {return_request.return_number}: now {result.status}")


def queue_after_commit(task, *args):
    """Dispatch a task once the surrounding transaction has committed."""
    def dispatch():
        try:
            task.delay(*args)
        except Exception:
            logger.exception(f"Could not queue {task.name} with {args}")

    transaction.on_commit(dispatch)
