"""
Returns Module - Automatic Refund

Issues the gateway refund for a return sitting in approved_refund and moves
it to refund_processed. Every failure is written to the return's admin notes
so the ops team can see why a return stalled.
"""

import logging

from django.db import transaction
from django.utils import timezone

from .exceptions import RefundProcessingError
from .gateway import get_refund_gateway
from .models import AdminNote
from .transitions import transition

logger = logging.getLogger('returns')


def _validate_refund(return_request):
    """Return (order, amount) or raise RefundProcessingError."""
    if return_request.status != 'approved_refund':
        raise RefundProcessingError(
            f'Cannot process refund for return in status: {return_request.status}'
        )
    if return_request.refund_transaction_id:
        raise RefundProcessingError('Refund already processed for this return')

    order = return_request.order
    if not order.payment_reference:
        raise RefundProcessingError('Order does not have payment information')
    if order.payment_status != 'paid':
        raise RefundProcessingError('Cannot refund - original payment not completed')

    amount = return_request.refund_amount or return_request.original_amount
    if not amount or amount <= 0:
        raise RefundProcessingError('Invalid refund amount')
    if amount > order.total_amount:
        raise RefundProcessingError('Refund amount cannot exceed order total')
    return order, amount


def process_automatic_refund(return_request, changed_by):
    """
    Refund the customer through the payment gateway.

    Raises RefundProcessingError on any failure; the return is left where
    it was and an admin note records the reason. Once the gateway has
    refunded, the refund id is stored even if the status change then fails,
    so a later resume never refunds the same return twice.
    """
    try:
        order, amount = _validate_refund(return_request)

        logger.info(
            f"Processing automatic refund for return {return_request.return_number}: "
            f"payment {order.payment_reference}, amount {amount}"
        )
        gateway = get_refund_gateway()
        refund = gateway.refund(
            order.payment_reference,
            amount,
            notes={
                'return_number': return_request.return_number,
                'order_number': order.order_number,
                'return_id': str(return_request.pk),
                'processed_by': str(changed_by),
            },
            receipt=f'refund_{return_request.return_number}',
        )
    except RefundProcessingError as exc:
        _record_failure(return_request, changed_by, exc)
        raise
    except Exception as exc:
        _record_failure(return_request, changed_by, exc)
        raise RefundProcessingError(str(exc)) from exc

    # Money has moved: record the refund before anything else can fail
    now = timezone.now()
    return_request.refund_processed_at = now
    return_request.refund_transaction_id = refund['id']
    return_request.refund_status = refund.get('status', '')
    return_request.refund_amount = amount
    return_request.save(update_fields=[
        'refund_processed_at', 'refund_transaction_id', 'refund_status',
        'refund_amount', 'updated_at',
    ])

    try:
        with transaction.atomic():
            transition(
                return_request, 'refund_processed', changed_by,
                comment=f"Automatic refund processed - Razorpay Refund ID: {refund['id']}",
                expected=['approved_refund'],
            )
            if amount >= order.total_amount:
                order.mark_refunded(amount, now, 'automatic')
                order.save()
                logger.info(f"Order {order.order_number} fully refunded")
    except Exception as exc:
        logger.error(
            f"Refund {refund['id']} issued for return {return_request.return_number} "
            f"but the return could not be updated: {exc}"
        )
        AdminNote.objects.create(
            return_request=return_request,
            note=(
                f"Refund {refund['id']} of {amount} was issued by the gateway but the return "
                f"could not be moved to refund_processed: {exc}"
            ),
            added_by=str(changed_by),
        )
        raise RefundProcessingError(
            f"Refund {refund['id']} issued but not recorded as processed: {exc}"
        ) from exc

    logger.info(
        f"Automatic refund {refund['id']} processed for return {return_request.return_number} "
        f"({amount})"
    )
    return refund


def _record_failure(return_request, changed_by, exc):
    logger.error(f"Automatic refund failed for return {return_request.return_number}: {exc}")
    AdminNote.objects.create(
        return_request=return_request,
        note=f'Automatic refund failed: {exc}',
        added_by=str(changed_by),
    )
