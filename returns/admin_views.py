"""
Returns Module - Admin Manual-Override API

Staff-only endpoints used by the ops panel:

    GET|PUT /api/v1/returns/admin/<id>/         return detail / action dispatch
    POST    /api/v1/returns/admin/manual-refund/ goodwill refund, no physical return
    POST    /api/v1/returns/admin/manual-return/ return created on the customer's behalf

Each PUT action is only accepted from specific statuses (ACTION_RULES).
update_status is the one escape hatch that skips every check.
"""

import logging

from django.db import IntegrityError, transaction
from django.utils import timezone
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAdminUser
from rest_framework.response import Response

from orders.models import Order

from .eligibility import (
    ItemValidationError,
    apply_refund_deductions,
    build_return_items,
    pickup_address_from_order,
    returnable_quantities,
)
from .exceptions import (
    ConcurrentTransitionError,
    InvalidActionPayload,
    InvalidTransitionError,
    PreconditionError,
)
from .lookup import Ambiguous, NotFound, describe_candidates, resolve_customer, resolve_order
from .models import AdminNote, ReturnInspection, ReturnItem, ReturnRequest
from .serializers import (
    AdminReturnActionSerializer,
    AdminReturnRequestSerializer,
    ManualRefundSerializer,
    ManualReturnSerializer,
)
from .transitions import NOT_CANCELLABLE, record_initial_history, transition

logger = logging.getLogger('returns')

# action → (required current statuses, resulting status)
ACTION_RULES = {
    'approve': (['requested'], 'approved'),
    'reject': (['requested', 'pending_approval'], 'rejected'),
    'schedule_pickup': (['approved'], 'pickup_scheduled'),
    'mark_picked': (['pickup_scheduled'], 'picked_up'),
    'mark_received': (['in_transit'], 'received'),
    'inspect': (['received'], None),        # approved_refund or rejected_refund
    'process_refund': (['approved_refund'], 'refund_processed'),
    'complete': (['refund_processed', 'rejected_refund'], 'completed'),
    'cancel': (
        [value for value, _ in ReturnRequest.STATUS_CHOICES if value not in NOT_CANCELLABLE],
        'cancelled',
    ),
}

ACTION_MESSAGES = {
    'approve': 'Return request approved',
    'reject': 'Return request rejected',
    'schedule_pickup': 'Pickup scheduled successfully',
    'mark_picked': 'Return marked as picked up',
    'mark_received': 'Return marked as received',
    'process_refund': 'Refund processed successfully',
    'complete': 'Return completed',
    'cancel': 'Return cancelled',
}


# ============================================================
# HELPER FUNCTIONS
# ============================================================

def _load_return(return_id):
    return ReturnRequest.objects.select_related('order', 'customer').filter(pk=return_id).first()


def _detail_response(return_request, message=None):
    return_request = ReturnRequest.objects.select_related('order', 'customer').prefetch_related(
        'items', 'status_history', 'tracking_history', 'admin_notes', 'order__items',
    ).get(pk=return_request.pk)
    body = {'success': True, 'data': AdminReturnRequestSerializer(return_request).data}
    if message:
        body['message'] = message
    return Response(body)


def _lookup_error(result, what):
    if isinstance(result, NotFound):
        return Response(
            {'error': f'{what} not found for reference "{result.reference}"'},
            status=status.HTTP_404_NOT_FOUND,
        )
    return Response(
        {
            'error': f'{what} reference "{result.reference}" matches several records ({result.strategy})',
            'candidates': describe_candidates(result),
        },
        status=status.HTTP_400_BAD_REQUEST,
    )


def _apply_action(return_request, action, data, admin_id):
    """Run one precondition-checked admin action. Returns the response message."""
    expected, target = ACTION_RULES[action]
    if return_request.status not in expected:
        raise PreconditionError(expected, return_request.status)

    note = data.get('note', '')
    now = timezone.now()

    if action == 'schedule_pickup':
        schedule = data.get('pickup_schedule') or {}
        if schedule.get('date'):
            return_request.pickup_scheduled_date = schedule['date']
        if 'time_slot' in schedule:
            return_request.pickup_time_slot = schedule['time_slot']
        # Courier booking; the reverse pickup webhook finds the return by these
        for field in ('awb_code', 'shiprocket_order_id', 'courier'):
            if schedule.get(field):
                setattr(return_request, field, schedule[field])
        return_request.pickup_status = 'scheduled'
        return_request.save(update_fields=[
            'pickup_scheduled_date', 'pickup_time_slot', 'awb_code', 'shiprocket_order_id',
            'courier', 'pickup_status', 'updated_at',
        ])

    elif action == 'mark_picked':
        return_request.actual_pickup_date = now
        return_request.pickup_status = 'completed'
        return_request.save(update_fields=['actual_pickup_date', 'pickup_status', 'updated_at'])

    elif action == 'inspect':
        inspection = data['inspection_data']
        if ReturnInspection.objects.filter(return_request=return_request).exists():
            raise InvalidActionPayload('Inspection has already been recorded for this return')
        ReturnInspection.objects.create(
            return_request=return_request,
            condition=inspection['condition'],
            approved=inspection['approved'],
            notes=inspection.get('notes', ''),
            photos=inspection.get('photos', []),
            rejection_reason=inspection.get('rejection_reason', ''),
            inspected_by=admin_id,
            inspected_at=now,
        )
        transition(return_request, 'inspected', admin_id, note, expected=expected)
        target = 'approved_refund' if inspection['approved'] else 'rejected_refund'
        transition(return_request, target, admin_id, note, expected=['inspected'])
        verdict = 'approved' if inspection['approved'] else 'rejected'
        return f'Inspection completed - {verdict}'

    elif action == 'process_refund':
        details = data.get('refund_details')
        if details:
            if details['amount'] > return_request.original_amount:
                raise InvalidActionPayload(
                    f"Refund amount {details['amount']} exceeds original amount "
                    f"{return_request.original_amount}"
                )
            return_request.refund_transaction_id = details['transaction_id']
            return_request.refund_amount = details['amount']
        return_request.refund_processed_at = now
        return_request.save(update_fields=[
            'refund_processed_at', 'refund_transaction_id', 'refund_amount', 'updated_at',
        ])

    elif action == 'complete':
        return_request.completion_notes = note
        return_request.save(update_fields=['completion_notes', 'updated_at'])

    transition(return_request, target, admin_id, note, expected=expected)
    return ACTION_MESSAGES[action]


# ============================================================
# RETURN DETAIL / ACTION ENDPOINT
# ============================================================

@api_view(['GET', 'PUT'])
@permission_classes([IsAdminUser])
def admin_return_detail(request, return_id):
    """
    GET /api/v1/returns/admin/{id}/
    PUT /api/v1/returns/admin/{id}/

    PUT body:
    {
        "action": "schedule_pickup",
        "note": "Customer asked for a morning slot",
        "pickup_schedule": {"date": "2024-01-18T10:00:00+05:30", "time_slot": "10:00-13:00"}
    }
    """
    return_request = _load_return(return_id)
    if return_request is None:
        return Response({'error': 'Return request not found'}, status=status.HTTP_404_NOT_FOUND)

    if request.method == 'GET':
        return _detail_response(return_request)

    serializer = AdminReturnActionSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    data = serializer.validated_data
    action = data['action']
    admin_id = str(request.user.pk)
    note = data.get('note', '')

    try:
        with transaction.atomic():
            if action == 'update_status':
                previous = return_request.status
                transition(return_request, data['status'], admin_id, note, enforce_graph=False)
                logger.warning(
                    f"MANUAL OVERRIDE: admin {admin_id} forced return {return_request.return_number} "
                    f"from {previous} to {data['status']} (note: {note or '-'})"
                )
                message = f"Status updated to {data['status']}"
            else:
                message = _apply_action(return_request, action, data, admin_id)
                if note:
                    AdminNote.objects.create(return_request=return_request, note=note, added_by=admin_id)
    except PreconditionError as exc:
        return Response(
            {
                'error': f'Action {action} requires status {" or ".join(exc.expected)}',
                'expected_status': exc.expected,
                'current_status': exc.actual,
            },
            status=status.HTTP_400_BAD_REQUEST,
        )
    except InvalidTransitionError as exc:
        return Response({'error': str(exc)}, status=status.HTTP_400_BAD_REQUEST)
    except InvalidActionPayload as exc:
        return Response({'error': str(exc)}, status=status.HTTP_400_BAD_REQUEST)
    except ConcurrentTransitionError as exc:
        return Response({'error': str(exc)}, status=status.HTTP_409_CONFLICT)

    logger.info(f"Admin {admin_id} ran {action} on return {return_request.return_number}")
    return _detail_response(return_request, message)


# ============================================================
# MANUAL REFUND
# ============================================================

@api_view(['POST'])
@permission_classes([IsAdminUser])
def manual_refund(request):
    """
    POST /api/v1/returns/admin/manual-refund/

    Records a refund granted without a physical return as a completed
    return with its whole lifecycle already in the history.
    """
    serializer = ManualRefundSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    data = serializer.validated_data

    order = Order.objects.prefetch_related('items').filter(pk=data['order_id']).first()
    if order is None:
        return Response({'error': 'Order not found'}, status=status.HTTP_404_NOT_FOUND)

    customer_result = resolve_customer(data['customer_id'])
    if isinstance(customer_result, (NotFound, Ambiguous)):
        return _lookup_error(customer_result, 'Customer')
    customer = customer_result.obj

    if order.customer_id != customer.pk:
        return Response(
            {'error': 'Order does not belong to specified customer'},
            status=status.HTTP_400_BAD_REQUEST,
        )

    amount = data['amount']
    if amount > order.total_amount:
        return Response(
            {'error': 'Refund amount cannot exceed order total'},
            status=status.HTTP_400_BAD_REQUEST,
        )

    admin_id = str(request.user.pk)
    reason = data['reason']
    now = timezone.now()

    with transaction.atomic():
        return_request = ReturnRequest.objects.create(
            order=order,
            customer=customer,
            status='completed',
            source='admin_manual',
            original_amount=amount,
            refund_amount=amount,
            refund_method=data['method'],
            refund_processed_at=now,
            pickup_status='not_required',
            special_instructions='Manual refund processed by admin',
            is_eligible=True,
            eligibility_reason='Manual refund authorized by admin',
            eligibility_checked_at=now,
            completed_at=now,
            completion_notes=reason,
        )
        ReturnItem.objects.bulk_create([
            ReturnItem(
                return_request=return_request,
                product_sku=line.product_sku,
                name=line.name,
                price=line.price,
                quantity=line.quantity,
                image=line.image,
                return_reason='manual_refund',
                detailed_reason=reason,
                item_condition='not_applicable',
            )
            for line in order.items.all()
        ])
        record_initial_history(return_request, [
            ('requested', 'Manual refund initiated by admin'),
            ('approved', 'Auto-approved (manual refund)'),
            ('approved_refund', 'Auto-approved (manual refund)'),
            ('refund_processed', 'Manual refund processed'),
            ('completed', 'Manual refund completed'),
        ], admin_id)
        AdminNote.objects.create(
            return_request=return_request,
            note=f'Manual refund processed. Reason: {reason}',
            added_by=admin_id,
        )

        if amount >= order.total_amount:
            order.mark_refunded(amount, now, 'manual')
            order.save()

    logger.info(
        f"Manual refund processed: order {order.order_number}, customer {customer.email}, "
        f"amount {amount}, admin {admin_id}"
    )
    return Response(
        {
            'success': True,
            'message': 'Manual refund processed successfully',
            'data': {
                'return': AdminReturnRequestSerializer(return_request).data,
                'order': {'id': order.pk, 'order_number': order.order_number, 'status': order.status},
                'refund': {
                    'amount': str(amount),
                    'method': data['method'],
                    'processed_at': now,
                    'processed_by': admin_id,
                },
            },
        },
        status=status.HTTP_201_CREATED,
    )


# ============================================================
# MANUAL RETURN
# ============================================================

@api_view(['POST'])
@permission_classes([IsAdminUser])
def manual_return(request):
    """
    POST /api/v1/returns/admin/manual-return/

    {
        "order_id": "#0042",            # id, order number or order number suffix
        "customer_id": "priya",         # id, email, name prefix or id suffix
        "items": [],                    # empty → everything still returnable
        "reason": "Customer called support",
        "auto_approve": true,
        "pickup_required": true,
        "notes": "..."
    }
    """
    serializer = ManualReturnSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    data = serializer.validated_data

    order_result = resolve_order(data['order_id'])
    if isinstance(order_result, (NotFound, Ambiguous)):
        return _lookup_error(order_result, 'Order')
    order = order_result.obj

    customer_result = resolve_customer(data['customer_id'])
    if isinstance(customer_result, (NotFound, Ambiguous)):
        return _lookup_error(customer_result, 'Customer')
    customer = customer_result.obj

    if order.customer_id != customer.pk:
        return Response(
            {'error': 'Order does not belong to specified customer'},
            status=status.HTTP_400_BAD_REQUEST,
        )

    if ReturnRequest.active_for_order(order):
        return Response(
            {'error': 'A return request already exists for this order'},
            status=status.HTTP_400_BAD_REQUEST,
        )

    reason = data['reason'] or 'Return initiated by admin'
    requested_items = data['items']
    if not requested_items:
        requested_items = [
            {'product_sku': sku, 'quantity': quantity, 'return_reason': 'admin_initiated',
             'item_condition': 'unknown'}
            for sku, quantity in returnable_quantities(order).items() if quantity > 0
        ]
        if not requested_items:
            return Response(
                {'error': 'Every item on this order has already been returned'},
                status=status.HTTP_400_BAD_REQUEST,
            )

    try:
        items, total = build_return_items(order, requested_items, default_reason=reason)
    except ItemValidationError as exc:
        return Response({'error': str(exc)}, status=status.HTTP_400_BAD_REQUEST)

    admin_id = str(request.user.pk)
    auto_approve = data['auto_approve']
    history = [('requested', 'Return created by admin')]
    if auto_approve:
        history.append(('approved', 'Auto-approved by admin'))

    return_request = ReturnRequest(
        order=order,
        customer=customer,
        status=history[-1][0],
        source='admin',
        original_amount=total,
        special_instructions=data['notes'] or 'Return initiated by admin',
        pickup_status='pending' if data['pickup_required'] else 'not_required',
        is_eligible=True,
        eligibility_reason='Admin initiated return',
        eligibility_checked_at=timezone.now(),
        **pickup_address_from_order(order),
    )
    try:
        apply_refund_deductions(return_request, waive=True)
    except ItemValidationError as exc:
        return Response({'error': str(exc)}, status=status.HTTP_400_BAD_REQUEST)

    try:
        with transaction.atomic():
            return_request.save()
            for item in items:
                item.return_request = return_request
            ReturnItem.objects.bulk_create(items)
            record_initial_history(return_request, history, admin_id)
            AdminNote.objects.create(
                return_request=return_request,
                note=data['notes'] or 'Return created by admin',
                added_by=admin_id,
            )
    except IntegrityError:
        return Response(
            {'error': 'A return request already exists for this order'},
            status=status.HTTP_400_BAD_REQUEST,
        )

    logger.info(
        f"Manual return {return_request.return_number} created: order {order.order_number}, "
        f"customer {customer.email}, admin {admin_id} (order matched by {order_result.strategy}, "
        f"customer by {customer_result.strategy})"
    )
    return Response(
        {
            'success': True,
            'message': 'Manual return order created successfully',
            'data': {
                'return': AdminReturnRequestSerializer(return_request).data,
                'auto_approved': auto_approve,
                'pickup_required': data['pickup_required'],
            },
        },
        status=status.HTTP_201_CREATED,
    )
