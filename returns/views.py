"""
Returns Module - Customer API Views

Every endpoint here acts on the logged-in customer's own orders and returns.
"""

import logging

from django.db import IntegrityError, transaction
from django.utils import timezone
from rest_framework import status
from rest_framework.decorators import api_view
from rest_framework.response import Response

from orders.models import Order

from .eligibility import (
    ItemValidationError,
    apply_refund_deductions,
    build_return_items,
    check_eligibility as evaluate_eligibility,
    pickup_address_from_order,
)
from .exceptions import ConcurrentTransitionError, PreconditionError
from .models import ReturnItem, ReturnRequest
from .serializers import (
    CheckEligibilitySerializer,
    CreateReturnRequestSerializer,
    ReturnRequestListSerializer,
    ReturnRequestSerializer,
    ReturnStatusHistorySerializer,
)
from .transitions import record_initial_history, transition

logger = logging.getLogger('returns')

# Customers may cancel until the courier has the parcel
CUSTOMER_CANCELLABLE = ['requested', 'pending_approval', 'approved', 'pickup_scheduled', 'pickup_failed']


# ============================================================
# HELPER FUNCTIONS
# ============================================================

def _get_own_order(request, order_id):
    return Order.objects.select_related('shipping').filter(
        pk=order_id, customer=request.user,
    ).first()


def _get_own_return(request, return_id):
    return ReturnRequest.objects.select_related('order').filter(
        pk=return_id, customer=request.user,
    ).first()


def _not_found(what='Return request'):
    return Response({'error': f'{what} not found'}, status=status.HTTP_404_NOT_FOUND)


# ============================================================
# API ENDPOINTS
# ============================================================

@api_view(['POST'])
def create_return(request):
    """
    POST /api/v1/returns/

    Create a new return request. Called when the customer clicks
    "Return Item" on a delivered order.
    """
    serializer = CreateReturnRequestSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    data = serializer.validated_data

    order = _get_own_order(request, data['order_id'])
    if order is None:
        return _not_found('Order')

    eligibility = evaluate_eligibility(order)
    if not eligibility['eligible']:
        return Response({'error': eligibility['reason']}, status=status.HTTP_400_BAD_REQUEST)

    try:
        items, total = build_return_items(order, data['items'])
    except ItemValidationError as exc:
        return Response({'error': str(exc)}, status=status.HTTP_400_BAD_REQUEST)

    address = pickup_address_from_order(order)
    if data.get('pickup_pincode'):
        address['pickup_pincode'] = data['pickup_pincode']

    return_request = ReturnRequest(
        order=order,
        customer=request.user,
        status='requested',
        source='website',
        original_amount=total,
        refund_method=data['refund_method'],
        special_instructions=data.get('special_instructions', ''),
        is_eligible=True,
        eligibility_reason='Within return window',
        eligibility_checked_at=timezone.now(),
        **address,
    )
    try:
        apply_refund_deductions(return_request)
    except ItemValidationError as exc:
        return Response({'error': str(exc)}, status=status.HTTP_400_BAD_REQUEST)

    try:
        with transaction.atomic():
            return_request.save()
            for item in items:
                item.return_request = return_request
            ReturnItem.objects.bulk_create(items)
            record_initial_history(
                return_request, [('requested', 'Return request created by customer')], 'customer',
            )
    except IntegrityError:
        logger.info(f'Concurrent duplicate return blocked for order {order.order_number}')
        return Response(
            {'error': 'An active return already exists for this order.'},
            status=status.HTTP_400_BAD_REQUEST,
        )

    logger.info(f'Return created: {return_request.return_number} for order {order.order_number}')
    return Response(ReturnRequestSerializer(return_request).data, status=status.HTTP_201_CREATED)


@api_view(['GET'])
def list_returns(request):
    """
    GET /api/v1/returns/list/

    The customer's returns with CURSOR-BASED pagination.

    Query params:
    - status: Filter by status
    - cursor: ID of last item from previous page (for next page)
    - direction: 'next' (default) or 'prev'
    - page_size: Items per page (default 20, max 100)
    """
    queryset = ReturnRequest.objects.select_related('order').filter(customer=request.user)

    status_filter = request.query_params.get('status')
    if status_filter:
        queryset = queryset.filter(status=status_filter)

    try:
        page_size = min(int(request.query_params.get('page_size', 20)), 100)
    except ValueError:
        return Response({'error': 'Invalid page_size value'}, status=status.HTTP_400_BAD_REQUEST)
    cursor = request.query_params.get('cursor')
    direction = request.query_params.get('direction', 'next')

    if cursor:
        try:
            cursor_id = int(cursor)
        except ValueError:
            return Response({'error': 'Invalid cursor value'}, status=status.HTTP_400_BAD_REQUEST)
        if direction == 'next':
            queryset = queryset.filter(id__gt=cursor_id)
        else:
            queryset = queryset.filter(id__lt=cursor_id)

    queryset = queryset.order_by('-id' if direction == 'prev' else 'id')

    results = list(queryset[:page_size + 1])  # One extra to know if more exist
    has_more = len(results) > page_size
    results = results[:page_size]
    if direction == 'prev':
        results.reverse()

    response_data = {
        'results': ReturnRequestListSerializer(results, many=True).data,
        'page_size': page_size,
        'has_more': has_more,
    }
    if results:
        response_data['next_cursor'] = results[-1].id
        response_data['prev_cursor'] = results[0].id
    return Response(response_data)


@api_view(['GET'])
def get_return_detail(request, return_id):
    """GET /api/v1/returns/{id}/"""
    return_request = _get_own_return(request, return_id)
    if return_request is None:
        return _not_found()
    return Response(ReturnRequestSerializer(return_request).data)


@api_view(['GET'])
def get_status_history(request, return_id):
    """
    GET /api/v1/returns/{id}/status/

    The status timeline, used for the "Track your return" page.
    """
    return_request = _get_own_return(request, return_id)
    if return_request is None:
        return _not_found()

    history = return_request.status_history.all()
    return Response({
        'return_number': return_request.return_number,
        'current_status': return_request.status,
        'pickup_status': return_request.pickup_status,
        'timeline': ReturnStatusHistorySerializer(history, many=True).data,
    })


@api_view(['POST'])
def cancel_return(request, return_id):
    """
    POST /api/v1/returns/{id}/cancel/

    Allowed only until the courier has picked the parcel up.
    """
    return_request = _get_own_return(request, return_id)
    if return_request is None:
        return _not_found()

    try:
        transition(
            return_request, 'cancelled', 'customer',
            comment=request.data.get('reason') or 'Cancelled by customer',
            expected=CUSTOMER_CANCELLABLE,
        )
    except PreconditionError as exc:
        return Response(
            {
                'error': f'Cannot cancel return in "{exc.actual}" status. '
                         f'Cancellation allowed only in: {", ".join(CUSTOMER_CANCELLABLE)}',
                'current_status': exc.actual,
            },
            status=status.HTTP_400_BAD_REQUEST,
        )
    except ConcurrentTransitionError as exc:
        return Response({'error': str(exc)}, status=status.HTTP_409_CONFLICT)

    return Response({
        'message': 'Return request cancelled successfully',
        'return_number': return_request.return_number,
        'status': return_request.status,
    })


@api_view(['POST'])
def check_eligibility(request):
    """
    POST /api/v1/returns/check-eligibility/

    Request: {"order_id": 123}
    Response: {"eligible": true, "return_window_days": 10, "days_remaining": 3, ...}
    """
    serializer = CheckEligibilitySerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    order = _get_own_order(request, serializer.validated_data['order_id'])
    if order is None:
        return _not_found('Order')
    return Response(evaluate_eligibility(order))
