"""
Returns Module - Eligibility and Returnable Quantities

Shared by the customer create flow and the admin manual-return flow.
"""

from datetime import timedelta
from decimal import Decimal

from django.conf import settings
from django.db.models import Sum
from django.utils import timezone

from .models import ReturnItem, ReturnRequest

# Returns in these statuses give their quantities back to the order line
RELEASED_STATUSES = ['cancelled', 'rejected']


class ItemValidationError(Exception):
    """A requested return line does not fit the order."""


def _delivered_at(order):
    shipment = getattr(order, 'shipping', None)
    if shipment is not None and shipment.delivered_at:
        return shipment.delivered_at
    return order.ordered_at


def check_eligibility(order):
    """Check if an order is eligible for a customer-initiated return."""
    policy = settings.RETURN_POLICY

    # Rule 1: Order must be delivered
    if order.status != 'delivered':
        return {
            'eligible': False,
            'reason': f'Order is not delivered yet. Current status: {order.status}',
        }

    # Rule 2: Must be within return window
    window_days = policy['RETURN_WINDOW_DAYS']
    deadline = _delivered_at(order) + timedelta(days=window_days)
    now = timezone.now()
    if now > deadline:
        return {
            'eligible': False,
            'reason': f'Return window has expired. Deadline was {deadline}.',
        }

    # Rule 3: Minimum order value
    if order.total_amount < Decimal(str(policy['MIN_ORDER_AMOUNT'])):
        return {
            'eligible': False,
            'reason': f"Orders below Rs.{policy['MIN_ORDER_AMOUNT']} cannot be returned.",
        }

    # Rule 4: No existing active return for this order
    if ReturnRequest.active_for_order(order):
        return {
            'eligible': False,
            'reason': 'An active return already exists for this order.',
        }

    return {
        'eligible': True,
        'return_window_days': window_days,
        'days_remaining': (deadline - now).days,
        'deadline': deadline,
        'order_number': order.order_number,
        'total_amount': str(order.total_amount),
    }


def returnable_quantities(order):
    """
    product_sku → quantity still available to return.
    Manual refunds move no goods, so they do not use up quantity.
    """
    already_returned = dict(
        ReturnItem.objects.filter(return_request__order=order)
        .exclude(return_request__status__in=RELEASED_STATUSES)
        .exclude(return_request__source='admin_manual')
        .values('product_sku')
        .annotate(total=Sum('quantity'))
        .values_list('product_sku', 'total')
    )
    return {
        line.product_sku: line.quantity - (already_returned.get(line.product_sku) or 0)
        for line in order.items.all()
    }


def build_return_items(order, requested_items, default_reason=''):
    """
    Validate requested lines against the order and return unsaved
    ReturnItem objects plus their total value.
    """
    lines = {line.product_sku: line for line in order.items.all()}
    available = returnable_quantities(order)
    items = []
    total = Decimal('0')

    for requested in requested_items:
        sku = requested['product_sku']
        line = lines.get(sku)
        if line is None:
            raise ItemValidationError(f'Product {sku} not found in order')
        quantity = requested['quantity']
        if quantity > available.get(sku, 0):
            raise ItemValidationError(f'Cannot return more items than ordered for {line.name}')

        total += line.price * quantity
        items.append(ReturnItem(
            product_sku=sku,
            name=line.name,
            price=line.price,
            quantity=quantity,
            image=line.image,
            return_reason=requested['return_reason'],
            detailed_reason=requested.get('detailed_reason') or default_reason,
            item_condition=requested.get('item_condition') or 'unknown',
        ))
    return items, total


def apply_refund_deductions(return_request, waive=False):
    """
    Copy the policy's return shipping and restocking charges onto an unsaved
    return and compute its refund amount. Admin-created returns waive both.
    """
    policy = settings.RETURN_POLICY
    if waive:
        return_request.return_shipping_cost = Decimal('0')
        return_request.restocking_fee = Decimal('0')
    else:
        return_request.return_shipping_cost = Decimal(str(policy.get('RETURN_SHIPPING_COST', 0)))
        return_request.restocking_fee = Decimal(str(policy.get('RESTOCKING_FEE', 0)))
    try:
        return return_request.calculate_refund_amount()
    except ValueError as exc:
        raise ItemValidationError(str(exc)) from exc


def pickup_address_from_order(order):
    """Snapshot of the order's shipping address for the return's pickup."""
    return {
        'pickup_name': order.shipping_name,
        'pickup_phone': order.shipping_phone,
        'pickup_address_line1': order.shipping_address_line1,
        'pickup_address_line2': order.shipping_address_line2,
        'pickup_city': order.shipping_city,
        'pickup_state': order.shipping_state,
        'pickup_pincode': order.shipping_pincode,
    }
