"""
Orders Module - Courier Webhook Endpoints

Shiprocket calls these endpoints whenever a forward (seller → customer)
shipment changes state. Two integrations exist and they speak different
vocabularies, so each keeps its own mapping table:

    /webhooks/shipment/          numeric status ids (current_status_id / shipment_status_id)
    /webhooks/tracking-updates/  text labels ("DELIVERED", "RTO", ...)

RULES THE COURIER IMPOSES:
    - Always answer HTTP 200, even for bad signatures, unknown AWBs or our own
      crashes. Anything else is retried and eventually the webhook is disabled.
    - Replays happen. Scans already stored are never stored twice.
"""

import logging

from django.db import transaction
from django.db.models import Q
from django.utils import timezone
from rest_framework.decorators import (
    api_view, authentication_classes, permission_classes, throttle_classes,
)
from rest_framework.permissions import AllowAny

from .courier import (
    SignatureVerificationError,
    acknowledge,
    parse_courier_datetime,
    parse_status_code,
    preflight,
    verify_webhook_signature,
)
from .models import Order, Shipment, TrackingEvent

logger = logging.getLogger('orders')

# Shiprocket status id → (shipping status, order status)
FORWARD_STATUS_MAP = {
    5: ('processing', 'processing'),    # Manifest Generated
    42: ('shipped', 'shipped'),         # Picked Up
    6: ('shipped', 'shipped'),          # Shipped
    18: ('shipped', 'shipped'),         # In Transit
    17: ('shipped', 'shipped'),         # Out for Delivery
    7: ('delivered', 'delivered'),      # Delivered
    8: ('cancelled', 'cancelled'),      # Cancelled
    9: ('cancelled', 'cancelled'),      # RTO Initiated
    10: ('cancelled', 'cancelled'),     # RTO Delivered
    11: ('cancelled', 'cancelled'),     # Lost
    12: ('cancelled', 'cancelled'),     # Damaged
}

DELIVERED_STATUS_ID = 7
PICKUP_STATUS_IDS = {5, 42}

# Shiprocket status label → order status (tracking-updates integration only)
LABEL_STATUS_MAP = {
    'MANIFEST GENERATED': 'confirmed',
    'PENDING PICKUP': 'confirmed',
    'PICKED UP': 'processing',
    'SHIPPED': 'shipped',
    'IN TRANSIT': 'shipped',
    'OUT FOR DELIVERY': 'shipped',
    'DELIVERED': 'delivered',
    'CANCELED': 'cancelled',
    'CANCELLED': 'cancelled',
    'RTO': 'cancelled',
    'RTO DELIVERED': 'cancelled',
    'RETURNED': 'returned',
    'RETURNED TO SENDER': 'returned',
    'RETURN TO ORIGIN': 'returned',
}

POD_NOT_AVAILABLE = 'Not Available'


# ============================================================
# HELPERS
# ============================================================

def _find_order_for_shipment(awb, sr_order_id):
    """AWB first, then the courier's shipment id."""
    shipment = None
    if awb:
        shipment = Shipment.objects.select_related('order').filter(awb_code=awb).first()
    if shipment is None and sr_order_id:
        shipment = Shipment.objects.select_related('order').filter(shipment_id=str(sr_order_id)).first()
    return shipment


def _set_order_status(order, new_status, source):
    """Apply a courier-mapped status unless it would move the order backwards."""
    if order.status == new_status:
        return False
    if order.is_regression(new_status):
        logger.warning(
            f"Ignoring {source} status '{new_status}' for order {order.order_number}: "
            f"current status is '{order.status}'"
        )
        return False
    logger.info(f"Order {order.order_number}: {order.status} → {new_status} ({source})")
    order.status = new_status
    return True


def _append_scans(shipment, scans):
    """
    Store scans not already present. Deduplication is on exact timestamp only;
    the forward courier feed never sends two scans for the same instant.
    """
    existing = set(shipment.tracking_history.values_list('timestamp', flat=True))
    new_events = []
    for scan in scans or []:
        timestamp = parse_courier_datetime(scan.get('date'))
        if timestamp is None or timestamp in existing:
            continue
        existing.add(timestamp)
        new_events.append(TrackingEvent(
            shipment=shipment,
            activity=scan.get('activity') or scan.get('status') or '',
            location=scan.get('location') or '',
            timestamp=timestamp,
            status_code=str(scan.get('sr-status') or scan.get('status') or ''),
            status_label=scan.get('sr-status-label') or '',
        ))
    if new_events:
        TrackingEvent.objects.bulk_create(new_events)
    return len(new_events)


def apply_shipment_update(shipment, data):
    """Apply one numeric-status courier payload to a shipment and its order."""
    order = shipment.order
    now = timezone.now()
    status_code = parse_status_code(data.get('current_status_id'), data.get('shipment_status_id'))
    scans = data.get('scans') or []

    latest_scan = scans[-1] if scans else None
    location = (latest_scan or {}).get('location') or data.get('current_status') or ''
    if location:
        shipment.current_location = location
    shipment.last_update_at = parse_courier_datetime(data.get('current_timestamp')) or now

    mapped = FORWARD_STATUS_MAP.get(status_code)
    if mapped:
        shipping_status, order_status = mapped
        # Shipping status follows the mapping unless the order would regress
        if order.status == order_status or _set_order_status(order, order_status, f'status id {status_code}'):
            shipment.status = shipping_status
    else:
        logger.info(
            f"Unmapped forward status id {status_code} ({data.get('current_status')}) "
            f"for order {order.order_number}; tracking only"
        )

    if data.get('courier_name'):
        shipment.courier = data['courier_name']

    if status_code == DELIVERED_STATUS_ID:
        shipment.delivered_at = parse_courier_datetime(data.get('delivered_date')) or now
        if order.settle_cod_payment(now):
            logger.info(f"COD order {order.order_number} marked as paid upon delivery")

    if status_code in PICKUP_STATUS_IDS and data.get('pickup_scheduled_date'):
        shipment.picked_up_at = parse_courier_datetime(data['pickup_scheduled_date'])

    if data.get('awb_assigned_date') and not shipment.awb_assigned_at:
        shipment.awb_assigned_at = parse_courier_datetime(data['awb_assigned_date'])

    if data.get('etd'):
        shipment.estimated_delivery = parse_courier_datetime(data['etd'])

    pod = data.get('pod')
    if pod and pod != POD_NOT_AVAILABLE:
        shipment.pod_url = pod

    shipment.save()
    order.save()
    added = _append_scans(shipment, scans)
    return status_code, added


# ============================================================
# FORWARD SHIPMENT WEBHOOK (numeric status ids)
# ============================================================

@api_view(['GET', 'POST', 'OPTIONS'])
@authentication_classes([])
@permission_classes([AllowAny])
@throttle_classes([])
def shipment_webhook(request):
    """
    POST /api/v1/orders/webhooks/shipment/

    Expected payload from Shiprocket:
    {
        "awb": "AWB123",
        "sr_order_id": 2411,
        "current_status": "DELIVERED",
        "current_status_id": 7,
        "shipment_status": "DELIVERED",
        "shipment_status_id": 7,
        "courier_name": "BlueDart",
        "current_timestamp": "15 01 2024 18:20:00",
        "delivered_date": "2024-01-15 18:20:00",
        "etd": "2024-01-16 00:00:00",
        "pod": "https://...",
        "scans": [{"date": "2024-01-15 09:00:00", "activity": "...", "location": "..."}]
    }
    Signature: X-Shiprocket-Signature header, hex HMAC-SHA256 of the body.
    """
    if request.method == 'OPTIONS':
        return preflight()
    if request.method == 'GET':
        return acknowledge(True, 'Webhook endpoint is ready to receive POST requests',
                           endpoint='forward-shipment')

    # Raw body must be read before request.data parses the stream
    raw_body = request.body
    try:
        verify_webhook_signature(raw_body, request.headers.get('X-Shiprocket-Signature'))
    except SignatureVerificationError as exc:
        logger.warning(f"Forward shipment webhook rejected: {exc}")
        return acknowledge(False, str(exc))

    try:
        data = request.data
        awb = data.get('awb')
        sr_order_id = data.get('sr_order_id')
        if not awb and not sr_order_id:
            return acknowledge(False, 'AWB or SR order id required')

        with transaction.atomic():
            shipment = _find_order_for_shipment(awb, sr_order_id)
            if shipment is None:
                logger.info(f"Order not found for AWB: {awb}, SR order id: {sr_order_id}")
                return acknowledge(False, 'Order not found')

            status_code, added = apply_shipment_update(shipment, data)

        order = shipment.order
        logger.info(
            f"Order {order.order_number} tracking updated: status id {status_code}, "
            f"{added} new scan(s)"
        )
        return acknowledge(
            True, 'Webhook processed successfully',
            order_number=order.order_number,
            order_status=order.status,
            shipping_status=shipment.status,
        )
    except Exception as exc:
        logger.exception(f"Forward shipment webhook processing failed: {exc}")
        return acknowledge(False, 'Webhook processing failed')


# ============================================================
# TRACKING UPDATES WEBHOOK (text status labels)
# ============================================================

@api_view(['GET', 'POST', 'OPTIONS'])
@authentication_classes([])
@permission_classes([AllowAny])
@throttle_classes([])
def tracking_updates_webhook(request):
    """
    POST /api/v1/orders/webhooks/tracking-updates/

    Matches the order by the courier order id or our order number rather than
    by AWB, and maps the text label in shipment_status / current_status.
    """
    if request.method == 'OPTIONS':
        return preflight()
    if request.method == 'GET':
        return acknowledge(True, 'Webhook endpoint is active', endpoint='tracking-updates')

    try:
        data = request.data
        order_id = data.get('order_id')
        sr_order_id = data.get('sr_order_id')
        if not order_id and not sr_order_id:
            logger.info('Tracking update received without an order id')
            return acknowledge(False, 'Order id required')

        lookup = Q()
        if sr_order_id:
            lookup |= Q(shiprocket_order_id=str(sr_order_id))
        if order_id:
            lookup |= Q(shiprocket_order_id=str(order_id)) | Q(order_number=str(order_id))

        with transaction.atomic():
            order = Order.objects.filter(lookup).first()
            if order is None:
                logger.info(f"Order not found for tracking update: order_id={order_id}, sr_order_id={sr_order_id}")
                return acknowledge(False, 'Order not found')

            shipment, _ = Shipment.objects.get_or_create(order=order)
            if data.get('shipment_id'):
                shipment.shipment_id = str(data['shipment_id'])
            if data.get('awb'):
                shipment.awb_code = data['awb']
            if data.get('courier_name'):
                shipment.courier = data['courier_name']
            if data.get('etd'):
                shipment.estimated_delivery = parse_courier_datetime(data['etd'])
            shipment.last_update_at = timezone.now()

            label = (data.get('shipment_status') or data.get('current_status') or '').strip().upper()
            new_status = LABEL_STATUS_MAP.get(label)
            if new_status:
                _set_order_status(order, new_status, f"label '{label}'")
                if order.status == 'delivered':
                    shipment.status = 'delivered'
                    if order.settle_cod_payment(timezone.now()):
                        logger.info(f"COD order {order.order_number} marked as paid upon delivery")
            elif label:
                logger.info(f"Unmapped tracking label '{label}' for order {order.order_number}")

            shipment.save()
            order.save()

        logger.info(f"Order {order.order_number} updated via tracking-updates webhook")
        return acknowledge(True, 'Webhook processed successfully',
                           order_number=order.order_number, order_status=order.status)
    except Exception as exc:
        logger.exception(f"Tracking updates webhook failed: {exc}")
        return acknowledge(False, 'Webhook processing failed')
