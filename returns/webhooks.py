"""
Returns Module - Reverse Pickup Webhook

Shiprocket calls this endpoint as a return parcel travels from the customer
back to our warehouse. Same envelope as the forward shipment webhook, but the
status ids drive ReturnRequest.status through its own mapping table.

HOW A RETURN MOVES:
1. Admin approves the return and books a reverse pickup (AWB assigned)
2. Courier scans the parcel: pickup scheduled → picked up → in transit
3. Delivered to warehouse (status id 7) → automated inspection and refund
4. Pickup failures (RTO, lost, damaged, ...) → ops team is emailed

SECURITY:
The anx-api-key header carries a hex HMAC-SHA256 of the raw body.
The endpoint always answers HTTP 200; see orders.courier.acknowledge.
"""

import logging

from django.db import transaction
from django.utils import timezone
from rest_framework.decorators import (
    api_view, authentication_classes, permission_classes, throttle_classes,
)
from rest_framework.permissions import AllowAny

from orders.courier import (
    SignatureVerificationError,
    acknowledge,
    parse_courier_datetime,
    parse_status_code,
    preflight,
    verify_webhook_signature,
)

from .automation import run_post_receipt_automation
from .exceptions import ConcurrentTransitionError
from .models import PickupTrackingEvent, ReturnRequest
from .tasks import notify_admins_pickup_failed, queue_after_commit
from .transitions import advance_from_courier

logger = logging.getLogger('returns')

UPDATE = 'update'
TRIGGER_INSPECTION = 'trigger_inspection'
NOTIFY_ADMIN = 'notify_admin'


def _build_reverse_status_map():
    table = [
        ((1,), 'approved', 'pending', UPDATE),                              # New
        ((2, 3, 4, 5, 13), 'pickup_scheduled', 'scheduled', UPDATE),        # Scheduled, AWB assigned, Out for pickup
        ((6, 42), 'picked_up', 'completed', UPDATE),                        # Shipped, Picked up
        ((18, 19, 38), 'in_transit', 'completed', UPDATE),                  # In transit, Out for delivery, Destination hub
        ((7,), 'received', 'completed', TRIGGER_INSPECTION),                # Delivered to warehouse
        ((9, 10, 11, 12, 15, 21), 'pickup_failed', 'failed', NOTIFY_ADMIN), # RTO, Lost, Damaged, Undelivered
    ]
    mapping = {}
    for ids, return_status, pickup_status, action in table:
        for status_id in ids:
            mapping[status_id] = (return_status, pickup_status, action)
    return mapping


# Shiprocket status id → (return status, pickup status, action)
REVERSE_STATUS_MAP = _build_reverse_status_map()

PICKUP_SCHEDULED_IDS = {2, 13}
PICKED_UP_IDS = {6, 42}
WAREHOUSE_DELIVERED_ID = 7


# ============================================================
# HELPERS
# ============================================================

def _find_return(awb, sr_order_id):
    """AWB first, then the courier's order id."""
    return_request = None
    if awb:
        return_request = ReturnRequest.objects.select_related('order').filter(awb_code=awb).first()
    if return_request is None and sr_order_id:
        return_request = ReturnRequest.objects.select_related('order').filter(
            shiprocket_order_id=str(sr_order_id)
        ).first()
    return return_request


def _record_tracking(return_request, data, status_code, status_label):
    """
    Update the pickup sub-record and store one tracking entry per delivery.
    Entries are deduplicated on (timestamp, status code).
    """
    now = timezone.now()
    scans = data.get('scans') or []
    latest_scan = scans[-1] if scans else {}
    location = latest_scan.get('location') or data.get('current_status') or ''
    timestamp = parse_courier_datetime(data.get('current_timestamp')) or now
    code = str(status_code) if status_code is not None else ''

    if location:
        return_request.current_location = location
    return_request.last_tracking_update = timestamp
    if data.get('courier_name'):
        return_request.courier = data['courier_name']
    if data.get('awb') and not return_request.awb_code:
        return_request.awb_code = data['awb']

    if status_code in PICKUP_SCHEDULED_IDS and data.get('pickup_scheduled_date'):
        return_request.pickup_scheduled_date = parse_courier_datetime(data['pickup_scheduled_date'])
    if status_code in PICKED_UP_IDS and not return_request.actual_pickup_date:
        return_request.actual_pickup_date = timestamp
    if status_code == WAREHOUSE_DELIVERED_ID:
        return_request.delivered_to_warehouse_at = (
            parse_courier_datetime(data.get('delivered_date')) or timestamp
        )

    mapped = REVERSE_STATUS_MAP.get(status_code)
    if mapped:
        return_request.pickup_status = mapped[1]

    return_request.save(update_fields=[
        'current_location', 'last_tracking_update', 'courier', 'awb_code',
        'pickup_scheduled_date', 'actual_pickup_date', 'delivered_to_warehouse_at',
        'pickup_status', 'updated_at',
    ])

    _, created = PickupTrackingEvent.objects.get_or_create(
        return_request=return_request,
        timestamp=timestamp,
        status_code=code,
        defaults={
            'activity': status_label or '',
            'location': location,
        },
    )
    return created


# ============================================================
# REVERSE PICKUP WEBHOOK
# ============================================================

@api_view(['GET', 'POST', 'OPTIONS'])
@authentication_classes([])
@permission_classes([AllowAny])
@throttle_classes([])
def reverse_pickup_webhook(request):
    """
    POST /api/v1/returns/webhooks/reverse-pickup/

    Expected payload from Shiprocket:
    {
        "awb": "RAWB123",
        "sr_order_id": 9911,
        "courier_name": "Delhivery",
        "current_status": "DELIVERED",
        "current_status_id": 7,
        "shipment_status": "DELIVERED",
        "shipment_status_id": 7,
        "current_timestamp": "2024-01-20 14:05:00",
        "pickup_scheduled_date": "2024-01-18 10:00:00",
        "is_return": 1,
        "scans": [{"date": "...", "activity": "...", "location": "Mumbai WH"}]
    }
    """
    if request.method == 'OPTIONS':
        return preflight()
    if request.method == 'GET':
        return acknowledge(True, 'Webhook endpoint is ready to receive POST requests',
                           endpoint='reverse-pickup', security_header='anx-api-key')

    raw_body = request.body
    try:
        verify_webhook_signature(raw_body, request.headers.get('anx-api-key'))
    except SignatureVerificationError as exc:
        logger.warning(f"Reverse pickup webhook rejected: {exc}")
        return acknowledge(False, str(exc))

    try:
        data = request.data
        awb = data.get('awb')
        sr_order_id = data.get('sr_order_id')
        if not awb and not sr_order_id:
            return acknowledge(False, 'AWB or SR order id required')

        status_code = parse_status_code(data.get('shipment_status_id'), data.get('current_status_id'))
        status_label = data.get('shipment_status') or data.get('current_status') or ''

        return_request = _find_return(awb, sr_order_id)
        if return_request is None:
            logger.info(f"Return not found for AWB: {awb}, SR order id: {sr_order_id}")
            return acknowledge(False, 'Return not found')

        with transaction.atomic():
            added = _record_tracking(return_request, data, status_code, status_label)

            mapped = REVERSE_STATUS_MAP.get(status_code)
            changed = False
            action = None
            if mapped is None:
                logger.info(
                    f"Unmapped reverse status id {status_code} ({status_label}) "
                    f"for return {return_request.return_number}; tracking only"
                )
            else:
                target, _, action = mapped
                changed = advance_from_courier(
                    return_request, target, 'system_automation',
                    f'Automated update from Shiprocket: {status_label}',
                )
                if changed and action == NOTIFY_ADMIN:
                    queue_after_commit(notify_admins_pickup_failed,
                                       return_request.pk, status_code, status_label)

        message = f'Tracking updated: {status_label}' if status_label else 'Tracking updated'
        automation = None
        if changed and action == TRIGGER_INSPECTION:
            result = run_post_receipt_automation(return_request)
            message = result.message
            automation = result.status
        elif changed and action == NOTIFY_ADMIN:
            message = 'Pickup failed - requires manual intervention'

        logger.info(
            f"Reverse pickup webhook processed for {return_request.return_number}: "
            f"status id {status_code}, new scan: {added}, status now {return_request.status}"
        )
        return acknowledge(
            True, message,
            return_number=return_request.return_number,
            current_status=return_request.status,
            automation=automation,
        )
    except ConcurrentTransitionError as exc:
        logger.warning(f"Reverse pickup webhook lost a race: {exc}")
        return acknowledge(False, 'Return was updated concurrently')
    except Exception as exc:
        logger.exception(f"Reverse pickup webhook processing failed: {exc}")
        return acknowledge(False, 'Webhook processing failed')
