"""
Orders Module - Tests

Covers the two forward courier webhooks:
1. Numeric status webhook (signature, lookup, status mapping, COD settlement)
2. Idempotent scan ingestion (replays never duplicate tracking history)
3. Label-based tracking-updates webhook
4. The always-200 contract (bad signature, unknown AWB, malformed payload)

Run tests with: python manage.py test orders
"""

import json
from datetime import timedelta
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework.test import APIClient

from .courier import WebhookAuthMode, get_webhook_auth_mode, parse_courier_datetime, sign_payload
from .models import Order, OrderItem, Shipment, TrackingEvent

WEBHOOK_SECRET = 'test-webhook-secret'
ENFORCED = {'AUTH_MODE': 'enforced', 'SECRET': WEBHOOK_SECRET}


@override_settings(SHIPROCKET_WEBHOOK=ENFORCED)
class BaseTestCase(TestCase):
    """Creates a shipped COD order with a forward shipment (AWB123)."""

    shipment_url = '/api/v1/orders/webhooks/shipment/'
    tracking_url = '/api/v1/orders/webhooks/tracking-updates/'

    def setUp(self):
        cache.clear()
        self.client = APIClient()
        self.customer = get_user_model().objects.create_user(
            username='asha', email='asha@example.com', password='pass1234',
        )
        self.order = Order.objects.create(
            order_number='ORD17050000000000001',
            customer=self.customer,
            status='shipped',
            total_amount=Decimal('24999.00'),
            ordered_at=timezone.now() - timedelta(days=3),
            payment_method='cod',
            payment_status='pending',
            shipping_name='Asha Rao',
            shipping_phone='9876543210',
            shipping_address_line1='12 MG Road',
            shipping_city='Bengaluru',
            shipping_state='Karnataka',
            shipping_pincode='560001',
            shiprocket_order_id='SR-5501',
        )
        OrderItem.objects.create(
            order=self.order, product_sku='RING-22K-07', name='22K Gold Ring',
            price=Decimal('24999.00'), quantity=1,
        )
        self.shipment = Shipment.objects.create(
            order=self.order, awb_code='AWB123', shipment_id='2411', status='shipped',
        )

    def post_signed(self, url, payload, header='HTTP_X_SHIPROCKET_SIGNATURE', secret=WEBHOOK_SECRET):
        body = json.dumps(payload)
        extra = {header: sign_payload(body, secret)} if secret else {}
        return self.client.post(url, data=body, content_type='application/json', **extra)

    def refresh(self):
        self.order.refresh_from_db()
        self.shipment.refresh_from_db()


# ============================================================
# FORWARD SHIPMENT WEBHOOK TESTS
# ============================================================

class ShipmentWebhookTests(BaseTestCase):

    def test_delivered_cod_order_is_marked_paid(self):
        """AWB123 + status 7 → delivered order, delivered shipment, COD paid."""
        response = self.post_signed(self.shipment_url, {
            'awb': 'AWB123',
            'shipment_status_id': 7,
            'courier_name': 'BlueDart',
            'delivered_date': '2024-01-15',
        })

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data['success'])
        self.refresh()
        self.assertEqual(self.order.status, 'delivered')
        self.assertEqual(self.shipment.status, 'delivered')
        self.assertIsNotNone(self.shipment.delivered_at)
        self.assertEqual(timezone.localtime(self.shipment.delivered_at).date().isoformat(), '2024-01-15')
        self.assertEqual(self.shipment.courier, 'BlueDart')
        self.assertEqual(self.order.payment_status, 'paid')
        self.assertIsNotNone(self.order.paid_at)

    def test_delivered_online_order_payment_untouched(self):
        Order.objects.filter(pk=self.order.pk).update(payment_method='online', payment_status='paid')
        self.post_signed(self.shipment_url, {'awb': 'AWB123', 'current_status_id': 7})
        self.refresh()
        self.assertEqual(self.order.status, 'delivered')
        self.assertIsNone(self.order.paid_at)

    def test_lookup_falls_back_to_shipment_id(self):
        response = self.post_signed(self.shipment_url, {'sr_order_id': 2411, 'current_status_id': 17})
        self.assertTrue(response.data['success'])
        self.assertEqual(response.data['order_number'], self.order.order_number)

    def test_replayed_scans_are_not_duplicated(self):
        payload = {
            'awb': 'AWB123',
            'current_status_id': 18,
            'current_status': 'IN TRANSIT',
            'scans': [
                {'date': '2024-01-14 09:00:00', 'activity': 'Picked up', 'location': 'Jaipur'},
                {'date': '2024-01-14 21:30:00', 'activity': 'In transit', 'location': 'Delhi Hub'},
            ],
        }
        self.post_signed(self.shipment_url, payload)
        self.refresh()
        first_status = self.order.status

        response = self.post_signed(self.shipment_url, payload)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(TrackingEvent.objects.filter(shipment=self.shipment).count(), 2)
        self.refresh()
        self.assertEqual(self.order.status, first_status)
        self.assertEqual(self.shipment.current_location, 'Delhi Hub')

    def test_new_scans_are_appended_to_existing_history(self):
        self.post_signed(self.shipment_url, {
            'awb': 'AWB123', 'current_status_id': 18,
            'scans': [{'date': '2024-01-14 09:00:00', 'activity': 'Picked up', 'location': 'Jaipur'}],
        })
        self.post_signed(self.shipment_url, {
            'awb': 'AWB123', 'current_status_id': 17,
            'scans': [
                {'date': '2024-01-14 09:00:00', 'activity': 'Picked up', 'location': 'Jaipur'},
                {'date': '2024-01-15 08:10:00', 'activity': 'Out for delivery', 'location': 'Bengaluru'},
            ],
        })
        activities = list(self.shipment.tracking_history.values_list('activity', flat=True))
        self.assertEqual(activities, ['Picked up', 'Out for delivery'])

    def test_unknown_awb_acknowledged_without_mutation(self):
        response = self.post_signed(self.shipment_url, {
            'awb': 'NOPE999', 'current_status_id': 7,
            'scans': [{'date': '2024-01-15 10:00:00', 'activity': 'Delivered'}],
        })

        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.data['success'])
        self.assertEqual(TrackingEvent.objects.count(), 0)
        self.refresh()
        self.assertEqual(self.order.status, 'shipped')

    def test_missing_identifiers_acknowledged(self):
        response = self.post_signed(self.shipment_url, {'current_status_id': 7})
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.data['success'])

    def test_unmapped_status_updates_tracking_only(self):
        response = self.post_signed(self.shipment_url, {
            'awb': 'AWB123', 'current_status_id': 99, 'current_status': 'MISROUTED',
            'scans': [{'date': '2024-01-14 11:00:00', 'activity': 'Misrouted', 'location': 'Pune'}],
        })
        self.assertTrue(response.data['success'])
        self.refresh()
        self.assertEqual(self.order.status, 'shipped')
        self.assertEqual(self.shipment.current_location, 'Pune')
        self.assertEqual(self.shipment.tracking_history.count(), 1)

    def test_delivered_order_does_not_regress(self):
        Order.objects.filter(pk=self.order.pk).update(status='delivered')
        self.post_signed(self.shipment_url, {'awb': 'AWB123', 'current_status_id': 18})
        self.refresh()
        self.assertEqual(self.order.status, 'delivered')
        self.assertEqual(self.shipment.status, 'shipped')

    def test_shipping_status_catches_up_when_order_already_matches(self):
        Order.objects.filter(pk=self.order.pk).update(status='delivered')
        response = self.post_signed(self.shipment_url, {'awb': 'AWB123', 'shipment_status_id': 7})
        self.assertEqual(response.data['shipping_status'], 'delivered')
        self.refresh()
        self.assertEqual(self.order.status, 'delivered')
        self.assertEqual(self.shipment.status, 'delivered')

        Shipment.objects.filter(pk=self.shipment.pk).update(status='pending')
        Order.objects.filter(pk=self.order.pk).update(status='shipped')
        self.post_signed(self.shipment_url, {'awb': 'AWB123', 'shipment_status_id': 18,
                                             'current_timestamp': '2024-01-14 10:00:00'})
        self.refresh()
        self.assertEqual(self.order.status, 'shipped')
        self.assertEqual(self.shipment.status, 'shipped')

    def test_pod_sentinel_is_ignored(self):
        self.post_signed(self.shipment_url, {'awb': 'AWB123', 'current_status_id': 7, 'pod': 'Not Available'})
        self.refresh()
        self.assertEqual(self.shipment.pod_url, '')

    def test_get_and_options_are_acknowledged(self):
        self.assertEqual(self.client.get(self.shipment_url).status_code, 200)
        response = self.client.options(self.shipment_url)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response['Access-Control-Allow-Origin'], '*')


# ============================================================
# SIGNATURE TESTS
# ============================================================

class WebhookSignatureTests(BaseTestCase):

    def test_wrong_signature_rejected_without_mutation(self):
        response = self.post_signed(self.shipment_url, {'awb': 'AWB123', 'current_status_id': 7},
                                    secret='someone-else')
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.data['success'])
        self.refresh()
        self.assertEqual(self.order.status, 'shipped')
        self.assertEqual(self.order.payment_status, 'pending')

    def test_missing_signature_rejected(self):
        response = self.post_signed(self.shipment_url, {'awb': 'AWB123', 'current_status_id': 7}, secret=None)
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.data['success'])
        self.refresh()
        self.assertEqual(self.order.status, 'shipped')

    @override_settings(SHIPROCKET_WEBHOOK={'AUTH_MODE': 'enforced', 'SECRET': ''})
    def test_enforced_mode_without_secret_fails_closed(self):
        response = self.client.post(
            self.shipment_url, data=json.dumps({'awb': 'AWB123', 'current_status_id': 7}),
            content_type='application/json',
        )
        self.assertFalse(response.data['success'])
        self.refresh()
        self.assertEqual(self.order.status, 'shipped')

    @override_settings(SHIPROCKET_WEBHOOK={'AUTH_MODE': 'disabled', 'SECRET': ''})
    def test_disabled_mode_accepts_unsigned_payloads(self):
        response = self.client.post(
            self.shipment_url, data=json.dumps({'awb': 'AWB123', 'current_status_id': 7}),
            content_type='application/json',
        )
        self.assertTrue(response.data['success'])
        self.refresh()
        self.assertEqual(self.order.status, 'delivered')

    @override_settings(SHIPROCKET_WEBHOOK={'AUTH_MODE': 'sometimes', 'SECRET': 'x'})
    def test_unknown_auth_mode_enforces(self):
        self.assertIs(get_webhook_auth_mode(), WebhookAuthMode.ENFORCED)


# ============================================================
# LABEL-BASED TRACKING UPDATES TESTS
# ============================================================

class TrackingUpdatesWebhookTests(BaseTestCase):

    def post_label(self, payload):
        return self.client.post(self.tracking_url, data=json.dumps(payload), content_type='application/json')

    def test_delivered_label_by_order_number(self):
        response = self.post_label({
            'order_id': self.order.order_number, 'shipment_status': ' delivered ',
            'awb': 'AWB123', 'courier_name': 'Delhivery',
        })

        self.assertTrue(response.data['success'])
        self.refresh()
        self.assertEqual(self.order.status, 'delivered')
        self.assertEqual(self.order.payment_status, 'paid')
        self.assertEqual(self.shipment.status, 'delivered')
        self.assertEqual(self.shipment.courier, 'Delhivery')

    def test_rto_label_by_courier_order_id(self):
        response = self.post_label({'sr_order_id': 'SR-5501', 'current_status': 'RTO'})
        self.assertTrue(response.data['success'])
        self.refresh()
        self.assertEqual(self.order.status, 'cancelled')

    def test_shipment_record_created_when_missing(self):
        self.shipment.delete()
        self.post_label({'order_id': self.order.order_number, 'shipment_status': 'SHIPPED',
                         'awb': 'AWB777', 'shipment_id': 99})
        shipment = Shipment.objects.get(order=self.order)
        self.assertEqual(shipment.awb_code, 'AWB777')
        self.assertEqual(shipment.shipment_id, '99')

    def test_unknown_order_acknowledged(self):
        response = self.post_label({'order_id': 'ORD-DOES-NOT-EXIST', 'shipment_status': 'DELIVERED'})
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.data['success'])
        self.refresh()
        self.assertEqual(self.order.status, 'shipped')

    def test_unmapped_label_leaves_status(self):
        self.post_label({'order_id': self.order.order_number, 'shipment_status': 'WEATHER DELAY'})
        self.refresh()
        self.assertEqual(self.order.status, 'shipped')


# ============================================================
# HELPER TESTS
# ============================================================

class CourierHelperTests(TestCase):

    def test_parses_courier_timestamp_formats(self):
        for value in ['23 05 2023 11:43:52', '2023-05-23 11:43:52', '23-05-2023 11:43:52']:
            with self.subTest(value=value):
                parsed = parse_courier_datetime(value)
                self.assertEqual((parsed.year, parsed.month, parsed.day, parsed.hour), (2023, 5, 23, 11))
                self.assertFalse(timezone.is_naive(parsed))

    def test_unparseable_timestamp_is_none(self):
        self.assertIsNone(parse_courier_datetime('yesterday'))
        self.assertIsNone(parse_courier_datetime(''))

    def test_order_regression_rules(self):
        order = Order(status='shipped')
        self.assertTrue(order.is_regression('processing'))
        self.assertFalse(order.is_regression('delivered'))
        self.assertFalse(order.is_regression('cancelled'))
        order.status = 'refunded'
        self.assertTrue(order.is_regression('delivered'))
