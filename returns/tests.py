"""
Returns Module - Tests

These tests validate the core return workflows:
1. Status transition engine (graph, preconditions, courier progression, races)
2. Admin actions (precondition table, side effects, update_status escape hatch)
3. Reverse pickup webhook and the post-receipt refund automation
4. Manual refund / manual return creation and the ranked lookup
5. Customer APIs (eligibility, creation, cancellation, listing)

Run tests with: python manage.py test returns
"""

import json
from datetime import timedelta
from decimal import Decimal
from unittest import mock

from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework.test import APIClient

from orders.courier import sign_payload
from orders.models import Order, OrderItem, Shipment

from .automation import run_post_receipt_automation
from .exceptions import ConcurrentTransitionError, InvalidTransitionError, PreconditionError
from .lookup import Ambiguous, Found, NotFound, resolve_customer, resolve_order
from .models import (
    AdminNote,
    PickupTrackingEvent,
    ReturnInspection,
    ReturnItem,
    ReturnRequest,
    ReturnStatusHistory,
)
from .tasks import resume_return_automation
from .transitions import advance_from_courier, can_transition, record_initial_history, transition

WEBHOOK_SECRET = 'test-webhook-secret'

ALL_STATUSES = [value for value, _ in ReturnRequest.STATUS_CHOICES]

GATEWAY_REFUND = {'id': 'rfnd_TEST0001', 'status': 'processed', 'amount': 2499900}


@override_settings(SHIPROCKET_WEBHOOK={'AUTH_MODE': 'enforced', 'SECRET': WEBHOOK_SECRET})
class BaseTestCase(TestCase):
    """
    Base test class with helper methods to create test data.
    All test classes inherit from this.
    """

    base_url = '/api/v1/returns'

    def setUp(self):
        """Runs before EVERY test method. Creates fresh test data."""
        cache.clear()
        self.client = APIClient()
        User = get_user_model()
        self.customer = User.objects.create_user(
            username='priya', email='priya@example.com', password='pass1234',
            first_name='Priya', last_name='Sharma',
        )
        self.other_customer = User.objects.create_user(
            username='rahul', email='rahul@example.com', password='pass1234',
            first_name='Rahul', last_name='Verma',
        )
        self.admin = User.objects.create_user(
            username='ops', email='ops@example.com', password='pass1234', is_staff=True,
        )
        self.order = self.make_order(self.customer, '0001')

    # ---------- factories ----------

    def make_order(self, customer, suffix, status='delivered', delivered_days_ago=2):
        order = Order.objects.create(
            order_number=f'ORD1705000000000{suffix}',
            customer=customer,
            status=status,
            total_amount=Decimal('30000.00'),
            ordered_at=timezone.now() - timedelta(days=delivered_days_ago + 3),
            payment_method='online',
            payment_status='paid',
            payment_reference=f'pay_{suffix}',
            paid_at=timezone.now() - timedelta(days=delivered_days_ago + 3),
            shipping_name=customer.get_full_name() or customer.username,
            shipping_phone='9876543210',
            shipping_address_line1='221 Linking Road',
            shipping_city='Mumbai',
            shipping_state='Maharashtra',
            shipping_pincode='400050',
        )
        OrderItem.objects.create(
            order=order, product_sku='RING-22K-07', name='22K Gold Ring',
            price=Decimal('25000.00'), quantity=1,
        )
        OrderItem.objects.create(
            order=order, product_sku='EAR-SLV-02', name='Silver Jhumka Earrings',
            price=Decimal('2500.00'), quantity=2,
        )
        Shipment.objects.create(
            order=order, awb_code=f'FWD{suffix}', status='delivered',
            delivered_at=timezone.now() - timedelta(days=delivered_days_ago),
        )
        return order

    def make_return(self, order=None, status='requested', condition='unused', awb='', amount=None):
        order = order or self.order
        amount = amount if amount is not None else Decimal('25000.00')
        return_request = ReturnRequest.objects.create(
            order=order,
            customer=order.customer,
            status=status,
            original_amount=amount,
            refund_amount=amount,
            awb_code=awb,
            pickup_pincode='400050',
        )
        ReturnItem.objects.create(
            return_request=return_request, product_sku='RING-22K-07', name='22K Gold Ring',
            price=Decimal('25000.00'), quantity=1, return_reason='size_fitting_issue',
            item_condition=condition,
        )
        ReturnStatusHistory.objects.create(
            return_request=return_request, from_status='', to_status=status, changed_by='test',
        )
        return return_request

    def history(self, return_request):
        return list(return_request.status_history.values_list('to_status', flat=True))

    def as_admin(self):
        self.client.force_authenticate(user=self.admin)

    def as_customer(self, user=None):
        self.client.force_authenticate(user=user or self.customer)


def mock_gateway(refund=None, error=None):
    """Patch the refund gateway factory used by the refund trigger."""
    patcher = mock.patch('returns.refunds.get_refund_gateway')
    factory = patcher.start()
    if error is not None:
        factory.return_value.refund.side_effect = error
    else:
        factory.return_value.refund.return_value = refund or GATEWAY_REFUND
    return patcher, factory.return_value


# ============================================================
# TRANSITION ENGINE TESTS
# ============================================================

class TransitionEngineTests(BaseTestCase):

    def test_graph(self):
        self.assertTrue(can_transition('requested', 'approved'))
        self.assertTrue(can_transition('pickup_failed', 'pickup_scheduled'))
        self.assertTrue(can_transition('rejected', 'completed'))
        self.assertTrue(can_transition('in_transit', 'cancelled'))
        self.assertFalse(can_transition('requested', 'received'))
        self.assertFalse(can_transition('completed', 'cancelled'))
        self.assertFalse(can_transition('rejected', 'cancelled'))

    def test_transition_appends_history_and_stamps_completion(self):
        return_request = self.make_return(status='refund_processed')
        transition(return_request, 'completed', 'ops', 'done')

        return_request.refresh_from_db()
        self.assertEqual(return_request.status, 'completed')
        self.assertIsNotNone(return_request.completed_at)
        last = return_request.status_history.last()
        self.assertEqual((last.from_status, last.to_status, last.changed_by), ('refund_processed', 'completed', 'ops'))

    def test_precondition_failure_does_not_mutate(self):
        return_request = self.make_return(status='approved')
        with self.assertRaises(PreconditionError) as ctx:
            transition(return_request, 'approved', 'ops', expected=['requested'])
        self.assertEqual(ctx.exception.expected, ['requested'])
        self.assertEqual(ctx.exception.actual, 'approved')
        return_request.refresh_from_db()
        self.assertEqual(return_request.status, 'approved')
        self.assertEqual(return_request.status_history.count(), 1)

    def test_illegal_edge_rejected(self):
        return_request = self.make_return(status='requested')
        with self.assertRaises(InvalidTransitionError):
            transition(return_request, 'refund_processed', 'ops')
        self.assertEqual(self.history(return_request), ['requested'])

    def test_concurrent_change_detected(self):
        return_request = self.make_return(status='requested')
        ReturnRequest.objects.filter(pk=return_request.pk).update(status='cancelled')

        with self.assertRaises(ConcurrentTransitionError):
            transition(return_request, 'approved', 'ops', expected=['requested'])
        self.assertEqual(return_request.status_history.count(), 1)
        return_request.refresh_from_db()
        self.assertEqual(return_request.status, 'cancelled')

    def test_courier_progression_moves_forward_only(self):
        return_request = self.make_return(status='approved')

        self.assertTrue(advance_from_courier(return_request, 'picked_up', 'system_automation'))
        self.assertFalse(advance_from_courier(return_request, 'picked_up', 'system_automation'))
        self.assertFalse(advance_from_courier(return_request, 'pickup_scheduled', 'system_automation'))
        self.assertTrue(advance_from_courier(return_request, 'in_transit', 'system_automation'))

        self.assertEqual(self.history(return_request), ['approved', 'picked_up', 'in_transit'])

    def test_courier_cannot_move_unapproved_or_finished_returns(self):
        requested = self.make_return(status='requested')
        self.assertFalse(advance_from_courier(requested, 'pickup_scheduled', 'system_automation'))
        self.assertEqual(ReturnRequest.objects.get(pk=requested.pk).status, 'requested')

        completed = self.make_return(order=self.make_order(self.customer, '0002'), status='completed')
        self.assertFalse(advance_from_courier(completed, 'received', 'system_automation'))

    def test_pickup_failure_and_retry(self):
        return_request = self.make_return(status='pickup_scheduled')
        self.assertTrue(advance_from_courier(return_request, 'pickup_failed', 'system_automation'))
        self.assertFalse(advance_from_courier(return_request, 'approved', 'system_automation'))
        self.assertTrue(advance_from_courier(return_request, 'picked_up', 'system_automation'))
        self.assertFalse(advance_from_courier(
            self.make_return(order=self.make_order(self.customer, '0003'), status='received'),
            'pickup_failed', 'system_automation',
        ))

    def test_record_initial_history_chains_statuses(self):
        return_request = ReturnRequest.objects.create(
            order=self.order, customer=self.customer, status='approved',
            original_amount=Decimal('100.00'),
        )
        record_initial_history(return_request, [('requested', 'a'), ('approved', 'b')], 'ops')
        rows = list(return_request.status_history.values_list('from_status', 'to_status'))
        self.assertEqual(rows, [('', 'requested'), ('requested', 'approved')])

    def test_return_number_format(self):
        return_request = self.make_return()
        self.assertRegex(return_request.return_number, r'^RET\d{13}\d{4}$')

    def test_refund_amount_calculation(self):
        return_request = self.make_return()
        return_request.return_shipping_cost = Decimal('150.00')
        return_request.restocking_fee = Decimal('350.00')
        self.assertEqual(return_request.calculate_refund_amount(), Decimal('24500.00'))
        return_request.restocking_fee = Decimal('30000.00')
        with self.assertRaises(ValueError):
            return_request.calculate_refund_amount()


# ============================================================
# ADMIN ACTION TESTS
# ============================================================

class AdminActionTests(BaseTestCase):

    ACTIONS = {
        'approve': ['requested'],
        'reject': ['requested', 'pending_approval'],
        'schedule_pickup': ['approved'],
        'mark_picked': ['pickup_scheduled'],
        'mark_received': ['in_transit'],
        'inspect': ['received'],
        'process_refund': ['approved_refund'],
        'complete': ['refund_processed', 'rejected_refund'],
    }

    def setUp(self):
        super().setUp()
        self.as_admin()

    def put_action(self, return_request, payload):
        return self.client.put(f'{self.base_url}/admin/{return_request.pk}/', payload, format='json')

    def payload_for(self, action):
        payload = {'action': action}
        if action == 'inspect':
            payload['inspection_data'] = {'condition': 'good', 'approved': True}
        return payload

    def test_approve_records_admin_in_history(self):
        return_request = self.make_return(status='requested')

        response = self.put_action(return_request, {'action': 'approve'})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['data']['status'], 'approved')
        history = list(return_request.status_history.all())
        self.assertEqual(len(history), 2)
        self.assertEqual(history[-1].to_status, 'approved')
        self.assertEqual(history[-1].changed_by, str(self.admin.pk))

    def test_actions_succeed_only_from_required_status(self):
        counter = 10
        for action, allowed in self.ACTIONS.items():
            for current in ALL_STATUSES:
                counter += 1
                with self.subTest(action=action, status=current):
                    order = self.make_order(self.customer, f'{counter:04d}')
                    return_request = self.make_return(order=order, status=current)

                    response = self.put_action(return_request, self.payload_for(action))
                    return_request.refresh_from_db()

                    if current in allowed:
                        self.assertEqual(response.status_code, 200, response.data)
                        self.assertNotEqual(return_request.status, current)
                    else:
                        self.assertEqual(response.status_code, 400)
                        self.assertEqual(response.data['current_status'], current)
                        self.assertEqual(response.data['expected_status'], allowed)
                        self.assertEqual(return_request.status, current)
                        self.assertEqual(return_request.status_history.count(), 1)
                        self.assertFalse(return_request.admin_notes.exists())

    def test_schedule_pickup_writes_schedule(self):
        return_request = self.make_return(status='approved')
        response = self.put_action(return_request, {
            'action': 'schedule_pickup',
            'note': 'Morning slot requested',
            'pickup_schedule': {'date': '2024-01-18T10:00:00+05:30', 'time_slot': '10:00-13:00'},
        })

        self.assertEqual(response.status_code, 200)
        return_request.refresh_from_db()
        self.assertEqual(return_request.status, 'pickup_scheduled')
        self.assertEqual(return_request.pickup_status, 'scheduled')
        self.assertEqual(return_request.pickup_time_slot, '10:00-13:00')
        self.assertIsNotNone(return_request.pickup_scheduled_date)
        self.assertEqual(return_request.admin_notes.get().note, 'Morning slot requested')

    def test_mark_picked_stamps_pickup_date(self):
        return_request = self.make_return(status='pickup_scheduled')
        self.put_action(return_request, {'action': 'mark_picked'})
        return_request.refresh_from_db()
        self.assertEqual(return_request.status, 'picked_up')
        self.assertEqual(return_request.pickup_status, 'completed')
        self.assertIsNotNone(return_request.actual_pickup_date)

    def test_inspect_writes_inspection_then_branches(self):
        approved = self.make_return(status='received')
        self.put_action(approved, {
            'action': 'inspect',
            'inspection_data': {'condition': 'excellent', 'approved': True, 'notes': 'Hallmark intact'},
        })
        approved.refresh_from_db()
        self.assertEqual(approved.status, 'approved_refund')
        self.assertEqual(approved.inspection.condition, 'excellent')
        self.assertEqual(approved.inspection.inspected_by, str(self.admin.pk))
        self.assertEqual(self.history(approved), ['received', 'inspected', 'approved_refund'])

        rejected = self.make_return(order=self.make_order(self.customer, '0002'), status='received')
        self.put_action(rejected, {
            'action': 'inspect',
            'inspection_data': {'condition': 'damaged', 'approved': False, 'rejection_reason': 'Stone replaced'},
        })
        rejected.refresh_from_db()
        self.assertEqual(rejected.status, 'rejected_refund')
        self.assertFalse(rejected.inspection.approved)

    def test_inspect_requires_inspection_data(self):
        return_request = self.make_return(status='received')
        response = self.put_action(return_request, {'action': 'inspect'})
        self.assertEqual(response.status_code, 400)

    def test_process_refund_stamps_details(self):
        return_request = self.make_return(status='approved_refund')
        response = self.put_action(return_request, {
            'action': 'process_refund',
            'refund_details': {'transaction_id': 'NEFT-7781', 'amount': '24000.00'},
        })

        self.assertEqual(response.status_code, 200)
        return_request.refresh_from_db()
        self.assertEqual(return_request.status, 'refund_processed')
        self.assertEqual(return_request.refund_transaction_id, 'NEFT-7781')
        self.assertEqual(return_request.refund_amount, Decimal('24000.00'))
        self.assertIsNotNone(return_request.refund_processed_at)

    def test_process_refund_above_original_amount_rejected(self):
        return_request = self.make_return(status='approved_refund')
        response = self.put_action(return_request, {
            'action': 'process_refund',
            'refund_details': {'transaction_id': 'NEFT-7782', 'amount': '25000.01'},
        })

        self.assertEqual(response.status_code, 400)
        return_request.refresh_from_db()
        self.assertEqual(return_request.status, 'approved_refund')
        self.assertEqual(return_request.refund_transaction_id, '')

    def test_complete_records_completion_notes(self):
        return_request = self.make_return(status='rejected_refund')
        self.put_action(return_request, {'action': 'complete', 'note': 'Item sent back to customer'})
        return_request.refresh_from_db()
        self.assertEqual(return_request.status, 'completed')
        self.assertEqual(return_request.completion_notes, 'Item sent back to customer')
        self.assertIsNotNone(return_request.completed_at)

    def test_cancel_from_non_terminal(self):
        return_request = self.make_return(status='in_transit')
        response = self.put_action(return_request, {'action': 'cancel'})
        self.assertEqual(response.status_code, 200)
        return_request.refresh_from_db()
        self.assertEqual(return_request.status, 'cancelled')

        finished = self.make_return(order=self.make_order(self.customer, '0002'), status='completed')
        self.assertEqual(self.put_action(finished, {'action': 'cancel'}).status_code, 400)

    def test_update_status_bypasses_checks_and_logs_override(self):
        return_request = self.make_return(status='requested')

        with self.assertLogs('returns', level='WARNING') as logs:
            response = self.put_action(return_request, {
                'action': 'update_status', 'status': 'received', 'note': 'Parcel found at warehouse',
            })

        self.assertEqual(response.status_code, 200)
        return_request.refresh_from_db()
        self.assertEqual(return_request.status, 'received')
        self.assertTrue(any('MANUAL OVERRIDE' in line for line in logs.output))
        # update_status does not add an admin note
        self.assertFalse(return_request.admin_notes.exists())
        self.assertEqual(return_request.status_history.last().comment, 'Parcel found at warehouse')

    def test_update_status_requires_status(self):
        return_request = self.make_return(status='requested')
        response = self.put_action(return_request, {'action': 'update_status'})
        self.assertEqual(response.status_code, 400)

    def test_unknown_action_rejected(self):
        return_request = self.make_return(status='requested')
        response = self.put_action(return_request, {'action': 'teleport'})
        self.assertEqual(response.status_code, 400)

    def test_get_detail_includes_notes(self):
        return_request = self.make_return(status='requested')
        AdminNote.objects.create(return_request=return_request, note='Called customer', added_by='ops')
        response = self.client.get(f'{self.base_url}/admin/{return_request.pk}/')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['data']['admin_notes'][0]['note'], 'Called customer')

    def test_missing_return_is_404(self):
        response = self.put_action(ReturnRequest(pk=999999), {'action': 'approve'})
        self.assertEqual(response.status_code, 404)

    def test_non_staff_users_are_refused(self):
        return_request = self.make_return(status='requested')
        self.as_customer()
        response = self.put_action(return_request, {'action': 'approve'})
        self.assertEqual(response.status_code, 403)

        self.client.force_authenticate(user=None)
        response = self.put_action(return_request, {'action': 'approve'})
        self.assertIn(response.status_code, (401, 403))
        return_request.refresh_from_db()
        self.assertEqual(return_request.status, 'requested')


# ============================================================
# REVERSE PICKUP WEBHOOK + AUTOMATION TESTS
# ============================================================

class ReversePickupWebhookTests(BaseTestCase):

    url = '/api/v1/returns/webhooks/reverse-pickup/'

    def post_webhook(self, payload, secret=WEBHOOK_SECRET):
        body = json.dumps(payload)
        extra = {'HTTP_ANX_API_KEY': sign_payload(body, secret)} if secret else {}
        return self.client.post(self.url, data=body, content_type='application/json', **extra)

    def payload(self, status_id, label, timestamp='2024-01-20 14:05:00', **extra):
        data = {
            'awb': 'RAWB123',
            'shipment_status_id': status_id,
            'shipment_status': label,
            'current_timestamp': timestamp,
            'courier_name': 'Delhivery',
            'is_return': 1,
        }
        data.update(extra)
        return data

    def test_received_with_good_items_completes_automatically(self):
        return_request = self.make_return(status='in_transit', awb='RAWB123', condition='unused')
        patcher, gateway = mock_gateway()
        self.addCleanup(patcher.stop)

        response = self.post_webhook(self.payload(7, 'DELIVERED'))

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data['success'])
        self.assertEqual(response.data['current_status'], 'completed')
        return_request.refresh_from_db()
        self.assertEqual(return_request.status, 'completed')
        self.assertEqual(
            self.history(return_request)[-5:],
            ['received', 'inspected', 'approved_refund', 'refund_processed', 'completed'],
        )
        self.assertEqual(return_request.refund_transaction_id, 'rfnd_TEST0001')
        self.assertIsNotNone(return_request.delivered_to_warehouse_at)
        self.assertTrue(return_request.inspection.approved)

        gateway.refund.assert_called_once()
        payment_id, amount = gateway.refund.call_args[0][:2]
        self.assertEqual(payment_id, 'pay_0001')
        self.assertEqual(amount, Decimal('25000.00'))

    def test_full_refund_flips_order_to_refunded(self):
        self.make_return(status='in_transit', awb='RAWB123', amount=Decimal('30000.00'))
        patcher, _ = mock_gateway()
        self.addCleanup(patcher.stop)

        self.post_webhook(self.payload(7, 'DELIVERED'))

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, 'refunded')
        self.assertEqual(self.order.payment_status, 'refunded')
        self.assertEqual(self.order.refund_type, 'automatic')

    def test_received_with_damaged_item_stops_at_inspected(self):
        return_request = self.make_return(status='in_transit', awb='RAWB123', condition='damaged')
        patcher, gateway = mock_gateway()
        self.addCleanup(patcher.stop)

        response = self.post_webhook(self.payload(7, 'DELIVERED'))

        self.assertTrue(response.data['success'])
        self.assertEqual(response.data['message'], 'Manual inspection required')
        return_request.refresh_from_db()
        self.assertEqual(return_request.status, 'inspected')
        self.assertEqual(self.history(return_request)[-2:], ['received', 'inspected'])
        gateway.refund.assert_not_called()
        self.assertFalse(ReturnInspection.objects.filter(return_request=return_request).exists())

    def test_refund_failure_leaves_return_at_approved_refund(self):
        return_request = self.make_return(status='in_transit', awb='RAWB123')
        patcher, _ = mock_gateway(error=RuntimeError('Gateway timeout'))
        self.addCleanup(patcher.stop)

        response = self.post_webhook(self.payload(7, 'DELIVERED'))

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data['success'])
        self.assertIn('manual review', response.data['message'])
        return_request.refresh_from_db()
        self.assertEqual(return_request.status, 'approved_refund')
        self.assertEqual(return_request.refund_transaction_id, '')
        note = return_request.admin_notes.get()
        self.assertIn('Automatic refund failed', note.note)
        self.assertIn('Gateway timeout', note.note)

    def test_refund_refused_when_payment_not_captured(self):
        Order.objects.filter(pk=self.order.pk).update(payment_status='pending')
        return_request = self.make_return(status='in_transit', awb='RAWB123')
        patcher, gateway = mock_gateway()
        self.addCleanup(patcher.stop)

        self.post_webhook(self.payload(7, 'DELIVERED'))

        return_request.refresh_from_db()
        self.assertEqual(return_request.status, 'approved_refund')
        gateway.refund.assert_not_called()

    def test_replayed_delivery_is_a_no_op(self):
        return_request = self.make_return(status='in_transit', awb='RAWB123')
        patcher, gateway = mock_gateway()
        self.addCleanup(patcher.stop)
        payload = self.payload(7, 'DELIVERED')

        self.post_webhook(payload)
        history_count = return_request.status_history.count()
        tracking_count = return_request.tracking_history.count()
        response = self.post_webhook(payload)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(return_request.status_history.count(), history_count)
        self.assertEqual(return_request.tracking_history.count(), tracking_count)
        self.assertEqual(gateway.refund.call_count, 1)

    def test_tracking_dedup_uses_timestamp_and_code(self):
        return_request = self.make_return(status='approved', awb='RAWB123')
        self.post_webhook(self.payload(2, 'PICKUP SCHEDULED', timestamp='2024-01-18 09:00:00'))
        self.post_webhook(self.payload(13, 'OUT FOR PICKUP', timestamp='2024-01-18 09:00:00'))
        self.post_webhook(self.payload(13, 'OUT FOR PICKUP', timestamp='2024-01-18 09:00:00'))

        codes = list(PickupTrackingEvent.objects.filter(return_request=return_request)
                     .values_list('status_code', flat=True))
        self.assertEqual(codes, ['2', '13'])
        return_request.refresh_from_db()
        self.assertEqual(self.history(return_request), ['approved', 'pickup_scheduled'])

    def test_courier_progression_and_pickup_fields(self):
        return_request = self.make_return(status='approved', awb='RAWB123')
        self.post_webhook(self.payload(2, 'PICKUP SCHEDULED', timestamp='2024-01-18 09:00:00',
                                       pickup_scheduled_date='2024-01-18 11:00:00'))
        self.post_webhook(self.payload(42, 'PICKED UP', timestamp='2024-01-18 12:30:00',
                                       scans=[{'location': 'Andheri West'}]))
        self.post_webhook(self.payload(18, 'IN TRANSIT', timestamp='2024-01-19 08:00:00'))

        return_request.refresh_from_db()
        self.assertEqual(return_request.status, 'in_transit')
        self.assertEqual(return_request.pickup_status, 'completed')
        self.assertIsNotNone(return_request.pickup_scheduled_date)
        self.assertIsNotNone(return_request.actual_pickup_date)
        self.assertEqual(return_request.courier, 'Delhivery')
        self.assertEqual(
            self.history(return_request), ['approved', 'pickup_scheduled', 'picked_up', 'in_transit'],
        )

    def test_pickup_booked_through_admin_api_is_tracked(self):
        return_request = self.make_return(status='approved')
        self.as_admin()
        response = self.client.put(f'{self.base_url}/admin/{return_request.pk}/', {
            'action': 'schedule_pickup',
            'pickup_schedule': {
                'date': '2024-01-18T10:00:00+05:30', 'time_slot': '10:00-13:00',
                'awb_code': 'RAWB123', 'shiprocket_order_id': '9911', 'courier': 'Delhivery',
            },
        }, format='json')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['data']['awb_code'], 'RAWB123')

        response = self.post_webhook(self.payload(42, 'PICKED UP', timestamp='2024-01-18 12:30:00'))

        self.assertTrue(response.data['success'])
        return_request.refresh_from_db()
        self.assertEqual(return_request.status, 'picked_up')
        self.assertEqual(return_request.shiprocket_order_id, '9911')
        self.assertEqual(
            self.history(return_request), ['approved', 'pickup_scheduled', 'picked_up'],
        )

    def test_awb_already_used_by_another_return_rejected(self):
        self.make_return(status='pickup_scheduled', awb='RAWB123')
        other = self.make_return(order=self.make_order(self.customer, '0002'), status='approved')
        self.as_admin()
        response = self.client.put(f'{self.base_url}/admin/{other.pk}/', {
            'action': 'schedule_pickup', 'pickup_schedule': {'awb_code': 'RAWB123'},
        }, format='json')
        self.assertEqual(response.status_code, 400)
        other.refresh_from_db()
        self.assertEqual(other.status, 'approved')
        self.assertEqual(other.awb_code, '')

    def test_out_of_order_scan_does_not_move_backwards(self):
        return_request = self.make_return(status='in_transit', awb='RAWB123')

        response = self.post_webhook(self.payload(6, 'SHIPPED', timestamp='2024-01-18 12:00:00'))

        self.assertTrue(response.data['success'])
        return_request.refresh_from_db()
        self.assertEqual(return_request.status, 'in_transit')
        self.assertEqual(return_request.status_history.count(), 1)
        self.assertEqual(return_request.tracking_history.count(), 1)

    def test_pickup_failure_notifies_admins(self):
        return_request = self.make_return(status='pickup_scheduled', awb='RAWB123')

        with mock.patch('returns.webhooks.notify_admins_pickup_failed') as task:
            with self.captureOnCommitCallbacks(execute=True):
                response = self.post_webhook(self.payload(9, 'RTO INITIATED'))

        self.assertEqual(response.data['message'], 'Pickup failed - requires manual intervention')
        task.delay.assert_called_once_with(return_request.pk, 9, 'RTO INITIATED')
        return_request.refresh_from_db()
        self.assertEqual(return_request.status, 'pickup_failed')
        self.assertEqual(return_request.pickup_status, 'failed')

    def test_unmapped_status_updates_tracking_only(self):
        return_request = self.make_return(status='picked_up', awb='RAWB123')

        response = self.post_webhook(self.payload(77, 'WEATHER DELAY', scans=[{'location': 'Vapi'}]))

        self.assertTrue(response.data['success'])
        return_request.refresh_from_db()
        self.assertEqual(return_request.status, 'picked_up')
        self.assertEqual(return_request.current_location, 'Vapi')
        self.assertEqual(return_request.tracking_history.get().status_code, '77')

    def test_lookup_by_courier_order_id(self):
        return_request = self.make_return(status='approved')
        ReturnRequest.objects.filter(pk=return_request.pk).update(shiprocket_order_id='9911')

        response = self.post_webhook({'sr_order_id': 9911, 'current_status_id': 3,
                                      'current_status': 'AWB ASSIGNED', 'awb': ''})

        self.assertTrue(response.data['success'])
        return_request.refresh_from_db()
        self.assertEqual(return_request.status, 'pickup_scheduled')

    def test_unknown_awb_acknowledged_without_mutation(self):
        return_request = self.make_return(status='in_transit', awb='RAWB123')
        response = self.post_webhook(dict(self.payload(7, 'DELIVERED'), awb='UNKNOWN1'))

        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.data['success'])
        return_request.refresh_from_db()
        self.assertEqual(return_request.status, 'in_transit')
        self.assertFalse(PickupTrackingEvent.objects.exists())

    def test_bad_signature_acknowledged_without_mutation(self):
        return_request = self.make_return(status='in_transit', awb='RAWB123')

        for secret in ('wrong-secret', None):
            with self.subTest(secret=secret):
                response = self.post_webhook(self.payload(7, 'DELIVERED'), secret=secret)
                self.assertEqual(response.status_code, 200)
                self.assertFalse(response.data['success'])

        return_request.refresh_from_db()
        self.assertEqual(return_request.status, 'in_transit')
        self.assertFalse(PickupTrackingEvent.objects.exists())

    def test_health_check(self):
        response = self.client.get(self.url)
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data['success'])


class AutomationResumeTests(BaseTestCase):

    def test_resume_picks_up_from_approved_refund(self):
        return_request = self.make_return(status='approved_refund')
        patcher, gateway = mock_gateway()
        self.addCleanup(patcher.stop)

        resume_return_automation(return_request.pk, str(self.admin.pk))

        return_request.refresh_from_db()
        self.assertEqual(return_request.status, 'completed')
        self.assertEqual(self.history(return_request), ['approved_refund', 'refund_processed', 'completed'])
        self.assertIn('Automation resumed', return_request.admin_notes.last().note)

    def test_automation_is_a_no_op_when_already_complete(self):
        return_request = self.make_return(status='completed')
        result = run_post_receipt_automation(return_request)
        self.assertEqual(result.status, 'completed')
        self.assertEqual(return_request.status_history.count(), 1)

    def test_resume_does_not_refund_twice(self):
        return_request = self.make_return(status='approved_refund')
        ReturnRequest.objects.filter(pk=return_request.pk).update(refund_transaction_id='rfnd_OLD')
        return_request.refresh_from_db()
        patcher, gateway = mock_gateway()
        self.addCleanup(patcher.stop)

        result = run_post_receipt_automation(return_request)

        self.assertTrue(result.stalled)
        gateway.refund.assert_not_called()
        self.assertEqual(return_request.status, 'approved_refund')

    def test_issued_refund_is_kept_when_status_change_loses_a_race(self):
        return_request = self.make_return(status='approved_refund')
        patcher, gateway = mock_gateway()
        self.addCleanup(patcher.stop)

        def refund_then_concurrent_edit(*args, **kwargs):
            ReturnRequest.objects.filter(pk=return_request.pk).update(status='inspected')
            return GATEWAY_REFUND

        gateway.refund.side_effect = refund_then_concurrent_edit

        result = run_post_receipt_automation(return_request)

        self.assertTrue(result.stalled)
        stored = ReturnRequest.objects.get(pk=return_request.pk)
        self.assertEqual(stored.status, 'inspected')
        self.assertEqual(stored.refund_transaction_id, 'rfnd_TEST0001')
        self.assertIsNotNone(stored.refund_processed_at)
        self.assertTrue(any('rfnd_TEST0001' in note for note in
                            stored.admin_notes.values_list('note', flat=True)))

        # Resuming moves it forward again but never refunds a second time
        gateway.refund.side_effect = None
        resume_return_automation(return_request.pk, str(self.admin.pk))
        self.assertEqual(gateway.refund.call_count, 1)
        stored.refresh_from_db()
        self.assertEqual(stored.status, 'approved_refund')
        self.assertEqual(stored.refund_transaction_id, 'rfnd_TEST0001')


# ============================================================
# MANUAL REFUND TESTS
# ============================================================

class ManualRefundTests(BaseTestCase):

    url = '/api/v1/returns/admin/manual-refund/'

    def setUp(self):
        super().setUp()
        self.as_admin()

    def test_amount_above_order_total_rejected_before_any_write(self):
        response = self.client.post(self.url, {
            'order_id': self.order.pk, 'customer_id': str(self.customer.pk),
            'amount': '30000.01', 'reason': 'Goodwill',
        }, format='json')

        self.assertEqual(response.status_code, 400)
        self.assertEqual(ReturnRequest.objects.count(), 0)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, 'delivered')

    def test_full_refund_creates_completed_record_and_refunds_order(self):
        response = self.client.post(self.url, {
            'order_id': self.order.pk, 'customer_id': 'priya@example.com',
            'amount': '30000.00', 'reason': 'Wrong purity delivered',
        }, format='json')

        self.assertEqual(response.status_code, 201)
        return_request = ReturnRequest.objects.get()
        self.assertEqual(return_request.status, 'completed')
        self.assertEqual(return_request.source, 'admin_manual')
        self.assertEqual(return_request.pickup_status, 'not_required')
        self.assertEqual(
            self.history(return_request),
            ['requested', 'approved', 'approved_refund', 'refund_processed', 'completed'],
        )
        self.assertEqual(
            set(return_request.items.values_list('item_condition', flat=True)), {'not_applicable'},
        )
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, 'refunded')
        self.assertEqual(self.order.refund_type, 'manual')

    def test_partial_refund_keeps_order_status(self):
        response = self.client.post(self.url, {
            'order_id': self.order.pk, 'customer_id': str(self.customer.pk),
            'amount': '1500.00', 'reason': 'Delayed delivery',
        }, format='json')

        self.assertEqual(response.status_code, 201)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, 'delivered')

    def test_order_must_belong_to_customer(self):
        response = self.client.post(self.url, {
            'order_id': self.order.pk, 'customer_id': 'rahul@example.com',
            'amount': '100.00', 'reason': 'Goodwill',
        }, format='json')
        self.assertEqual(response.status_code, 400)
        self.assertEqual(ReturnRequest.objects.count(), 0)

    def test_missing_order_is_404(self):
        response = self.client.post(self.url, {
            'order_id': 999999, 'customer_id': 'priya@example.com', 'amount': '100.00', 'reason': 'x',
        }, format='json')
        self.assertEqual(response.status_code, 404)


# ============================================================
# MANUAL RETURN + LOOKUP TESTS
# ============================================================

class ManualReturnTests(BaseTestCase):

    url = '/api/v1/returns/admin/manual-return/'

    def setUp(self):
        super().setUp()
        self.as_admin()

    def test_creates_auto_approved_return_for_every_line(self):
        response = self.client.post(self.url, {
            'order_id': '#ORD17050000000000001', 'customer_id': 'Priya Sharma',
            'reason': 'Customer called support',
        }, format='json')

        self.assertEqual(response.status_code, 201)
        self.assertTrue(response.data['data']['auto_approved'])
        return_request = ReturnRequest.objects.get()
        self.assertEqual(return_request.status, 'approved')
        self.assertEqual(return_request.source, 'admin')
        self.assertEqual(self.history(return_request), ['requested', 'approved'])
        self.assertEqual(return_request.original_amount, Decimal('30000.00'))
        self.assertEqual(return_request.pickup_city, 'Mumbai')
        self.assertEqual(
            sorted(return_request.items.values_list('product_sku', 'quantity', 'item_condition')),
            [('EAR-SLV-02', 2, 'unknown'), ('RING-22K-07', 1, 'unknown')],
        )

    def test_without_auto_approve_and_pickup(self):
        response = self.client.post(self.url, {
            'order_id': str(self.order.pk), 'customer_id': 'priya@example.com',
            'items': [{'product_sku': 'EAR-SLV-02', 'quantity': 1, 'item_condition': 'lightly_used'}],
            'auto_approve': False, 'pickup_required': False,
        }, format='json')

        self.assertEqual(response.status_code, 201)
        return_request = ReturnRequest.objects.get()
        self.assertEqual(return_request.status, 'requested')
        self.assertEqual(return_request.pickup_status, 'not_required')
        self.assertEqual(return_request.original_amount, Decimal('2500.00'))

    def test_existing_active_return_rejected(self):
        self.make_return(status='pickup_scheduled')
        response = self.client.post(self.url, {
            'order_id': self.order.order_number, 'customer_id': 'priya@example.com',
        }, format='json')
        self.assertEqual(response.status_code, 400)
        self.assertEqual(ReturnRequest.objects.count(), 1)

    def test_quantity_above_order_line_rejected(self):
        response = self.client.post(self.url, {
            'order_id': self.order.order_number, 'customer_id': 'priya@example.com',
            'items': [{'product_sku': 'EAR-SLV-02', 'quantity': 3}],
        }, format='json')
        self.assertEqual(response.status_code, 400)
        self.assertEqual(ReturnRequest.objects.count(), 0)

    def test_ambiguous_customer_lists_candidates(self):
        get_user_model().objects.create_user(
            username='priya.n', email='priya.n@example.com', password='x',
            first_name='Priya', last_name='Nair',
        )
        response = self.client.post(self.url, {
            'order_id': self.order.order_number, 'customer_id': 'priya',
        }, format='json')

        self.assertEqual(response.status_code, 400)
        emails = {candidate['email'] for candidate in response.data['candidates']}
        self.assertEqual(emails, {'priya@example.com', 'priya.n@example.com'})
        self.assertEqual(ReturnRequest.objects.count(), 0)

    def test_unknown_order_is_404(self):
        response = self.client.post(self.url, {
            'order_id': 'ORD-NOT-REAL', 'customer_id': 'priya@example.com',
        }, format='json')
        self.assertEqual(response.status_code, 404)

    def test_oversized_numeric_order_reference_is_404(self):
        response = self.client.post(self.url, {
            'order_id': '9' * 40, 'customer_id': 'priya@example.com',
        }, format='json')
        self.assertEqual(response.status_code, 404)

    def test_policy_charges_are_waived(self):
        policy = {**settings.RETURN_POLICY, 'RETURN_SHIPPING_COST': 150, 'RESTOCKING_FEE': 500}
        with self.settings(RETURN_POLICY=policy):
            response = self.client.post(self.url, {
                'order_id': self.order.order_number, 'customer_id': 'priya@example.com',
                'items': [{'product_sku': 'RING-22K-07', 'quantity': 1}],
            }, format='json')

        self.assertEqual(response.status_code, 201)
        return_request = ReturnRequest.objects.get()
        self.assertEqual(return_request.restocking_fee, Decimal('0'))
        self.assertEqual(return_request.refund_amount, Decimal('25000.00'))

    def test_order_of_another_customer_rejected(self):
        response = self.client.post(self.url, {
            'order_id': self.order.order_number, 'customer_id': 'rahul@example.com',
        }, format='json')
        self.assertEqual(response.status_code, 400)


class LookupTests(BaseTestCase):

    def test_order_strategies_in_rank_order(self):
        second = self.make_order(self.customer, 'X1001')

        result = resolve_order(str(second.pk))
        self.assertIsInstance(result, Found)
        self.assertEqual((result.obj, result.strategy), (second, 'id'))

        result = resolve_order(second.order_number.lower())
        self.assertEqual((result.obj, result.strategy), (second, 'order_number'))

        result = resolve_order('#x1001')
        self.assertEqual((result.obj, result.strategy), (second, 'order_number_suffix'))

    def test_order_suffix_matching_several_is_ambiguous(self):
        self.make_order(self.customer, '77-B')
        self.make_order(self.customer, '78-B')
        result = resolve_order('-B')
        self.assertIsInstance(result, Ambiguous)
        self.assertEqual(result.strategy, 'order_number_suffix')
        self.assertEqual(len(result.candidates), 2)

    def test_customer_strategies(self):
        self.assertEqual(resolve_customer(str(self.customer.pk)).obj, self.customer)
        self.assertEqual(resolve_customer('PRIYA@example.com').strategy, 'email')
        self.assertEqual(resolve_customer('rahul v').obj, self.other_customer)
        self.assertIsInstance(resolve_customer('nobody@example.com'), NotFound)
        self.assertIsInstance(resolve_customer(''), NotFound)

    def test_digit_strings_beyond_key_range_are_not_found(self):
        self.assertIsInstance(resolve_order('9' * 40), NotFound)
        self.assertIsInstance(resolve_customer('9' * 40), NotFound)
        self.assertIsInstance(resolve_order('#²'), NotFound)


# ============================================================
# CUSTOMER API TESTS
# ============================================================

class CustomerReturnTests(BaseTestCase):

    def setUp(self):
        super().setUp()
        self.as_customer()

    def create_payload(self, **overrides):
        payload = {
            'order_id': self.order.pk,
            'items': [{
                'product_sku': 'RING-22K-07', 'quantity': 1,
                'return_reason': 'size_fitting_issue', 'item_condition': 'unused',
            }],
        }
        payload.update(overrides)
        return payload

    def test_delivered_order_is_eligible(self):
        response = self.client.post(f'{self.base_url}/check-eligibility/', {'order_id': self.order.pk},
                                    format='json')
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data['eligible'])
        self.assertEqual(response.data['return_window_days'], 10)

    def test_expired_window_and_undelivered_orders_not_eligible(self):
        expired = self.make_order(self.customer, '0002', delivered_days_ago=15)
        shipped = self.make_order(self.customer, '0003', status='shipped')
        for order in (expired, shipped):
            with self.subTest(order=order.order_number):
                response = self.client.post(f'{self.base_url}/check-eligibility/',
                                            {'order_id': order.pk}, format='json')
                self.assertFalse(response.data['eligible'])

    def test_create_return(self):
        response = self.client.post(f'{self.base_url}/', self.create_payload(), format='json')

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data['status'], 'requested')
        self.assertEqual(Decimal(response.data['refund_amount']), Decimal('25000.00'))
        return_request = ReturnRequest.objects.get()
        self.assertEqual(self.history(return_request), ['requested'])
        self.assertEqual(return_request.status_history.get().changed_by, 'customer')
        self.assertEqual(return_request.pickup_pincode, '400050')

    def test_create_return_deducts_policy_charges(self):
        policy = {**settings.RETURN_POLICY, 'RETURN_SHIPPING_COST': 150, 'RESTOCKING_FEE': 500}
        with self.settings(RETURN_POLICY=policy):
            response = self.client.post(f'{self.base_url}/', self.create_payload(), format='json')

        self.assertEqual(response.status_code, 201)
        self.assertEqual(Decimal(response.data['original_amount']), Decimal('25000.00'))
        self.assertEqual(Decimal(response.data['return_shipping_cost']), Decimal('150'))
        self.assertEqual(Decimal(response.data['restocking_fee']), Decimal('500'))
        self.assertEqual(ReturnRequest.objects.get().refund_amount, Decimal('24350.00'))

    def test_charges_above_return_value_rejected(self):
        policy = {**settings.RETURN_POLICY, 'RESTOCKING_FEE': 3000}
        with self.settings(RETURN_POLICY=policy):
            response = self.client.post(f'{self.base_url}/', self.create_payload(items=[{
                'product_sku': 'EAR-SLV-02', 'quantity': 1, 'return_reason': 'no_longer_needed',
            }]), format='json')

        self.assertEqual(response.status_code, 400)
        self.assertEqual(ReturnRequest.objects.count(), 0)

    def test_second_active_return_rejected(self):
        self.client.post(f'{self.base_url}/', self.create_payload(), format='json')
        response = self.client.post(f'{self.base_url}/', self.create_payload(items=[{
            'product_sku': 'EAR-SLV-02', 'quantity': 1, 'return_reason': 'no_longer_needed',
        }]), format='json')

        self.assertEqual(response.status_code, 400)
        self.assertEqual(ReturnRequest.objects.count(), 1)

    def test_new_return_allowed_after_cancellation(self):
        self.make_return(status='cancelled')
        response = self.client.post(f'{self.base_url}/', self.create_payload(), format='json')
        self.assertEqual(response.status_code, 201)

    def test_quantity_above_order_line_rejected(self):
        response = self.client.post(f'{self.base_url}/', self.create_payload(items=[{
            'product_sku': 'EAR-SLV-02', 'quantity': 3, 'return_reason': 'no_longer_needed',
        }]), format='json')
        self.assertEqual(response.status_code, 400)

    def test_cannot_return_someone_elses_order(self):
        self.as_customer(self.other_customer)
        response = self.client.post(f'{self.base_url}/', self.create_payload(), format='json')
        self.assertEqual(response.status_code, 404)

    def test_cancel_before_pickup(self):
        return_request = self.make_return(status='approved')
        response = self.client.post(f'{self.base_url}/{return_request.pk}/cancel/')
        self.assertEqual(response.status_code, 200)
        return_request.refresh_from_db()
        self.assertEqual(return_request.status, 'cancelled')
        self.assertEqual(return_request.status_history.last().changed_by, 'customer')

    def test_cancel_after_pickup_rejected(self):
        return_request = self.make_return(status='picked_up')
        response = self.client.post(f'{self.base_url}/{return_request.pk}/cancel/')
        self.assertEqual(response.status_code, 400)
        return_request.refresh_from_db()
        self.assertEqual(return_request.status, 'picked_up')

    def test_status_timeline(self):
        return_request = self.make_return(status='requested')
        response = self.client.get(f'{self.base_url}/{return_request.pk}/status/')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['current_status'], 'requested')
        self.assertEqual(len(response.data['timeline']), 1)

    def test_list_shows_only_own_returns_with_cursor(self):
        first = self.make_return(status='cancelled')
        second = self.make_return(status='requested')
        other_order = self.make_order(self.other_customer, '0009')
        self.make_return(order=other_order)

        response = self.client.get(f'{self.base_url}/list/', {'page_size': 1})
        self.assertEqual([r['id'] for r in response.data['results']], [first.pk])
        self.assertTrue(response.data['has_more'])

        response = self.client.get(f'{self.base_url}/list/',
                                   {'page_size': 1, 'cursor': response.data['next_cursor']})
        self.assertEqual([r['id'] for r in response.data['results']], [second.pk])
        self.assertFalse(response.data['has_more'])

    def test_detail_of_other_customers_return_is_404(self):
        other_return = self.make_return(order=self.make_order(self.other_customer, '0009'))
        response = self.client.get(f'{self.base_url}/{other_return.pk}/')
        self.assertEqual(response.status_code, 404)

    def test_anonymous_requests_refused(self):
        self.client.force_authenticate(user=None)
        response = self.client.get(f'{self.base_url}/list/')
        self.assertIn(response.status_code, (401, 403))
