"""
Returns Module - Serializers

Output serializers turn return records into the JSON the storefront and the
admin panel render. Input serializers validate request bodies before any
view touches the database.
"""

from decimal import Decimal

from rest_framework import serializers

from orders.serializers import OrderSerializer

from .models import (
    AdminNote,
    PickupTrackingEvent,
    ReturnInspection,
    ReturnItem,
    ReturnRequest,
    ReturnStatusHistory,
)


# ============================================================
# NESTED RECORD SERIALIZERS
# ============================================================

class ReturnItemSerializer(serializers.ModelSerializer):

    class Meta:
        model = ReturnItem
        fields = [
            'id', 'product_sku', 'name', 'price', 'quantity', 'image',
            'return_reason', 'detailed_reason', 'item_condition',
        ]
        read_only_fields = fields


class ReturnStatusHistorySerializer(serializers.ModelSerializer):
    """
    Serializes status history entries.
    This is what customers see as the return timeline.
    """

    class Meta:
        model = ReturnStatusHistory
        fields = ['id', 'from_status', 'to_status', 'changed_by', 'comment', 'created_at']
        read_only_fields = fields


class PickupTrackingEventSerializer(serializers.ModelSerializer):

    class Meta:
        model = PickupTrackingEvent
        fields = ['activity', 'location', 'timestamp', 'status_code']
        read_only_fields = fields


class ReturnInspectionSerializer(serializers.ModelSerializer):

    class Meta:
        model = ReturnInspection
        fields = [
            'condition', 'approved', 'notes', 'photos', 'rejection_reason',
            'inspected_by', 'inspected_at',
        ]
        read_only_fields = fields


class AdminNoteSerializer(serializers.ModelSerializer):
    """Ops team notes - admin endpoints only."""

    class Meta:
        model = AdminNote
        fields = ['id', 'note', 'added_by', 'added_at']
        read_only_fields = fields


# ============================================================
# RETURN REQUEST OUTPUT SERIALIZERS
# ============================================================

class ReturnRequestSerializer(serializers.ModelSerializer):
    """Full return request as the customer sees it."""

    order = OrderSerializer(read_only=True)
    items = ReturnItemSerializer(many=True, read_only=True)
    status_history = ReturnStatusHistorySerializer(many=True, read_only=True)
    tracking_history = PickupTrackingEventSerializer(many=True, read_only=True)
    inspection = ReturnInspectionSerializer(read_only=True)

    class Meta:
        model = ReturnRequest
        fields = [
            'id', 'return_number', 'order', 'customer', 'status', 'source', 'items',
            'original_amount', 'return_shipping_cost', 'restocking_fee', 'refund_amount',
            'refund_method', 'refund_processed_at', 'refund_transaction_id', 'refund_status',
            'pickup_name', 'pickup_phone', 'pickup_address_line1', 'pickup_address_line2',
            'pickup_city', 'pickup_state', 'pickup_pincode', 'pickup_status',
            'pickup_scheduled_date', 'pickup_time_slot', 'actual_pickup_date',
            'special_instructions', 'awb_code', 'courier', 'current_location',
            'last_tracking_update', 'delivered_to_warehouse_at',
            'is_eligible', 'eligibility_reason', 'eligibility_checked_at',
            'inspection', 'status_history', 'tracking_history',
            'completed_at', 'created_at', 'updated_at',
        ]
        read_only_fields = fields


class AdminReturnRequestSerializer(ReturnRequestSerializer):
    """Adds admin notes and the courier order id for the ops panel."""

    admin_notes = AdminNoteSerializer(many=True, read_only=True)

    class Meta(ReturnRequestSerializer.Meta):
        fields = ReturnRequestSerializer.Meta.fields + [
            'shiprocket_order_id', 'completion_notes', 'admin_notes',
        ]
        read_only_fields = fields


class ReturnRequestListSerializer(serializers.ModelSerializer):
    """
    Lightweight serializer for listing returns.
    Doesn't include nested items/history (saves database queries).
    """

    order_number = serializers.CharField(source='order.order_number', read_only=True)

    class Meta:
        model = ReturnRequest
        fields = [
            'id', 'return_number', 'order_number', 'status', 'pickup_status',
            'refund_amount', 'source', 'created_at',
        ]


# ============================================================
# CUSTOMER INPUT SERIALIZERS
# ============================================================

class CheckEligibilitySerializer(serializers.Serializer):
    """Customer sends: {"order_id": 123}"""

    order_id = serializers.IntegerField(help_text="Order ID to check")


class ReturnItemInputSerializer(serializers.Serializer):
    product_sku = serializers.CharField(max_length=100)
    quantity = serializers.IntegerField(min_value=1)
    return_reason = serializers.ChoiceField(choices=ReturnItem.RETURN_REASON_CHOICES)
    detailed_reason = serializers.CharField(required=False, allow_blank=True, max_length=2000)
    item_condition = serializers.ChoiceField(
        choices=ReturnItem.CONDITION_CHOICES, default='unused',
    )


class CreateReturnRequestSerializer(serializers.Serializer):
    """
    What the customer sends (POST body):
    {
        "order_id": 123,
        "items": [{"product_sku": "RING-22K-07", "quantity": 1,
                   "return_reason": "size_fitting_issue", "item_condition": "unused"}],
        "refund_method": "original_payment",
        "special_instructions": "Call before pickup"
    }
    The pickup address defaults to the order's shipping address.
    """

    order_id = serializers.IntegerField(help_text="ID of the order to return")
    items = ReturnItemInputSerializer(many=True)
    refund_method = serializers.ChoiceField(
        choices=ReturnRequest.REFUND_METHOD_CHOICES, default='original_payment',
    )
    special_instructions = serializers.CharField(required=False, allow_blank=True, max_length=1000)
    pickup_pincode = serializers.CharField(required=False, max_length=10)

    def validate_items(self, value):
        if not value:
            raise serializers.ValidationError("At least one item is required.")
        skus = [item['product_sku'] for item in value]
        if len(skus) != len(set(skus)):
            raise serializers.ValidationError("Each product can only be listed once.")
        return value

    def validate_pickup_pincode(self, value):
        """Basic pincode validation for Indian pincodes."""
        if not value.isdigit() or len(value) != 6:
            raise serializers.ValidationError("Pincode must be exactly 6 digits.")
        return value


# ============================================================
# ADMIN INPUT SERIALIZERS
# ============================================================

ADMIN_ACTIONS = [
    'approve', 'reject', 'schedule_pickup', 'mark_picked', 'mark_received',
    'inspect', 'process_refund', 'complete', 'cancel', 'update_status',
]


class InspectionDataSerializer(serializers.Serializer):
    condition = serializers.ChoiceField(choices=ReturnInspection.CONDITION_CHOICES)
    approved = serializers.BooleanField()
    notes = serializers.CharField(required=False, allow_blank=True)
    photos = serializers.ListField(child=serializers.URLField(), required=False, default=list)
    rejection_reason = serializers.CharField(required=False, allow_blank=True)


class RefundDetailsSerializer(serializers.Serializer):
    transaction_id = serializers.CharField(max_length=200)
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal('0.01'))


class PickupScheduleSerializer(serializers.Serializer):
    """Pickup slot plus the courier booking the reverse pickup webhook matches on."""

    date = serializers.DateTimeField(required=False)
    time_slot = serializers.CharField(max_length=50, required=False, allow_blank=True)
    awb_code = serializers.CharField(max_length=100, required=False, allow_blank=True)
    shiprocket_order_id = serializers.CharField(max_length=100, required=False, allow_blank=True)
    courier = serializers.CharField(max_length=100, required=False, allow_blank=True)

    def validate_awb_code(self, value):
        value = value.strip()
        if value and ReturnRequest.objects.filter(awb_code=value).exists():
            raise serializers.ValidationError("This AWB is already assigned to another return.")
        return value


class AdminReturnActionSerializer(serializers.Serializer):
    """
    PUT body of the admin action endpoint:
    {"action": "inspect", "note": "...", "inspection_data": {"condition": "good", "approved": true}}
    """

    action = serializers.ChoiceField(choices=ADMIN_ACTIONS)
    status = serializers.ChoiceField(choices=ReturnRequest.STATUS_CHOICES, required=False)
    note = serializers.CharField(required=False, allow_blank=True, default='')
    inspection_data = InspectionDataSerializer(required=False)
    refund_details = RefundDetailsSerializer(required=False)
    pickup_schedule = PickupScheduleSerializer(required=False)

    def validate(self, attrs):
        if attrs['action'] == 'update_status' and not attrs.get('status'):
            raise serializers.ValidationError({'status': 'Required for update_status.'})
        if attrs['action'] == 'inspect' and 'inspection_data' not in attrs:
            raise serializers.ValidationError({'inspection_data': 'Required for inspect.'})
        return attrs


class ManualRefundSerializer(serializers.Serializer):
    """
    Goodwill refund without a physical return:
    {"order_id": 12, "customer_id": "priya@example.com", "amount": "1500.00",
     "reason": "Stone missing on arrival", "method": "original_payment"}
    """

    order_id = serializers.IntegerField()
    customer_id = serializers.CharField(max_length=254, help_text="Customer id or email")
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal('0.01'))
    reason = serializers.CharField(max_length=2000)
    method = serializers.ChoiceField(
        choices=ReturnRequest.REFUND_METHOD_CHOICES, default='original_payment',
    )


class ManualReturnItemSerializer(serializers.Serializer):
    product_sku = serializers.CharField(max_length=100)
    quantity = serializers.IntegerField(min_value=1)
    return_reason = serializers.ChoiceField(
        choices=ReturnItem.RETURN_REASON_CHOICES, default='admin_initiated',
    )
    detailed_reason = serializers.CharField(required=False, allow_blank=True)
    item_condition = serializers.ChoiceField(choices=ReturnItem.CONDITION_CHOICES, default='unknown')


class ManualReturnSerializer(serializers.Serializer):
    """
    Admin-created return. order_id/customer_id accept partial references,
    see returns.lookup.
    """

    order_id = serializers.CharField(max_length=100)
    customer_id = serializers.CharField(max_length=254)
    items = ManualReturnItemSerializer(many=True, required=False, default=list)
    reason = serializers.CharField(required=False, allow_blank=True, default='')
    auto_approve = serializers.BooleanField(default=True)
    pickup_required = serializers.BooleanField(default=True)
    notes = serializers.CharField(required=False, allow_blank=True, default='')
