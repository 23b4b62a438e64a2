"""
Orders Module - Serializers
Orders are read-only here; checkout owns their creation.
"""

from rest_framework import serializers
from .models import Order, OrderItem, Shipment, TrackingEvent


class OrderItemSerializer(serializers.ModelSerializer):

    class Meta:
        model = OrderItem
        fields = ['id', 'product_sku', 'name', 'image', 'price', 'quantity']
        read_only_fields = fields


class TrackingEventSerializer(serializers.ModelSerializer):

    class Meta:
        model = TrackingEvent
        fields = ['activity', 'location', 'timestamp', 'status_code', 'status_label']
        read_only_fields = fields


class ShipmentSerializer(serializers.ModelSerializer):
    tracking_history = TrackingEventSerializer(many=True, read_only=True)

    class Meta:
        model = Shipment
        fields = [
            'awb_code', 'shipment_id', 'courier', 'status', 'current_location',
            'last_update_at', 'awb_assigned_at', 'picked_up_at', 'delivered_at',
            'estimated_delivery', 'pod_url', 'tracking_history',
        ]
        read_only_fields = fields


class OrderSerializer(serializers.ModelSerializer):
    """Order summary shown inside return responses."""

    items = OrderItemSerializer(many=True, read_only=True)

    class Meta:
        model = Order
        fields = [
            'id', 'order_number', 'status', 'total_amount', 'ordered_at',
            'payment_method', 'payment_status', 'refund_amount', 'refunded_at',
            'items',
        ]
        read_only_fields = fields
