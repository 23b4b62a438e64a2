"""
Orders Module - Django Admin Configuration

Lets the ops team look up an order by number, AWB or customer and see the
courier's tracking history without leaving the admin panel.
"""

from django.contrib import admin
from .models import Order, OrderItem, Shipment, TrackingEvent


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0


class ShipmentInline(admin.StackedInline):
    model = Shipment
    extra = 0
    readonly_fields = ['last_update_at', 'awb_assigned_at', 'picked_up_at', 'delivered_at']


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = [
        'order_number', 'customer', 'total_amount', 'status',
        'payment_method', 'payment_status', 'ordered_at',
    ]
    list_filter = ['status', 'payment_method', 'payment_status']
    search_fields = ['order_number', 'customer__email', 'customer__username', 'shipping__awb_code']
    readonly_fields = ['created_at', 'updated_at']
    list_per_page = 25
    inlines = [OrderItemInline, ShipmentInline]

    fieldsets = (
        ('Order Info', {
            'fields': ('order_number', 'customer', 'status', 'total_amount', 'ordered_at')
        }),
        ('Payment', {
            'fields': ('payment_method', 'payment_status', 'payment_reference', 'paid_at')
        }),
        ('Shipping Address', {
            'fields': (
                'shipping_name', 'shipping_phone', 'shipping_address_line1',
                'shipping_address_line2', 'shipping_city', 'shipping_state', 'shipping_pincode',
                'shiprocket_order_id',
            )
        }),
        ('Refund', {
            'fields': ('refund_amount', 'refunded_at', 'refund_type')
        }),
        ('Timestamps', {
            'fields': ('created_at', 'updated_at'),
            'classes': ('collapse',),
        }),
    )


class TrackingEventInline(admin.TabularInline):
    model = TrackingEvent
    extra = 0
    readonly_fields = ['activity', 'location', 'timestamp', 'status_code', 'status_label']
    ordering = ['-timestamp']


@admin.register(Shipment)
class ShipmentAdmin(admin.ModelAdmin):
    list_display = ['awb_code', 'get_order_number', 'courier', 'status', 'current_location', 'last_update_at']
    list_filter = ['status', 'courier']
    search_fields = ['awb_code', 'shipment_id', 'order__order_number']
    inlines = [TrackingEventInline]

    def get_order_number(self, obj):
        return obj.order.order_number
    get_order_number.short_description = 'Order Number'
