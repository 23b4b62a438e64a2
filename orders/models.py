"""
Orders Module - Database Models

TABLES:
1. Order         → The customer's purchase (status, payment, address snapshot)
2. OrderItem     → One line per product SKU on the order
3. Shipment      → Forward shipping sub-record (AWB, courier, delivery dates)
4. TrackingEvent → Courier scan history for the shipment (append-only)
"""

import time

from django.conf import settings
from django.db import models


# ============================================================
# ORDER MODEL
# ============================================================

class Order(models.Model):
    """
    A customer's order. Checkout creates it; the courier webhooks and the
    returns module move its status afterwards.
    """

    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('confirmed', 'Confirmed'),
        ('processing', 'Processing'),
        ('shipped', 'Shipped'),
        ('delivered', 'Delivered'),
        ('returned', 'Returned'),
        ('cancelled', 'Cancelled'),
        ('refunded', 'Refunded'),
    ]

    PAYMENT_METHOD_CHOICES = [
        ('cod', 'Cash on Delivery'),
        ('online', 'Online'),
    ]

    PAYMENT_STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('paid', 'Paid'),
        ('failed', 'Failed'),
        ('refunded', 'Refunded'),
    ]

    REFUND_TYPE_CHOICES = [
        ('manual', 'Manual'),
        ('automatic', 'Automatic'),
    ]

    # Forward progression; courier callbacks never move an order backwards along it
    PROGRESSION = ['pending', 'confirmed', 'processing', 'shipped', 'delivered']
    FINAL_STATUSES = ['delivered', 'returned', 'cancelled', 'refunded']

    order_number = models.CharField(max_length=50, unique=True, db_index=True)
    customer = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='orders',
    )

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='pending')
    total_amount = models.DecimalField(max_digits=12, decimal_places=2)
    ordered_at = models.DateTimeField()

    # Payment info (needed for refund processing)
    payment_method = models.CharField(max_length=10, choices=PAYMENT_METHOD_CHOICES, default='cod')
    payment_status = models.CharField(max_length=20, choices=PAYMENT_STATUS_CHOICES, default='pending')
    payment_reference = models.CharField(max_length=200, blank=True)   # Razorpay payment id
    paid_at = models.DateTimeField(null=True, blank=True)

    # Shipping address snapshot
    shipping_name = models.CharField(max_length=200)
    shipping_phone = models.CharField(max_length=15)
    shipping_address_line1 = models.CharField(max_length=500)
    shipping_address_line2 = models.CharField(max_length=500, blank=True)
    shipping_city = models.CharField(max_length=100)
    shipping_state = models.CharField(max_length=100)
    shipping_pincode = models.CharField(max_length=10)

    # Courier-side order reference used by the label-based tracking webhook
    shiprocket_order_id = models.CharField(max_length=100, blank=True, db_index=True)

    # Refund bookkeeping (full refunds flip status to 'refunded')
    refund_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)
    refund_type = models.CharField(max_length=20, choices=REFUND_TYPE_CHOICES, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'orders'
        ordering = ['-ordered_at']
        indexes = [
            models.Index(fields=['customer', 'status']),
            models.Index(fields=['status', 'created_at']),
        ]

    def __str__(self):
        return f"Order {self.order_number}"

    def generate_order_number(self):
        """Generate order number like ORD17000000000000001"""
        count = Order.objects.count()
        return f"ORD{int(time.time() * 1000)}{count + 1:04d}"

    def save(self, *args, **kwargs):
        if not self.order_number:
            self.order_number = self.generate_order_number()
        super().save(*args, **kwargs)

    def is_regression(self, new_status):
        """True when moving to new_status would undo courier progress."""
        if self.status == new_status:
            return False
        if self.status in self.FINAL_STATUSES:
            return True
        if self.status in self.PROGRESSION and new_status in self.PROGRESSION:
            return self.PROGRESSION.index(new_status) < self.PROGRESSION.index(self.status)
        return False

    def settle_cod_payment(self, when):
        """Cash-on-delivery orders are paid the moment the courier delivers them."""
        if self.payment_method == 'cod' and self.payment_status != 'paid':
            self.payment_status = 'paid'
            self.paid_at = when
            return True
        return False

    def mark_refunded(self, amount, when, refund_type):
        self.status = 'refunded'
        self.payment_status = 'refunded'
        self.refund_amount = amount
        self.refunded_at = when
        self.refund_type = refund_type


# ============================================================
# ORDER ITEM MODEL
# ============================================================

class OrderItem(models.Model):
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name='items')
    product_sku = models.CharField(max_length=100)
    name = models.CharField(max_length=500)
    image = models.URLField(max_length=1000, blank=True)
    price = models.DecimalField(max_digits=12, decimal_places=2)
    quantity = models.PositiveIntegerField(default=1)

    class Meta:
        db_table = 'order_items'
        constraints = [
            models.UniqueConstraint(fields=['order', 'product_sku'], name='unique_sku_per_order'),
        ]

    def __str__(self):
        return f"{self.order.order_number} - {self.name} x{self.quantity}"


# ============================================================
# SHIPMENT MODEL
# ============================================================
# Forward (seller → customer) shipment, kept up to date by courier webhooks

class Shipment(models.Model):

    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('processing', 'Processing'),
        ('shipped', 'Shipped'),
        ('delivered', 'Delivered'),
        ('cancelled', 'Cancelled'),
    ]

    order = models.OneToOneField(Order, on_delete=models.CASCADE, related_name='shipping')
    awb_code = models.CharField(max_length=100, blank=True, db_index=True)
    shipment_id = models.CharField(max_length=100, blank=True, db_index=True)   # Courier's internal id
    courier = models.CharField(max_length=100, blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='pending')

    current_location = models.CharField(max_length=255, blank=True)
    last_update_at = models.DateTimeField(null=True, blank=True)
    awb_assigned_at = models.DateTimeField(null=True, blank=True)
    picked_up_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)
    estimated_delivery = models.DateTimeField(null=True, blank=True)
    pod_url = models.URLField(max_length=1000, blank=True)     # Proof of delivery

    class Meta:
        db_table = 'shipments'

    def __str__(self):
        return f"Shipment {self.awb_code or '-'} for {self.order.order_number}"


# ============================================================
# TRACKING EVENT MODEL
# ============================================================

class TrackingEvent(models.Model):
    """One courier scan. Rows are only ever appended, never edited."""

    shipment = models.ForeignKey(Shipment, on_delete=models.CASCADE, related_name='tracking_history')
    activity = models.CharField(max_length=255, blank=True)
    location = models.CharField(max_length=255, blank=True)
    timestamp = models.DateTimeField()
    status_code = models.CharField(max_length=20, blank=True)
    status_label = models.CharField(max_length=100, blank=True)

    class Meta:
        db_table = 'shipment_tracking_events'
        ordering = ['timestamp', 'id']
        indexes = [
            models.Index(fields=['shipment', 'timestamp']),
        ]

    def __str__(self):
        return f"{self.timestamp:%Y-%m-%d %H:%M} {self.activity}"
