"""
Returns Module - Database Models

TABLES:
1. ReturnRequest       → One return per request (customer, admin or manual refund)
2. ReturnItem          → Order lines being returned, denormalized at return time
3. ReturnStatusHistory → Every status change (append-only audit trail)
4. PickupTrackingEvent → Reverse pickup scans reported by the courier
5. ReturnInspection    → Warehouse inspection result, written once
6. AdminNote           → Free-text notes from the ops team (append-only)
"""

import time
from decimal import Decimal

from django.conf import settings
from django.db import models
from django.db.models import Q

from orders.models import Order


# ============================================================
# RETURN REQUEST MODEL
# ============================================================

class ReturnRequest(models.Model):
    """
    The core model. Status only ever changes through returns.transitions,
    which also writes the matching ReturnStatusHistory row.
    """

    STATUS_CHOICES = [
        ('requested', 'Requested'),
        ('pending_approval', 'Pending Approval'),
        ('approved', 'Approved'),
        ('rejected', 'Rejected'),
        ('pickup_scheduled', 'Pickup Scheduled'),
        ('pickup_failed', 'Pickup Failed'),
        ('picked_up', 'Picked Up'),
        ('in_transit', 'In Transit'),
        ('received', 'Received at Warehouse'),
        ('inspected', 'Inspected'),
        ('approved_refund', 'Refund Approved'),
        ('rejected_refund', 'Refund Rejected'),
        ('refund_processed', 'Refund Processed'),
        ('completed', 'Completed'),
        ('cancelled', 'Cancelled'),
    ]

    # Returns in these statuses do not block a new return on the same order
    CLOSED_STATUSES = ['cancelled', 'completed']

    PICKUP_STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('scheduled', 'Scheduled'),
        ('attempted', 'Attempted'),
        ('completed', 'Completed'),
        ('failed', 'Failed'),
        ('not_required', 'Not Required'),
    ]

    REFUND_METHOD_CHOICES = [
        ('original_payment', 'Original Payment Method'),
        ('bank_transfer', 'Bank Transfer'),
        ('store_credit', 'Store Credit'),
    ]

    SOURCE_CHOICES = [
        ('website', 'Website'),
        ('admin', 'Admin'),
        ('admin_manual', 'Admin Manual Refund'),
    ]

    return_number = models.CharField(max_length=50, unique=True, db_index=True)
    order = models.ForeignKey(Order, on_delete=models.PROTECT, related_name='returns')
    customer = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='returns',
    )
    status = models.CharField(max_length=30, choices=STATUS_CHOICES, default='requested')
    source = models.CharField(max_length=20, choices=SOURCE_CHOICES, default='website')

    # Refund details
    original_amount = models.DecimalField(max_digits=12, decimal_places=2)
    return_shipping_cost = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0'))
    restocking_fee = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0'))
    refund_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    refund_method = models.CharField(max_length=20, choices=REFUND_METHOD_CHOICES, default='original_payment')
    refund_processed_at = models.DateTimeField(null=True, blank=True)
    refund_transaction_id = models.CharField(max_length=200, blank=True)
    refund_status = models.CharField(max_length=30, blank=True)     # As reported by the gateway

    # Pickup details (address snapshot + courier tracking)
    pickup_name = models.CharField(max_length=200, blank=True)
    pickup_phone = models.CharField(max_length=15, blank=True)
    pickup_address_line1 = models.CharField(max_length=500, blank=True)
    pickup_address_line2 = models.CharField(max_length=500, blank=True)
    pickup_city = models.CharField(max_length=100, blank=True)
    pickup_state = models.CharField(max_length=100, blank=True)
    pickup_pincode = models.CharField(max_length=10, blank=True)
    pickup_status = models.CharField(max_length=20, choices=PICKUP_STATUS_CHOICES, default='pending')
    pickup_scheduled_date = models.DateTimeField(null=True, blank=True)
    pickup_time_slot = models.CharField(max_length=50, blank=True)
    actual_pickup_date = models.DateTimeField(null=True, blank=True)
    special_instructions = models.TextField(blank=True)
    awb_code = models.CharField(max_length=100, blank=True, db_index=True)
    shiprocket_order_id = models.CharField(max_length=100, blank=True, db_index=True)
    courier = models.CharField(max_length=100, blank=True)
    current_location = models.CharField(max_length=255, blank=True)
    last_tracking_update = models.DateTimeField(null=True, blank=True)
    delivered_to_warehouse_at = models.DateTimeField(null=True, blank=True)

    # Eligibility (computed once at creation)
    is_eligible = models.BooleanField(default=True)
    eligibility_reason = models.CharField(max_length=500, blank=True)
    eligibility_checked_at = models.DateTimeField(null=True, blank=True)

    completed_at = models.DateTimeField(null=True, blank=True)
    completion_notes = models.TextField(blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'return_requests'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['customer', 'status']),
            models.Index(fields=['status', 'created_at']),
            models.Index(fields=['pickup_status', 'pickup_scheduled_date']),
        ]
        constraints = [
            # One open return per order; cancelled/completed ones do not count
            models.UniqueConstraint(
                fields=['order'],
                condition=~Q(status__in=['cancelled', 'completed']),
                name='unique_active_return_per_order',
            ),
        ]

    def __str__(self):
        return f"Return {self.return_number} - {self.order.order_number}"

    def generate_return_number(self):
        """Generate return number like RET17000000000000001"""
        count = ReturnRequest.objects.count()
        return f"RET{int(time.time() * 1000)}{count + 1:04d}"

    def save(self, *args, **kwargs):
        """Auto-generate return_number on first save"""
        if not self.return_number:
            self.return_number = self.generate_return_number()
        super().save(*args, **kwargs)

    @property
    def is_closed(self):
        return self.status in self.CLOSED_STATUSES

    def calculate_refund_amount(self):
        """Original amount minus return shipping and restocking deductions."""
        if self.original_amount <= 0:
            raise ValueError('Original amount must be greater than 0')
        if self.return_shipping_cost < 0 or self.restocking_fee < 0:
            raise ValueError('Shipping cost and restocking fee cannot be negative')
        deductions = self.return_shipping_cost + self.restocking_fee
        if deductions > self.original_amount:
            raise ValueError('Total deductions cannot exceed original amount')
        self.refund_amount = self.original_amount - deductions
        return self.refund_amount

    @classmethod
    def active_for_order(cls, order):
        return cls.objects.filter(order=order).exclude(status__in=cls.CLOSED_STATUSES).first()


# ============================================================
# RETURN ITEM MODEL
# ============================================================

class ReturnItem(models.Model):

    RETURN_REASON_CHOICES = [
        ('defective_product', 'Defective Product'),
        ('wrong_item_delivered', 'Wrong Item Delivered'),
        ('product_damaged', 'Product Damaged'),
        ('poor_quality', 'Poor Quality'),
        ('not_as_described', 'Not as Described'),
        ('size_fitting_issue', 'Size/Fitting Issue'),
        ('ordered_by_mistake', 'Ordered by Mistake'),
        ('better_price_available', 'Better Price Available'),
        ('no_longer_needed', 'No Longer Needed'),
        ('delivery_delayed', 'Delivery Delayed'),
        ('admin_initiated', 'Admin Initiated'),
        ('manual_refund', 'Manual Refund'),
        ('other', 'Other'),
    ]

    CONDITION_CHOICES = [
        ('unused', 'Unused'),
        ('lightly_used', 'Lightly Used'),
        ('damaged', 'Damaged'),
        ('defective', 'Defective'),
        ('unknown', 'Unknown'),
        ('not_applicable', 'Not Applicable'),
    ]

    return_request = models.ForeignKey(ReturnRequest, on_delete=models.CASCADE, related_name='items')
    product_sku = models.CharField(max_length=100)
    name = models.CharField(max_length=500)
    price = models.DecimalField(max_digits=12, decimal_places=2)
    quantity = models.PositiveIntegerField()
    image = models.URLField(max_length=1000, blank=True)
    return_reason = models.CharField(max_length=30, choices=RETURN_REASON_CHOICES)
    detailed_reason = models.TextField(blank=True)
    item_condition = models.CharField(max_length=20, choices=CONDITION_CHOICES, default='unused')

    class Meta:
        db_table = 'return_items'

    def __str__(self):
        return f"{self.return_request.return_number}: {self.name} x{self.quantity}"


# ============================================================
# RETURN STATUS HISTORY MODEL
# ============================================================

class ReturnStatusHistory(models.Model):
    """
    Every status change for a return request, in order.
    The last row's to_status always equals ReturnRequest.status.

    Example timeline of an automated return:
        requested → approved → pickup_scheduled → picked_up → in_transit
        → received → inspected → approved_refund → refund_processed → completed
    """

    return_request = models.ForeignKey(
        ReturnRequest,
        on_delete=models.CASCADE,
        related_name='status_history'
    )
    from_status = models.CharField(max_length=30, blank=True)
    to_status = models.CharField(max_length=30)
    changed_by = models.CharField(max_length=100, default='system')  # admin id, 'customer', 'system_automation'
    comment = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'return_status_history'
        ordering = ['created_at', 'id']
        indexes = [
            models.Index(fields=['return_request', 'created_at']),
        ]

    def __str__(self):
        return f"{self.return_request.return_number}: {self.from_status} → {self.to_status}"


# ============================================================
# PICKUP TRACKING EVENT MODEL
# ============================================================

class PickupTrackingEvent(models.Model):

    return_request = models.ForeignKey(
        ReturnRequest,
        on_delete=models.CASCADE,
        related_name='tracking_history'
    )
    activity = models.CharField(max_length=255, blank=True)
    location = models.CharField(max_length=255, blank=True)
    timestamp = models.DateTimeField()
    status_code = models.CharField(max_length=20, blank=True)

    class Meta:
        db_table = 'return_pickup_tracking_events'
        ordering = ['timestamp', 'id']

    def __str__(self):
        return f"{self.return_request.return_number} [{self.status_code}] {self.activity}"


# ============================================================
# INSPECTION MODEL
# ============================================================

class ReturnInspection(models.Model):

    CONDITION_CHOICES = [
        ('excellent', 'Excellent'),
        ('good', 'Good'),
        ('fair', 'Fair'),
        ('poor', 'Poor'),
        ('damaged', 'Damaged'),
    ]

    return_request = models.OneToOneField(
        ReturnRequest,
        on_delete=models.CASCADE,
        related_name='inspection'
    )
    condition = models.CharField(max_length=20, choices=CONDITION_CHOICES, blank=True)
    approved = models.BooleanField(default=False)
    notes = models.TextField(blank=True)
    photos = models.JSONField(default=list, blank=True)
    rejection_reason = models.TextField(blank=True)
    inspected_by = models.CharField(max_length=100)
    inspected_at = models.DateTimeField()

    class Meta:
        db_table = 'return_inspections'

    def __str__(self):
        verdict = 'approved' if self.approved else 'rejected'
        return f"Inspection of {self.return_request.return_number}: {verdict}"


# ============================================================
# ADMIN NOTE MODEL
# ============================================================

class AdminNote(models.Model):

    return_request = models.ForeignKey(
        ReturnRequest,
        on_delete=models.CASCADE,
        related_name='admin_notes'
    )
    note = models.TextField()
    added_by = models.CharField(max_length=100)
    added_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'return_admin_notes'
        ordering = ['added_at', 'id']

    def __str__(self):
        return f"Note on {self.return_request.return_number} by {self.added_by}"
