"""
Returns Module - Django Admin Configuration

Internal admin panel used by the operations team to:
- View and search return requests
- Approve returns in bulk
- Resume refund automation that stalled (gateway error, missing payment info)
- Read the status timeline, courier scans and admin notes

Status is read-only here: every change goes through returns.transitions so
the history stays complete.

Access at: http://127.0.0.1:8000/admin/
"""

from django.contrib import admin

from .exceptions import ConcurrentTransitionError
from .models import (
    AdminNote,
    PickupTrackingEvent,
    ReturnInspection,
    ReturnItem,
    ReturnRequest,
    ReturnStatusHistory,
)
from .tasks import resume_return_automation
from .transitions import transition


# ============================================================
# INLINE MODELS (shown inside parent model's page)
# ============================================================

class ReturnItemInline(admin.TabularInline):
    model = ReturnItem
    extra = 0
    readonly_fields = ['product_sku', 'name', 'price', 'quantity', 'return_reason', 'item_condition']


class ReturnStatusHistoryInline(admin.TabularInline):
    """Show status timeline inside the ReturnRequest detail page."""
    model = ReturnStatusHistory
    extra = 0
    readonly_fields = ['from_status', 'to_status', 'changed_by', 'comment', 'created_at']
    ordering = ['-created_at']
    can_delete = False


class PickupTrackingEventInline(admin.TabularInline):
    model = PickupTrackingEvent
    extra = 0
    readonly_fields = ['activity', 'location', 'timestamp', 'status_code']
    ordering = ['-timestamp']
    can_delete = False


class ReturnInspectionInline(admin.StackedInline):
    model = ReturnInspection
    extra = 0
    can_delete = False


class AdminNoteInline(admin.TabularInline):
    model = AdminNote
    extra = 0
    readonly_fields = ['added_by', 'added_at']
    can_delete = False


# ============================================================
# RETURN REQUEST ADMIN
# ============================================================

@admin.register(ReturnRequest)
class ReturnRequestAdmin(admin.ModelAdmin):
    list_display = [
        'return_number', 'get_order_number', 'customer', 'status',
        'pickup_status', 'refund_amount', 'source', 'created_at',
    ]
    list_filter = ['status', 'pickup_status', 'source', 'refund_method']
    search_fields = [
        'return_number', 'order__order_number', 'customer__email',
        'awb_code', 'refund_transaction_id',
    ]
    readonly_fields = ['return_number', 'status', 'completed_at', 'created_at', 'updated_at']
    list_per_page = 25

    inlines = [
        ReturnItemInline, ReturnStatusHistoryInline, PickupTrackingEventInline,
        ReturnInspectionInline, AdminNoteInline,
    ]

    fieldsets = (
        ('Return Info', {
            'fields': ('return_number', 'order', 'customer', 'status', 'source', 'completed_at')
        }),
        ('Refund Info', {
            'fields': (
                'original_amount', 'return_shipping_cost', 'restocking_fee', 'refund_amount',
                'refund_method', 'refund_processed_at', 'refund_transaction_id', 'refund_status',
            )
        }),
        ('Pickup Info', {
            'fields': (
                'pickup_name', 'pickup_phone', 'pickup_address_line1', 'pickup_address_line2',
                'pickup_city', 'pickup_state', 'pickup_pincode', 'pickup_status',
                'pickup_scheduled_date', 'pickup_time_slot', 'actual_pickup_date',
                'awb_code', 'shiprocket_order_id', 'courier', 'current_location',
                'delivered_to_warehouse_at',
            )
        }),
        ('Eligibility', {
            'fields': ('is_eligible', 'eligibility_reason', 'eligibility_checked_at')
        }),
        ('Timestamps', {
            'fields': ('created_at', 'updated_at'),
            'classes': ('collapse',),
        }),
    )

    def get_order_number(self, obj):
        return obj.order.order_number
    get_order_number.short_description = 'Order Number'

    def has_delete_permission(self, request, obj=None):
        return False

    actions = ['approve_returns', 'resume_automation']

    @admin.action(description='Approve selected returns')
    def approve_returns(self, request, queryset):
        approved = 0
        for return_request in queryset.filter(status='requested'):
            try:
                transition(
                    return_request, 'approved', str(request.user.pk),
                    comment='Bulk approved via admin panel', expected=['requested'],
                )
                approved += 1
            except ConcurrentTransitionError:
                continue
        self.message_user(request, f'{approved} return(s) approved.')

    @admin.action(description='Resume stalled refund automation')
    def resume_automation(self, request, queryset):
        stalled = queryset.filter(status__in=['received', 'inspected', 'approved_refund', 'refund_processed'])
        queued = 0
        for return_request in stalled:
            resume_return_automation.delay(return_request.pk, str(request.user.pk))
            queued += 1
        self.message_user(request, f'{queued} return(s) queued for automation.')


# ============================================================
# STATUS HISTORY ADMIN (standalone view)
# ============================================================

@admin.register(ReturnStatusHistory)
class ReturnStatusHistoryAdmin(admin.ModelAdmin):
    list_display = [
        'get_return_number', 'from_status', 'to_status',
        'changed_by', 'created_at',
    ]
    list_filter = ['to_status', 'changed_by']
    search_fields = ['return_request__return_number', 'comment']
    readonly_fields = ['return_request', 'from_status', 'to_status', 'changed_by', 'comment', 'created_at']
    list_per_page = 50

    def get_return_number(self, obj):
        return obj.return_request.return_number
    get_return_number.short_description = 'Return Number'

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
