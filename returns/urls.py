"""
Returns Module URL Configuration
All URLs are prefixed with /api/v1/returns/
"""

from django.urls import path
from . import admin_views
from . import views
from . import webhooks

urlpatterns = [
    # Customer APIs
    path('', views.create_return, name='create-return'),
    path('list/', views.list_returns, name='list-returns'),
    path('<int:return_id>/', views.get_return_detail, name='return-detail'),
    path('<int:return_id>/status/', views.get_status_history, name='return-status'),
    path('<int:return_id>/cancel/', views.cancel_return, name='cancel-return'),
    path('check-eligibility/', views.check_eligibility, name='check-eligibility'),

    # Admin manual-override APIs (staff only)
    path('admin/<int:return_id>/', admin_views.admin_return_detail, name='admin-return-detail'),
    path('admin/manual-refund/', admin_views.manual_refund, name='admin-manual-refund'),
    path('admin/manual-return/', admin_views.manual_return, name='admin-manual-return'),

    # Webhook endpoint (called by the courier)
    path('webhooks/reverse-pickup/', webhooks.reverse_pickup_webhook, name='webhook-reverse-pickup'),
]
