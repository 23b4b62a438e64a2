"""
Orders Module URL Configuration
All URLs are prefixed with /api/v1/orders/
"""

from django.urls import path
from . import webhooks

urlpatterns = [
    # Webhook endpoints (called by the courier)
    path('webhooks/shipment/', webhooks.shipment_webhook, name='webhook-shipment'),
    path('webhooks/tracking-updates/', webhooks.tracking_updates_webhook, name='webhook-tracking-updates'),
]
