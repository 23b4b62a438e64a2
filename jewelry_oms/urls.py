"""
Jewelry OMS URL Configuration

URL Routing:
    /admin/          → Django admin panel (for internal ops team)
    /api/v1/orders/  → Order tracking webhooks from the courier
    /api/v1/returns/ → Return APIs, admin overrides and reverse pickup webhook
    /api/schema/     → OpenAPI schema, /api/docs/ for Swagger UI
"""

from django.contrib import admin
from django.urls import path, include
from drf_spectacular.views import SpectacularAPIView, SpectacularSwaggerView

urlpatterns = [
    path('admin/', admin.site.urls),
    path('api/v1/orders/', include('orders.urls')),
    path('api/v1/returns/', include('returns.urls')),
    path('api/schema/', SpectacularAPIView.as_view(), name='schema'),
    path('api/docs/', SpectacularSwaggerView.as_view(url_name='schema'), name='swagger-ui'),
]
