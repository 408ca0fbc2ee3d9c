"""
URL configuration for the live class relay.
"""
from django.contrib import admin
from django.urls import include, path

from .health import health

urlpatterns = [
    path("admin/", admin.site.urls),
    # Load balancer health check; exempt from API key, CSRF and SSL redirect
    path("health/", health),
    path("api/", include("liveclass.urls")),
]
