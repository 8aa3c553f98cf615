"""
URL configuration for the fiscal invoicing platform
Back-office only: invoices, contingencies and retries are handled in the admin.
"""

from django.contrib import admin
from django.urls import path

urlpatterns = [
    path("admin/", admin.site.urls),
]
