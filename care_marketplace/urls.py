from django.contrib import admin
from django.urls import path, include

urlpatterns = [
    path("admin/", admin.site.urls),
    path("api/bookings/", include("bookings.urls", namespace="bookings")),
    path("api/billing/", include("billing.urls", namespace="billing")),
]
