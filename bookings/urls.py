from django.urls import path
from . import views

app_name = "bookings"

urlpatterns = [
    path("reservations/", views.reserve, name="reserve"),
    path("reservations/<str:reservation_id>/release/", views.release, name="release"),
]
