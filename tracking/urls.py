"""
URL configuration for the tracking app.
"""

from django.urls import path

from .views import TripDetailView

urlpatterns = [
    path('trips/<str:trip_id>/', TripDetailView.as_view(), name='trip-detail'),
]
