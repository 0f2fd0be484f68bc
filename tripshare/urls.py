"""
URL configuration for tripshare project.
"""

from django.contrib import admin
from django.urls import path, include
from drf_spectacular.views import SpectacularAPIView

from tracking.views import TrackLinkView

urlpatterns = [
    path('admin/', admin.site.urls),
    path('api/schema/', SpectacularAPIView.as_view(), name='schema'),
    path('api/', include('tracking.urls')),
    path('track/<str:trip_id>', TrackLinkView.as_view(), name='track-link'),
]
