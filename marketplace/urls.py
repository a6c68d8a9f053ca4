"""
URL configuration for the marketplace project.

The websocket routes live in ``websocket_chat.routing``; this module only
covers the HTTP surface.
"""
from django.contrib import admin
from django.urls import path, include
from . import views

urlpatterns = [
    path('admin/', admin.site.urls),
    path('ping/', views.PingView.as_view(), name='ping'),
    path('conversations/', include('conversations.urls')),
]
