from django.urls import re_path

from .consumers import ChatConsumer
from .registry import ConnectionRegistry

registry = ConnectionRegistry()

websocket_urlpatterns = [
    re_path(r'^ws/chat/$', ChatConsumer.as_asgi(registry=registry)),
]
