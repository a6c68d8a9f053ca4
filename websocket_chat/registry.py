"""
Connection registry for the real-time transport.

Every live websocket of a user joins the channel-layer group ``user_<id>``,
so a broadcast addressed to a user reaches all of that user's devices on
every server process. Local channel names are tracked per registry instance
and a cluster-wide connection counter lives in the Django cache.
"""

import logging
import re
from collections import defaultdict
from typing import Dict, Iterable, Set

from channels.layers import get_channel_layer
from django.conf import settings
from django.core.cache import cache

logger = logging.getLogger(__name__)

_GROUP_UNSAFE = re.compile(r'[^0-9A-Za-z\-_.]')


def user_group_name(user_id) -> str:
    return f"user_{_GROUP_UNSAFE.sub('_', str(user_id))}"


def presence_cache_key(user_id) -> str:
    return f"websocket_presence:{user_id}"


class ConnectionRegistry:
    # Consumers implement a handler method named after this type
    event_handler_type = 'chat.event'

    def __init__(self, channel_layer=None):
        self._channel_layer = channel_layer
        self._connections: Dict[str, Set[str]] = defaultdict(set)

    @property
    def channel_layer(self):
        if self._channel_layer is None:
            self._channel_layer = get_channel_layer()
        return self._channel_layer

    async def add(self, user_id, channel_name: str) -> None:
        user_id = str(user_id)
        self._connections[user_id].add(channel_name)
        await self.channel_layer.group_add(user_group_name(user_id), channel_name)

        key = presence_cache_key(user_id)
        timeout = getattr(settings, 'WEBSOCKET_CONNECTION_TIMEOUT', 3600)
        await cache.aadd(key, 0, timeout)
        try:
            await cache.aincr(key)
        except ValueError:
            # Key expired between add and incr
            await cache.aset(key, 1, timeout)
        logger.debug(f"Registered connection {channel_name} for user {user_id}")

    async def remove(self, user_id, channel_name: str) -> None:
        user_id = str(user_id)
        channels = self._connections.get(user_id)
        if channels is None or channel_name not in channels:
            return
        channels.discard(channel_name)
        if not channels:
            del self._connections[user_id]

        await self.channel_layer.group_discard(user_group_name(user_id), channel_name)

        key = presence_cache_key(user_id)
        try:
            remaining = await cache.adecr(key)
        except ValueError:
            remaining = 0
        if remaining <= 0:
            await cache.adelete(key)
        logger.debug(f"Removed connection {channel_name} for user {user_id}")

    def lookup(self, user_id) -> Set[str]:
        """Channel names of ``user_id`` connected to this process."""
        return set(self._connections.get(str(user_id), ()))

    async def is_online(self, user_id) -> bool:
        """Whether ``user_id`` has a live connection on any process."""
        if self._connections.get(str(user_id)):
            return True
        count = await cache.aget(presence_cache_key(user_id))
        return bool(count and count > 0)

    async def broadcast(self, user_ids: Iterable, event) -> None:
        """Push ``event`` to every connection of every distinct user in ``user_ids``."""
        message = {'type': self.event_handler_type, 'event': event.to_dict()}
        for user_id in dict.fromkeys(str(u) for u in user_ids):
            await self.channel_layer.group_send(user_group_name(user_id), message)

    async def send_to_channel(self, channel_name: str, event) -> None:
        await self.channel_layer.send(
            channel_name, {'type': self.event_handler_type, 'event': event.to_dict()}
        )
