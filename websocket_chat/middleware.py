import time
import logging
from urllib.parse import parse_qs
from django.conf import settings
from django.core.cache import cache
from channels.middleware import BaseMiddleware

from marketplace.jwt_utils import get_identity_from_token

logger = logging.getLogger(__name__)


class WebSocketAuthMiddleware(BaseMiddleware):
    """
    Middleware for WebSocket authentication.

    Trusts the identity collaborator's JWT completely: a valid token yields
    ``scope['user_id']`` and ``scope['user_role']``; anything else closes the
    handshake with 4001. Connection attempts are rate limited per user.
    """

    async def __call__(self, scope, receive, send):
        query_string = scope.get('query_string', b'').decode()
        query_params = parse_qs(query_string)

        token = query_params.get('token', [None])[0]

        if not token:
            await send({
                'type': 'websocket.close',
                'code': 4001,
                'reason': 'Authentication token required'
            })
            return

        user_id, user_role = self.validate_jwt_token(token)
        if not user_id:
            await send({
                'type': 'websocket.close',
                'code': 4001,
                'reason': 'Invalid authentication token'
            })
            return

        if not await self.check_rate_limit(user_id):
            await send({
                'type': 'websocket.close',
                'code': 4029,
                'reason': 'Rate limit exceeded'
            })
            return

        scope = dict(scope, user_id=user_id, user_role=user_role, authenticated=True)

        return await super().__call__(scope, receive, send)

    def validate_jwt_token(self, token):
        """Return ``(user_id, role)`` for a valid token, ``(None, None)`` otherwise"""
        user_id, user_role = get_identity_from_token(token)
        if not user_id:
            logger.warning("WebSocket JWT validation failed")
        return user_id, user_role

    async def check_rate_limit(self, user_id):
        """Check if user has exceeded the connection rate limit"""
        cache_key = f"websocket_rate_limit:{user_id}"
        current_time = int(time.time())

        rate_data = await cache.aget(cache_key, {'count': 0, 'window_start': current_time})

        if current_time - rate_data['window_start'] >= 60:
            rate_data = {'count': 0, 'window_start': current_time}

        if rate_data['count'] >= getattr(settings, 'WEBSOCKET_RATE_LIMIT', 30):
            logger.warning(f"WebSocket rate limit exceeded for {user_id}")
            return False

        rate_data['count'] += 1
        await cache.aset(cache_key, rate_data, 60)

        return True


class WebSocketSecurityMiddleware(BaseMiddleware):
    """
    Exposes transport limits to consumers through the scope
    """

    async def __call__(self, scope, receive, send):
        scope = dict(
            scope,
            max_message_size=getattr(settings, 'WEBSOCKET_MAX_MESSAGE_SIZE', 8192),
            connection_timeout=getattr(settings, 'WEBSOCKET_CONNECTION_TIMEOUT', 3600),
            heartbeat_interval=getattr(settings, 'WEBSOCKET_HEARTBEAT_INTERVAL', 30),
        )

        return await super().__call__(scope, receive, send)
