import logging

import jwt
from django.contrib.auth.models import AnonymousUser
from rest_framework.authentication import BaseAuthentication
from rest_framework.exceptions import AuthenticationFailed
from rest_framework.permissions import BasePermission

from .jwt_utils import VALID_ROLES, validate_jwt_token

logger = logging.getLogger(__name__)


class JWTAuthentication(BaseAuthentication):
    keyword = 'Bearer'

    def authenticate(self, request):
        """
        Authenticate a request using the bearer JWT issued by the identity service.

        On success the token subject is attached to ``request.user_id`` and its
        role claim to ``request.user_role``. Requests without an Authorization
        header are left anonymous so permission classes can decide.

        Raises:
            AuthenticationFailed: If the header is malformed or the token does not verify.
        """
        auth_header = request.headers.get('Authorization', '')
        if not auth_header:
            return None

        parts = auth_header.split()
        if len(parts) != 2 or parts[0] != self.keyword:
            raise AuthenticationFailed("Wrong token format. Expected 'Bearer token'")

        try:
            payload = validate_jwt_token(parts[1])
        except jwt.InvalidTokenError as e:
            logger.warning(f"Rejected bearer token: {e}")
            raise AuthenticationFailed(str(e))

        role = payload.get('role')
        request.user_id = str(payload['sub'])
        request.user_role = role if role in VALID_ROLES else None
        return (AnonymousUser(), parts[1])

    def authenticate_header(self, request):
        return self.keyword


class IsIdentified(BasePermission):
    """Allows access only to requests carrying a verified user id."""

    def has_permission(self, request, view):
        return bool(getattr(request, 'user_id', None))
