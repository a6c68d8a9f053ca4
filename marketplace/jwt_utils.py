"""
JWT utilities for the marketplace messaging service.

Identity is owned by an external collaborator; this module only validates
the tokens it issues (``sub`` = user id, ``role`` = customer | provider) and
can mint equivalent tokens for tests.
"""

import time

import jwt
from django.conf import settings

ROLE_CUSTOMER = 'customer'
ROLE_PROVIDER = 'provider'
VALID_ROLES = (ROLE_CUSTOMER, ROLE_PROVIDER)


class JWTManager:
    """
    JWT Manager for token generation and validation.
    """

    def __init__(self):
        # Settings are read lazily so override_settings works in tests
        self._secret = None
        self._algorithm = None

    def _get_secret(self):
        if self._secret is None:
            self._secret = getattr(settings, 'JWT_SECRET', 'test_jwt_secret_key')
        return self._secret

    def _get_algorithm(self):
        if self._algorithm is None:
            self._algorithm = getattr(settings, 'JWT_ALGORITHM', 'HS256')
        return self._algorithm

    def generate_token(self, user_id, role=ROLE_CUSTOMER, expires_in_hours=24):
        """
        Generate a JWT token for testing purposes.

        Args:
            user_id (str): The user ID to include in the token
            role (str): Marketplace role of the user
            expires_in_hours (int): Token expiration time in hours

        Returns:
            str: JWT token string
        """
        now = int(time.time())
        payload = {
            'sub': str(user_id),
            'role': role,
            'iat': now,
            'exp': now + (expires_in_hours * 3600),
        }
        audience = getattr(settings, 'JWT_AUDIENCE', None)
        issuer = getattr(settings, 'JWT_ISSUER', None)
        if audience:
            payload['aud'] = audience
        if issuer:
            payload['iss'] = issuer

        return jwt.encode(payload, self._get_secret(), algorithm=self._get_algorithm())

    def validate_token(self, token):
        """
        Validate a JWT token and extract the payload.

        Raises:
            jwt.InvalidTokenError: If token is invalid, expired or has no subject
        """
        options = {'require': ['sub', 'exp']}
        kwargs = {}
        audience = getattr(settings, 'JWT_AUDIENCE', None)
        issuer = getattr(settings, 'JWT_ISSUER', None)
        if audience:
            kwargs['audience'] = audience
        if issuer:
            kwargs['issuer'] = issuer

        try:
            return jwt.decode(
                token,
                self._get_secret(),
                algorithms=[self._get_algorithm()],
                options=options,
                **kwargs
            )
        except jwt.ExpiredSignatureError:
            raise jwt.InvalidTokenError("Token has expired")
        except jwt.InvalidTokenError as e:
            raise jwt.InvalidTokenError(f"Invalid token: {str(e)}")

    def extract_identity(self, token):
        """
        Return ``(user_id, role)`` for a valid token, or ``(None, None)``.
        """
        try:
            payload = self.validate_token(token)
        except jwt.InvalidTokenError:
            return None, None

        role = payload.get('role')
        if role not in VALID_ROLES:
            role = None
        return str(payload['sub']), role


_jwt_manager = None


def _get_jwt_manager():
    """Get the global JWT manager instance, creating it if needed."""
    global _jwt_manager
    if _jwt_manager is None:
        _jwt_manager = JWTManager()
    return _jwt_manager


def generate_test_token(user_id, role=ROLE_CUSTOMER, expires_in_hours=24):
    """Generate a test JWT token for the given user ID."""
    return _get_jwt_manager().generate_token(user_id, role, expires_in_hours)


def validate_jwt_token(token):
    """Validate a JWT token and return the payload."""
    return _get_jwt_manager().validate_token(token)


def get_identity_from_token(token):
    """Extract ``(user_id, role)`` from a JWT token."""
    return _get_jwt_manager().extract_identity(token)
