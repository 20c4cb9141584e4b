"""
Bearer-session middleware for the sync API.

Every /api route except the provider webhooks, the dispatch tick and the
health check needs an `Authorization: Bearer <token>` header naming a
configured session. The resolved user is attached to request.state so the
routes can enforce account ownership.
"""

import logging
import secrets
from typing import Callable, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


OPEN_ROUTES = frozenset({'/api/health'})

# Webhooks are called by Microsoft/Google; the dispatch tick checks its own secret
OPEN_ROUTE_PREFIXES = ('/api/webhooks/', '/api/dispatch/')


class TokenSessions:
    """Session validator backed by the `[auth] tokens` table."""

    def __init__(self, tokens: Dict[str, str]):
        self._tokens = dict(tokens)

    def validate_session(self, token: str) -> Optional[dict]:
        """Return the session user for a token, or None when it is not configured."""
        for known, user_id in self._tokens.items():
            if secrets.compare_digest(known.encode(), token.encode()):
                return {'id': user_id}
        return None


def bearer_token(request: Request) -> str:
    """Extract the bearer token from the Authorization header ('' when absent)."""
    scheme, _, credentials = request.headers.get('Authorization', '').partition(' ')
    if scheme.lower() != 'bearer':
        return ''
    return credentials.strip()


def _reject(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content={'success': False, 'error': message},
        headers={'WWW-Authenticate': 'Bearer'}
    )


class AuthMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated calls to protected sync routes."""

    def __init__(self, app, user_auth: TokenSessions):
        super().__init__(app)
        self.user_auth = user_auth

    def _is_protected(self, path: str) -> bool:
        if not path.startswith('/api/'):
            return False
        return path not in OPEN_ROUTES and not path.startswith(OPEN_ROUTE_PREFIXES)

    async def dispatch(self, request: Request, call_next: Callable):
        path = request.url.path
        if not self._is_protected(path):
            return await call_next(request)

        token = bearer_token(request)
        if not token:
            logger.warning(f"Missing bearer token for {request.method} {path}")
            return _reject('Not authenticated')

        user = self.user_auth.validate_session(token)
        if user is None:
            logger.warning(f"Unknown session token for {request.method} {path}")
            return _reject('Invalid or expired session')

        request.state.user = user
        return await call_next(request)


def get_current_user(request: Request) -> Optional[dict]:
    """Get the session user attached by AuthMiddleware."""
    return getattr(request.state, 'user', None)
