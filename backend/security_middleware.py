# Security middleware for FastAPI: per-user bet and endpoint rate limits
import logging
from typing import Callable, Optional

from fastapi import Request
from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from security import BET_PATH_RE, BetRateLimiter, EndpointRateLimiter, flag_user_suspicious

logger = logging.getLogger(__name__)

SKIP_PATHS = (
    "/docs",
    "/openapi.json",
    "/api/auth/",
    "/api/admin/",
)


class SecurityMiddleware(BaseHTTPMiddleware):
    """
    Rejects bets placed faster than the bet interval and requests over the
    per-endpoint limits. Read-only requests are never limited.
    """

    def __init__(self, app, get_db: Callable, secret_key: str, algorithm: str = "HS256",
                 bet_limiter: Optional[BetRateLimiter] = None, endpoint_limiter: Optional[EndpointRateLimiter] = None):
        super().__init__(app)
        self.get_db = get_db
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.bet_limiter = bet_limiter
        self.endpoint_limiter = endpoint_limiter or EndpointRateLimiter()

    def _current_user(self, request: Request) -> Optional[dict]:
        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return None
        try:
            payload = jwt.decode(auth_header.split(" ", 1)[1], self.secret_key, algorithms=[self.algorithm])
        except JWTError:
            return None  # the route's own auth dependency answers 401
        user_id = payload.get("sub")
        if not user_id:
            return None
        return {"id": user_id, "username": payload.get("username", "Unknown")}

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if request.method in ("GET", "HEAD", "OPTIONS") or any(path.startswith(p) for p in SKIP_PATHS):
            return await call_next(request)

        current_user = self._current_user(request)
        if not current_user:
            return await call_next(request)
        user_id = current_user["id"]
        username = current_user["username"]

        if self.bet_limiter and BET_PATH_RE.match(path) and not self.bet_limiter.allow(user_id):
            logger.warning(f"BET RATE LIMIT: {username} - {path}")
            await flag_user_suspicious(
                self.get_db(), user_id, username, "bet_rate_limit",
                f"Bets faster than one per {self.bet_limiter.interval_seconds}s on {path}",
                {"path": path},
            )
            return JSONResponse(status_code=429, content={"detail": "You are betting too fast. Please wait a moment."})

        blocked, count, limit = self.endpoint_limiter.hit(path, user_id)
        if blocked:
            logger.warning(f"RATE LIMIT: {username} - {path}")
            await flag_user_suspicious(
                self.get_db(), user_id, username, "endpoint_rate_limit",
                f"Rate limit exceeded on {path}: {count}/{limit} per minute",
                {"path": path, "count": count, "limit": limit},
            )
            return JSONResponse(status_code=429, content={"detail": "Rate limit exceeded for this action. Please wait."})

        return await call_next(request)
