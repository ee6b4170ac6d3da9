"""Rate limiting middleware — Redis-based fixed window.

Learn: Uses a per-minute counter stored in Redis, keyed like
"ticketflow:rl:{ip}:{minute}". The health check is exempt so load
balancers can poll freely.

Gracefully skips rate limiting if Redis is unavailable (e.g., in tests).
"""

import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Redis-based rate limiting per IP per minute."""

    def __init__(self, app, rpm: int = 100, exempt: tuple[str, ...] = ("/api/v1/health",)):
        super().__init__(app)
        self.rpm = rpm
        self.exempt = exempt

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path in self.exempt:
            return await call_next(request)

        # Try to get Redis — skip rate limiting if unavailable
        try:
            from ticketflow.realtime.pubsub import get_redis

            redis = get_redis()
        except RuntimeError:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        window = int(time.time() // 60)
        key = f"ticketflow:rl:{client_ip}:{window}"

        try:
            count = await redis.incr(key)
            if count == 1:
                await redis.expire(key, 120)  # 2-min TTL for safety
        except Exception:
            # Redis error — don't block the request
            return await call_next(request)

        if count > self.rpm:
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded. Try again later."},
                headers={"Retry-After": "60"},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.rpm)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.rpm - count))
        return response
