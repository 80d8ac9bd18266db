import math
import time
from typing import Callable

from fastapi import HTTPException, Request
from limits import RateLimitItem, parse
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter

from config import get_settings

storage = MemoryStorage()
strategy = MovingWindowRateLimiter(storage)


class RateLimit:
    """A named moving-window limit applied per client address."""

    def __init__(self, name: str, rate: str, message: str) -> None:
        self.name = name
        self.item: RateLimitItem = parse(rate)
        self.message = message

    def hit(self, key: str) -> bool:
        return strategy.hit(self.item, self.name, key)

    def retry_after(self, key: str) -> int:
        reset_time, _remaining = strategy.get_window_stats(self.item, self.name, key)
        return max(1, math.ceil(reset_time - time.time()))

    def clear(self, key: str) -> None:
        strategy.clear(self.item, self.name, key)


login_limiter = RateLimit(
    "login", "5 per 15 minutes", "Too many login attempts, please try again later"
)
register_limiter = RateLimit(
    "register", "3 per hour", "Too many registration attempts, please try again later"
)
forgot_password_limiter = RateLimit(
    "forgot-password",
    "3 per hour",
    "Too many password reset requests, please try again later",
)
reset_password_limiter = RateLimit(
    "reset-password",
    "3 per hour",
    "Too many password reset attempts, please try again later",
)
user_search_limiter = RateLimit(
    "user-search", "20 per minute", "Too many search requests, please try again later"
)


def reset_all() -> None:
    storage.reset()


def client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def rate_limited(limiter: RateLimit) -> Callable[[Request], None]:
    def dependency(request: Request) -> None:
        if not get_settings().rate_limit_enabled:
            return
        key = client_key(request)
        if not limiter.hit(key):
            raise HTTPException(
                status_code=429,
                detail=limiter.message,
                headers={"Retry-After": str(limiter.retry_after(key))},
            )

    return dependency
