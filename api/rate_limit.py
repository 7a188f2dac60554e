# api/rate_limit.py
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from fastapi import FastAPI

limiter = Limiter(key_func=get_remote_address)


def register_rate_limit(app: FastAPI):
    """
    Attach the slowapi limiter to the application.

    Stores the limiter on app.state (where slowapi's decorators look it up)
    and maps RateLimitExceeded to a 429 response.

    Args:
        app (FastAPI): The FastAPI application instance to configure

    Note:
        Must be called during application initialization, before requests
        are served. Limits are per client address and only throttle the HTTP
        surface; per-source request limits live in the collector.
    """
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
