# Overview: Request decorators for API routes (actor identity, transaction rate limiting).

from functools import wraps
from flask import request, jsonify, g

from .services.rate_limit import get_limiter

ACTOR_HEADER = "X-Actor-Id"


def with_actor(f):
    """
    Resolve the acting user id from the gateway-supplied header.

    Authentication happens upstream; this layer only carries the identity.
    Sets g.actor_id (None when the header is absent).
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw = request.headers.get(ACTOR_HEADER)
        if raw is None or not raw.strip():
            g.actor_id = None
        else:
            try:
                g.actor_id = int(raw)
            except ValueError:
                return jsonify({"error": f"{ACTOR_HEADER} must be an integer"}), 400
        return f(*args, **kwargs)

    return decorated_function


def rate_limited(scope: str):
    """
    Sliding-window limit per (scope, actor or remote address).

    Returns 429 with Retry-After once the window is full.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            who = getattr(g, "actor_id", None)
            if who is None:
                who = request.remote_addr or "anonymous"
            decision = get_limiter().check(f"{scope}:{who}")
            if not decision.allowed:
                response = jsonify({
                    "error": "Too many requests",
                    "details": {"retry_after_seconds": decision.retry_after_seconds},
                })
                response.headers["Retry-After"] = str(decision.retry_after_seconds)
                return response, 429
            return f(*args, **kwargs)

        return decorated_function
    return decorator
