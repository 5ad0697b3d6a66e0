"""
api/limiter.py -- The slowapi Limiter shared by the app and its routes.

api/main.py mounts it as middleware; the route modules decorate handlers with
@limiter.limit(). Counters live in process memory and are keyed by client
address, so limits apply per client per worker.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
