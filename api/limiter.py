"""
api/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (mounted as middleware via app.state.limiter) and by
api/routes/v1/users.py (the per-IP limit on POST /users/login).

One shared instance means one in-memory counter store. A limiter created per
module would keep its own counters and the login limit would never trigger.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
