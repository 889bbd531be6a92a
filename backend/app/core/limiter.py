"""Rate limiter singleton — import from here to avoid circular deps."""
from slowapi import Limiter
from slowapi.util import get_remote_address

from app.core.config import settings

# memory:// in development; point RATE_LIMIT_STORAGE_URI at Redis when
# running several gunicorn workers so the counters are shared.
limiter = Limiter(key_func=get_remote_address, storage_uri=settings.RATE_LIMIT_STORAGE_URI)
