"""Inbound request rate limiting shared by the app and its routers."""

from slowapi import Limiter
from slowapi.util import get_remote_address

from ledgersync.config import get_settings

settings = get_settings()

limiter = Limiter(key_func=get_remote_address)

# Applied to endpoints that start work against the accounting API
trigger_limit = f"{settings.rate_limit_per_minute}/minute"
