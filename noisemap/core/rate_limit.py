"""
rate_limit.py: global rate limiter instance.

Uses slowapi (a Starlette-compatible wrapper around the `limits` library).
Requests are keyed by client IP address.

Usage in routes:
    from fastapi import Request
    from noisemap.core.rate_limit import limiter

    @router.post("/reports")
    @limiter.limit(settings.submit_rate_limit)
    async def submit_report(request: Request, payload: ReportSubmission):
        ...

Report submission is the only limited route: it is the only one that
writes, and a flood of fake readings would skew every hotspot nearby.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from noisemap.core.config import settings

# Disabled limiters let tests hammer the submit route.
limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)
