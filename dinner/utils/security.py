"""
Organizer token check and guest rate limiting
"""

import secrets
import time
from collections import defaultdict
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from dinner.core.config import settings

# (scope, client ip) -> request timestamps within the last minute
rate_limiter = defaultdict(list)

security = HTTPBearer()

def verify_admin_token(credentials: HTTPAuthorizationCredentials = Depends(security)) -> str:
    """Organizer endpoints accept only the configured static bearer token"""
    if not secrets.compare_digest(credentials.credentials, settings.ADMIN_TOKEN):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin token"
        )
    return credentials.credentials

def rate_limit_check(client_ip: str, limit: Optional[int] = None, scope: str = "default") -> bool:
    """Sliding one-minute window per client and scope"""
    if limit is None:
        limit = settings.RATE_LIMIT_PER_MINUTE

    now = time.time()
    key = (scope, client_ip)
    rate_limiter[key] = [t for t in rate_limiter[key] if t > now - 60]

    if len(rate_limiter[key]) >= limit:
        return False

    rate_limiter[key].append(now)
    return True

def get_client_ip(request: Request) -> str:
    """Client IP, honoring reverse proxy headers"""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    return request.client.host if request.client else "unknown"
