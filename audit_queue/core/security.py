import hmac
import logging

from fastapi import Depends, Header, HTTPException, Query, status

from audit_queue.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization or not authorization.lower().startswith("bearer "):
        return None
    token = authorization.split(" ", maxsplit=1)[1].strip()
    return token or None


def _matches(presented: str | None, expected: str) -> bool:
    return presented is not None and hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


async def require_queue_secret(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
    secret: str | None = Query(default=None),
) -> None:
    """Cron callers may send the shared secret as a bearer token or as ``?secret=``."""

    if not settings.queue_secret:
        logger.warning("AQ_QUEUE_SECRET is not set; queue trigger is unauthenticated")
        return
    if _matches(_bearer_token(authorization), settings.queue_secret) or _matches(secret, settings.queue_secret):
        return
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid queue secret")


async def require_admin_secret(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> None:
    if not settings.admin_secret:
        logger.warning("AQ_ADMIN_SECRET is not set; admin routes are unauthenticated")
        return
    if not _matches(_bearer_token(authorization), settings.admin_secret):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="admin auth requires bearer token")
