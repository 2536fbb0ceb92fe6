"""
Background cleanup of expired authorization codes.
Exchange enforces expiry on its own; this only keeps the table small.
"""
import asyncio
import logging
from datetime import datetime

from starlette.concurrency import run_in_threadpool

from portal_oauth.database import SessionLocal
from portal_oauth.oauth_service import utc_now
from portal_oauth.stores import SqlAuthorizationCodeStore

logger = logging.getLogger(__name__)


def sweep_once(now: datetime | None = None) -> int:
    """Delete every code past its expiry; return how many were removed."""
    db = SessionLocal()
    try:
        return SqlAuthorizationCodeStore(db).delete_expired(now or utc_now())
    finally:
        db.close()


async def sweep_forever(interval_seconds: int) -> None:
    """Run sweep_once every interval until cancelled. Failures are logged and retried next round."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = await run_in_threadpool(sweep_once)
        except Exception:
            logger.exception("Authorization code sweep failed")
            continue
        if removed:
            logger.info("Swept %d expired authorization code(s)", removed)
