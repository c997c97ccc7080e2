"""ARQ job definitions."""

import uuid
from datetime import datetime, timedelta
from typing import Any

from arq.connections import RedisSettings

from app.core.config import get_settings
from app.core.logging import configure_logging, get_logger
from app.models.failed_job import FailedJob
from app.models.verification_token import VerificationToken
from app.services.accounts import deliver_verification_email, get_user

log = get_logger(__name__)

RETRY_BATCH_SIZE = 50
# Leave fresh tokens to the signup request's own delivery attempt
RETRY_GRACE = timedelta(minutes=2)


async def _run_with_dlq(
    job_name: str,
    job_id: str | None,
    args: list[Any],
    kwargs: dict[str, Any],
    coro,
) -> Any:
    """Run coroutine; on exception persist to FailedJob then re-raise."""
    try:
        return await coro
    except Exception as e:
        fid = job_id or str(uuid.uuid4())
        await FailedJob(
            job_name=job_name,
            job_id=fid,
            args=args,
            kwargs=kwargs,
            error_type=type(e).__name__,
            reason=str(e)[:2000],
        ).insert()
        log.exception("job_failed", job=job_name, job_id=fid, reason=str(e))
        raise


async def retry_verification_emails(now: datetime | None = None) -> dict[str, int]:
    """Re-send verification links that were never delivered and have not expired yet."""
    now = now or datetime.utcnow()
    pending = await VerificationToken.find(
        VerificationToken.email_delivered == False,  # noqa: E712
        VerificationToken.expires_at > now,
        VerificationToken.created_at <= now - RETRY_GRACE,
    ).limit(RETRY_BATCH_SIZE).to_list()
    sent = failed = 0
    for token in pending:
        user = await get_user(token.user_id)
        if user is None or user.verified:
            await token.delete()
            continue
        try:
            await deliver_verification_email(user.email, token.token)
            sent += 1
        except Exception as e:
            failed += 1
            log.warning("verification_email_retry_failed", user_id=token.user_id, error=str(e))
    if pending:
        log.info("verification_email_retry", due=len(pending), sent=sent, failed=failed)
    return {"due": len(pending), "sent": sent, "failed": failed}


async def resend_verification_emails(ctx: dict[str, Any]) -> None:
    job_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None
    await _run_with_dlq("resend_verification_emails", job_id, [], {}, retry_verification_emails())


async def startup(ctx: dict) -> None:
    from app.db.init import init_db
    configure_logging(debug=get_settings().debug)
    await init_db()


async def shutdown(ctx: dict) -> None:
    pass


def get_redis_settings() -> RedisSettings:
    from urllib.parse import urlparse
    s = get_settings()
    u = urlparse(s.redis_url)
    return RedisSettings(
        host=u.hostname or "localhost",
        port=u.port or 6379,
        password=u.password,
        database=int(u.path.lstrip("/")) if u.path.lstrip("/") else 0,
    )
