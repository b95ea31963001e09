"""Worker: purge delivery attempts past the audit retention window."""
from __future__ import annotations

from datetime import datetime, timedelta

from backend_common.db.pool import get_pool

from webhook_service.repositories.webhooks import DeliveryAttemptRepository
from webhook_service.settings import settings


async def webhook_purge_attempts(now: datetime) -> str | None:
    """Delete attempts older than ``webhook_delivery_retention_days``."""
    pool = await get_pool()
    cutoff = now - timedelta(days=settings.webhook_delivery_retention_days)
    purged = await DeliveryAttemptRepository(pool).delete_older_than(cutoff)
    return f"purged={purged}" if purged else None
