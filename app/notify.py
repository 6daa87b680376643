import datetime
import logging
import platform
import socket
from typing import Optional

import httpx

from app.settings import settings

logger = logging.getLogger(__name__)


async def notify_activity(event: str, extra: Optional[dict] = None) -> None:
    """Post an activity embed to the events webhook, if one is configured."""
    webhook_url = settings.events_webhook_url
    if not webhook_url:
        return
    now = datetime.datetime.utcnow().isoformat()
    host = socket.gethostname()
    system_info = f"{platform.system()} {platform.release()} | Python {platform.python_version()}"
    fields = [
        {"name": "host", "value": host, "inline": True},
        {"name": "system", "value": system_info[:256] or "-", "inline": False},
    ]
    for key, value in (extra or {}).items():
        fields.append({"name": str(key), "value": str(value)[:256] or "-", "inline": True})

    payload = {
        "content": f"[{event}] {host} @ {now}",
        "embeds": [
            {
                "title": f"library-desk: {event}",
                "timestamp": now,
                "fields": fields,
            }
        ],
    }

    try:
        async with httpx.AsyncClient(timeout=5) as client:
            await client.post(webhook_url, json=payload)
    except Exception as e:
        logger.warning(f"Failed to send activity notification: {e}")
