from __future__ import annotations

import asyncio
import json

from capaudit.persistence.db import SessionLocal
from capaudit.services.scan import finding_stats


async def stats() -> None:
    async with SessionLocal() as session:
        payload = await finding_stats(session)
    print(json.dumps(payload, sort_keys=True))


if __name__ == "__main__":
    asyncio.run(stats())
