from __future__ import annotations

import asyncio
import json
import os

import httpx


BASE_URL = os.getenv("TRADEBOT_URL", "http://127.0.0.1:8000")


async def main() -> None:
    async with httpx.AsyncClient(base_url=BASE_URL) as client:
        r = await client.get("/api/health")
        r.raise_for_status()
        print("health ok:", r.json().get("symbols"))

        r = await client.get("/api/default-user")
        r.raise_for_status()
        user_id = r.json()["userId"]

        r = await client.get(f"/api/bot-settings/{user_id}")
        r.raise_for_status()
        print("bot settings:", r.json())


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except Exception as e:
        print(json.dumps({"smoke_error": str(e)}, ensure_ascii=False))
