# scripts/init_db.py
"""Create the orders / order_photos schema in DATABASE_URL once.

Run from the project root: python -m scripts.init_db
"""
import asyncio
import sys

from dotenv import load_dotenv

from paypost.config import Settings
from paypost.db import open_pool, init_schema


async def main() -> int:
    load_dotenv()
    settings = Settings.from_env()
    if not settings.database_url:
        print("DATABASE_URL is not set", file=sys.stderr)
        return 1
    pool = await open_pool(settings.database_url, min_size=1, max_size=1)
    try:
        await init_schema(pool)
    finally:
        await pool.close()
    print("Database initialized: orders, order_photos")
    return 0


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
