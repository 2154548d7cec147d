#!/usr/bin/env python
"""
Check the evidence retrieval backend

Verifies database connectivity and that the hybrid_medical_search stored
function is installed.

Usage: python scripts/check_backend.py
"""

import asyncio
import sys

from medevidence.db.postgres import (
    HYBRID_SEARCH_FUNCTION,
    check_database_health,
    check_hybrid_search_function,
    close_db,
    get_database_url,
)


async def main() -> int:
    url = get_database_url()
    print(f"Checking evidence backend on: {url.split('@')[-1]}")
    try:
        health = await check_database_health()
        if health["status"] != "healthy":
            print(f"Database: {health['status']} FAIL ({health.get('error', 'no details')})")
            return 1
        print("Database: connected PASS")

        if await check_hybrid_search_function():
            print(f"Function {HYBRID_SEARCH_FUNCTION}: installed PASS")
        else:
            print(f"Function {HYBRID_SEARCH_FUNCTION}: missing FAIL")
            return 1
        return 0
    finally:
        await close_db()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
