"""
Health probe for a running gateway.
Exits non-zero when no port answers /health.
"""
import asyncio
import sys

import httpx

from factory_sync.core.config import settings


async def check_health() -> bool:
    ports = sorted({settings.api_port, 8000, 8001})

    for port in ports:
        url = f"http://localhost:{port}/health"
        print(f"Testing {url}...")
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.get(url, timeout=2.0)
        except httpx.HTTPError:
            print(f"   Port {port}: No connection")
            continue
        if resp.status_code == 200:
            body = resp.json()
            print(f"ALIVE on port {port} (n8n: {body.get('n8n_connection')})")
            return True
        print(f"   Port {port}: HTTP {resp.status_code}")
    return False


if __name__ == "__main__":
    sys.exit(0 if asyncio.run(check_health()) else 1)
