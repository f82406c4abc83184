#!/usr/bin/env python3
import asyncio
from typing import Dict, Optional

import aiohttp
from constants import C_RED, C_RESET

def log_error(message: str) -> None:
    """Centralized error logging."""
    print(f"{C_RED}{message}{C_RESET}")

async def api_get(
    url: str,
    session: aiohttp.ClientSession,
    params: Optional[Dict] = None,
    headers: Optional[Dict] = None,
    retries: int = 3,
    timeout: float = 10,
) -> Optional[Dict]:
    """Makes an async GET request with retries and timeout."""
    for attempt in range(retries):
        try:
            async with session.get(url, params=params, headers=headers, timeout=aiohttp.ClientTimeout(total=timeout)) as response:
                response.raise_for_status()
                return await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            if attempt < retries - 1:
                await asyncio.sleep(2)
            else:
                log_error(f"API request failed after {retries} attempts: {e}")
                return None
    return None

async def api_post(
    url: str,
    session: aiohttp.ClientSession,
    json_data: Dict,
    headers: Optional[Dict] = None,
    timeout: float = 15,
) -> Optional[Dict]:
    """Makes a single async POST request; returns None on transport or HTTP errors."""
    try:
        async with session.post(url, json=json_data, headers=headers, timeout=aiohttp.ClientTimeout(total=timeout)) as response:
            response.raise_for_status()
            return await response.json()
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        log_error(f"API POST request failed: {e}")
        return None
