"""Asyncio helpers shared by the device drivers."""
import asyncio
import sys

__all__ = ["asyncio_timeout", "async_linear_backoff"]

if sys.version_info[:2] < (3, 11):
    from async_timeout import timeout as asyncio_timeout
else:
    from asyncio import timeout as asyncio_timeout


async def async_linear_backoff(attempt: int, step: float) -> None:
    """Sleep attempt * step seconds."""
    await asyncio.sleep(attempt * step)
