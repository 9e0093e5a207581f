"""Run awaitables from synchronous code."""

import asyncio
from concurrent.futures import ThreadPoolExecutor


async def _resolve(awaitable):
    return await awaitable


def run_sync(awaitable):
    """Wait for ``awaitable`` and return its result.

    ``asyncio.run`` refuses to start inside a running event loop (a web
    handler, a notebook), so in that case the awaitable is driven on a fresh
    loop in a worker thread while the caller blocks.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(_resolve(awaitable))

    with ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, _resolve(awaitable)).result()
