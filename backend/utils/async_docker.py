"""
Async wrappers for Docker SDK to prevent event loop blocking.

The Docker SDK (docker-py) is synchronous. These wrappers use asyncio.to_thread()
to run blocking calls in the default thread pool.

Usage:
    from utils.async_docker import async_docker_call

    container = await async_docker_call(client.containers.get, name)
    await async_docker_call(container.restart, timeout=10)
"""

import asyncio
from typing import Callable, TypeVar

T = TypeVar('T')


async def async_docker_call(sync_fn: Callable[..., T], *args, **kwargs) -> T:
    """
    Execute a synchronous Docker SDK call in a thread pool.

    Args:
        sync_fn: Synchronous function to call (e.g., client.info, container.start)
        *args: Positional arguments to pass to sync_fn
        **kwargs: Keyword arguments to pass to sync_fn

    Returns:
        Result from the synchronous function
    """
    return await asyncio.to_thread(sync_fn, *args, **kwargs)


async def async_containers_list(client, **kwargs):
    """
    List containers asynchronously.

    Defaults ignore_removed=True to skip containers that disappear between
    the list call and inspect.
    """
    kwargs.setdefault('ignore_removed', True)
    return await async_docker_call(client.containers.list, **kwargs)
