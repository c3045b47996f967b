"""Run blocking store and SDK helpers without stalling the event loop."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import TypeVar

T = TypeVar("T")


async def run_blocking(func: Callable[..., T], *args: object, **kwargs: object) -> T:
    return await asyncio.to_thread(func, *args, **kwargs)
