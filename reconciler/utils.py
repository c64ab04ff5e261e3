from __future__ import annotations

import asyncio
import functools
from concurrent.futures import Executor
from datetime import datetime, timezone
from typing import Any, Callable, Optional, TypeVar

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def int_annotation(annotations: dict[str, str], key: str) -> Optional[int]:
    raw = annotations.get(key)
    if raw is None:
        return None
    try:
        return int(str(raw).strip())
    except ValueError:
        return None


async def run_blocking(
    executor: Optional[Executor],
    func: Callable[..., T],
    *args: Any,
    **kwargs: Any,
) -> T:
    """Run ``func`` on the bounded worker pool so the event loop never blocks."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(executor, functools.partial(func, *args, **kwargs))
