from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import TypeVar

from .errors import UpstreamTimeout

T = TypeVar("T")


def run_with_timeout(fn: Callable[[], T], *, timeout_s: float, label: str) -> T:
    """Race ``fn`` against a timer on a throwaway worker thread.

    On timeout the worker is abandoned, not joined: Python threads cannot be
    cancelled, so the call may still finish in the background.
    """
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="race")
    future = pool.submit(fn)
    try:
        return future.result(timeout=timeout_s)
    except FutureTimeoutError as exc:
        raise UpstreamTimeout(f"{label} timed out after {timeout_s:.2f}s") from exc
    finally:
        pool.shutdown(wait=False, cancel_futures=True)
