"""Inference concurrency layer.

Architecture:
    FastAPI (async) -> slot semaphore (N) -> worker threads (N)
        -> preprocess_image + model.forward

Each job is a whole classification (tensor preparation included), so CPU-bound
image work never runs on the event loop. Callers that cannot get a slot
within ``inference_timeout`` fail with TimeoutError.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

import torch

if TYPE_CHECKING:
    from collections.abc import Callable

    from mariovision.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PoolStats:
    """Snapshot of the pool counters."""

    active: int
    waiting: int
    completed: int
    rejected: int


def _init_worker(torch_threads: int) -> None:
    # Workers already run in parallel; keep torch from oversubscribing cores.
    if torch_threads > 0:
        torch.set_num_threads(torch_threads)


class InferencePool:
    """Worker threads running classification jobs for async callers."""

    def __init__(self, settings: Settings) -> None:
        self._timeout = settings.inference_timeout
        self._slots = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="mariovision-classify",
            initializer=_init_worker,
            initargs=(settings.intra_op_threads,),
        )
        self._lock = threading.Lock()
        self._active = 0
        self._waiting = 0
        self._completed = 0
        self._rejected = 0

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run a synchronous job on a worker thread once a slot is free.

        Raises:
            TimeoutError: If no slot frees up within the configured timeout.
        """
        self._bump(waiting=1)
        try:
            async with asyncio.timeout(self._timeout):
                await self._slots.acquire()
        except TimeoutError:
            self._bump(waiting=-1, rejected=1)
            logger.warning("Rejected %s: no worker free after %.1fs", _job_name(func), self._timeout)
            raise
        self._bump(waiting=-1, active=1)

        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)
        finally:
            self._slots.release()
            self._bump(active=-1, completed=1)

    def stats(self) -> PoolStats:
        with self._lock:
            return PoolStats(
                active=self._active,
                waiting=self._waiting,
                completed=self._completed,
                rejected=self._rejected,
            )

    @property
    def active_count(self) -> int:
        """Number of jobs currently running."""
        return self.stats().active

    @property
    def queue_depth(self) -> int:
        """Number of callers waiting for a slot."""
        return self.stats().waiting

    def shutdown(self) -> None:
        """Wait for running jobs and stop the worker threads."""
        self._executor.shutdown(wait=True)

    def _bump(self, *, active: int = 0, waiting: int = 0, completed: int = 0, rejected: int = 0) -> None:
        with self._lock:
            self._active += active
            self._waiting += waiting
            self._completed += completed
            self._rejected += rejected


def _job_name(func: Callable[..., object]) -> str:
    return getattr(func, "__qualname__", repr(func))
