"""Periodic CPU and memory sampling into `process.usage`.

Every tick the sampler asks its reader for the process CPU and RAM usage (in
percent) and appends one `{percent, time}` sample to each of
`process.usage.cpu` and `process.usage.ram`, keeping at most `history`
samples per window. Afterwards it broadcasts a `resourceUsage` notification
so dashboards refresh their charts.

A failing reader is not an error for the server: that tick appends nothing,
the existing samples stay as they are, and one warning is logged when
sampling starts failing (not on every failed tick). One notice is logged when
it recovers.
"""

import asyncio
import os
from typing import Callable, Optional, Tuple

import psutil

from . import logger
from .emitter import PatchEmitter
from .observed import ObservedDict
from .patches import MessageType
from .utils import now_ms

UsageReader = Callable[[], Tuple[float, float]]

DEFAULT_INTERVAL_SECONDS = 60.0
DEFAULT_HISTORY = 30


class PsutilReader:
    """Reads this process's CPU and memory usage through `psutil`."""

    def __init__(self, pid: Optional[int] = None):
        self._process = psutil.Process(pid if pid is not None else os.getpid())
        # The first cpu_percent() call only primes the counters.
        self._process.cpu_percent(interval=None)

    def __call__(self) -> Tuple[float, float]:
        with self._process.oneshot():
            cpu = self._process.cpu_percent(interval=None)
            ram = self._process.memory_percent()
        return cpu, ram


class ResourceSampler:
    """Samples resource usage into the tree at a fixed interval.

    Args:
        tree (ObservedDict): The state tree root (must contain `process.usage`).
        emitter (PatchEmitter): Used for the `resourceUsage` notification.
        interval (float): Seconds between samples.
        history (int): Samples kept per window.
        reader (Optional[UsageReader]): Returns `(cpu_percent, ram_percent)`;
            defaults to a `PsutilReader` for the current process.
    """

    def __init__(self, tree: ObservedDict, emitter: PatchEmitter, interval: float = DEFAULT_INTERVAL_SECONDS, history: int = DEFAULT_HISTORY, reader: Optional[UsageReader] = None):
        if history < 1:
            raise ValueError("history must be at least 1")
        self._tree = tree
        self._emitter = emitter
        self._interval = interval
        self._history = history
        self._reader = reader
        self._failing = False

    @property
    def failing(self) -> bool:
        """Whether the most recent sample failed."""
        return self._failing

    def _read(self) -> Tuple[float, float]:
        if self._reader is None:
            self._reader = PsutilReader()
        return self._reader()

    def sample_once(self) -> bool:
        """Takes one sample and notifies dashboards. Returns True on success."""
        time = now_ms()
        try:
            cpu, ram = self._read()
        except Exception as e:
            if not self._failing:
                logger.warning(f"Could not sample process resource usage ({type(e).__name__}: {e}). Memory and CPU usage charts will be disabled.")
                self._failing = True
            self._emitter.broadcast_event(MessageType.RESOURCE_USAGE)
            return False

        if self._failing:
            logger.info("Memory and CPU usage charts will be enabled again.")
            self._failing = False
        usage = self._tree["process"]["usage"]
        for window, percent in (("cpu", cpu), ("ram", ram)):
            samples = usage[window]
            while len(samples) > self._history - 1:
                samples.pop(0)
            samples.append({"percent": percent, "time": time})
        self._emitter.broadcast_event(MessageType.RESOURCE_USAGE)
        return True

    async def run(self) -> None:
        """Samples immediately, then every `interval` seconds until cancelled."""
        logger.debug(f"Resource sampler started (every {self._interval}s, {self._history} samples).")
        try:
            while True:
                self.sample_once()
                await asyncio.sleep(self._interval)
        except asyncio.CancelledError:
            logger.debug("Resource sampler stopped.")
            raise
