"""
Host resource sampling with psutil.

Feeds ``resource_utilization`` in the tracker's metrics snapshot while
a run is active.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Optional, Union

import psutil

from migration_engine.models.run import ResourceUtilization

logger = logging.getLogger(__name__)


class ResourceSampler:
    """
    Samples CPU, memory, network throughput and disk usage.

    Network throughput is the byte delta between two samples, so the
    first sample reports 0.

    Args:
        storage_path: Path whose filesystem usage is reported as storage_bytes
    """

    def __init__(self, storage_path: Union[str, Path] = "."):
        self.storage_path = str(storage_path)
        self._prev_network_bytes: Optional[int] = None
        self._prev_timestamp: Optional[float] = None

    def sample(self) -> ResourceUtilization:
        now = time.monotonic()
        cpu_percent = psutil.cpu_percent()
        memory = psutil.virtual_memory()

        network_rate = 0.0
        network_io = psutil.net_io_counters()
        if network_io is not None:
            total_bytes = network_io.bytes_sent + network_io.bytes_recv
            if self._prev_network_bytes is not None and self._prev_timestamp is not None:
                time_delta = now - self._prev_timestamp
                if time_delta > 0:
                    network_rate = max(0, total_bytes - self._prev_network_bytes) / time_delta
            self._prev_network_bytes = total_bytes
        self._prev_timestamp = now

        try:
            storage_bytes = psutil.disk_usage(self.storage_path).used
        except OSError as e:
            logger.debug(f"Cannot read disk usage for {self.storage_path}: {e}")
            storage_bytes = 0

        return ResourceUtilization(
            cpu_percent=cpu_percent,
            memory_percent=memory.percent,
            network_bytes_per_sec=network_rate,
            storage_bytes=storage_bytes,
        )


class ResourceMonitor:
    """Pushes samples into a tracker at a fixed interval until stopped."""

    def __init__(self, tracker, sampler: Optional[ResourceSampler] = None, interval: float = 15.0):
        self.tracker = tracker
        self.sampler = sampler or ResourceSampler()
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    def sample_once(self) -> ResourceUtilization:
        utilization = self.sampler.sample()
        self.tracker.update_metrics({"resource_utilization": utilization.model_dump()})
        return utilization

    async def start(self):
        if self._task is not None:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._monitor_loop())

    async def stop(self):
        if self._task is None:
            return
        self._stop_event.set()
        await self._task
        self._task = None

    async def _monitor_loop(self):
        while not self._stop_event.is_set():
            try:
                self.sample_once()
            except (psutil.Error, OSError) as e:
                logger.warning(f"Resource sampling failed: {e}")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
