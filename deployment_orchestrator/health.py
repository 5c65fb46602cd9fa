import asyncio
import time
from collections import deque

import httpx

from .config import ProbeConfig
from .errors import ProbeError, UnknownInstance
from .logger import get_logger
from .models import Health, HealthSample


class HealthAggregator:
    """Sliding window of recent samples per instance, turned into a verdict"""

    def __init__(self, window_size=5, quorum=3, max_latency_ms=1000.0):
        if window_size <= 0:
            raise ValueError("window_size must be > 0")
        if not 0 < quorum <= window_size:
            raise ValueError("quorum must be between 1 and window_size")
        self.window_size = window_size
        self.quorum = quorum
        self.max_latency_ms = max_latency_ms
        self._windows = {}

    @classmethod
    def from_config(cls, config):
        return cls(config.window_size, config.quorum, config.max_latency_ms)

    def record(self, sample):
        window = self._windows.setdefault(sample.instance_id, deque(maxlen=self.window_size))
        window.append(sample)
        return self.verdict(sample.instance_id)

    def verdict(self, instance_id):
        window = self._windows.get(instance_id)
        # Not enough evidence yet
        if window is None or len(window) < self.window_size:
            return Health.UNKNOWN
        successes = sum(1 for s in window if s.success)
        mean_latency = sum(s.latency_ms for s in window) / len(window)
        if successes >= self.quorum and mean_latency < self.max_latency_ms:
            return Health.HEALTHY
        return Health.UNHEALTHY

    def counts(self, instance_id):
        """(failed, total) over the current window"""
        window = self._windows.get(instance_id, ())
        return sum(1 for s in window if not s.success), len(window)

    def forget(self, instance_id):
        self._windows.pop(instance_id, None)


class HealthChecker:
    """One liveness or readiness check against an instance.

    Subclasses override check(), and aclose() when they hold a connection.
    Returns (success, latency_ms). Raising is allowed; the probe records any
    exception as a failed sample.
    """

    async def check(self, instance, readiness=False):
        raise NotImplementedError

    async def aclose(self):
        pass


class HttpHealthChecker(HealthChecker):
    """GET <address><path>; any 2xx answer counts as success"""

    def __init__(self, client=None, liveness_path="/health", readiness_path="/ready", timeout_s=2.0):
        self.client = client if client else httpx.AsyncClient(timeout=timeout_s)
        self.liveness_path = liveness_path
        self.readiness_path = readiness_path

    async def check(self, instance, readiness=False):
        address = instance.metadata.get("address")
        if not address:
            raise ProbeError(f"instance {instance.instance_id} has no address to probe")
        url = address.rstrip("/") + (self.readiness_path if readiness else self.liveness_path)
        start = time.monotonic()
        try:
            response = await self.client.get(url)
        except httpx.HTTPError as e:
            raise ProbeError(f"{url}: {e}") from e
        latency_ms = (time.monotonic() - start) * 1000
        return response.is_success, latency_ms

    async def aclose(self):
        await self.client.aclose()


class SimulatedHealthChecker(HealthChecker):
    """Answers from a FailureInjector instead of the network"""

    def __init__(self, injector):
        self.injector = injector

    async def check(self, instance, readiness=False):
        delay = self.injector.delay_seconds()
        if delay > 0:
            await asyncio.sleep(delay)
        return self.injector.probe_outcome(instance)


class HealthProbe:
    """Runs one probe loop per registered instance and feeds the registry.

    A supervisor task keeps the set of loops in line with the registry. Loops
    that crash are restarted; loops whose instance was retired just end.
    """

    def __init__(self, registry, checker, config=None, clock=time.time):
        self.registry = registry
        self.checker = checker
        self.config = config if config else ProbeConfig()
        self.clock = clock
        self.logger = get_logger("probe")
        self.restarts = {}
        self._loops = {}
        self._supervisor = None
        self._running = False

    @property
    def running(self):
        return self._running

    def monitored(self):
        return set(self._loops)

    async def probe_once(self, instance):
        """Run one check; errors and timeouts become a failed sample"""
        readiness = instance.health == Health.UNKNOWN
        start = time.monotonic()
        try:
            success, latency_ms = await asyncio.wait_for(
                self.checker.check(instance, readiness=readiness), timeout=self.config.timeout_s)
        except asyncio.TimeoutError:
            self.logger.debug(f"Check of {instance.instance_id} timed out after {self.config.timeout_s}s")
            success, latency_ms = False, self.config.timeout_s * 1000
        except Exception as e:
            self.logger.debug(f"Check of {instance.instance_id} failed: {e}")
            success, latency_ms = False, (time.monotonic() - start) * 1000
        return HealthSample(instance.instance_id, bool(success), float(latency_ms), self.clock())

    async def start(self):
        if self._running:
            return
        self._running = True
        self.reconcile()
        self._supervisor = asyncio.create_task(self._supervise())
        self.logger.info("Health probe started")

    async def stop(self):
        self._running = False
        tasks = list(self._loops.values())
        if self._supervisor:
            tasks.append(self._supervisor)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._loops.clear()
        self._supervisor = None
        self.logger.info("Health probe stopped")

    def reconcile(self):
        """Start loops for new instances, cancel loops of retired ones"""
        registered = {i.instance_id for i in self.registry.all()}
        for instance_id in registered - set(self._loops):
            self._spawn(instance_id)
        for instance_id in set(self._loops) - registered:
            self._loops.pop(instance_id).cancel()
            self.logger.debug(f"Stopped probing retired instance {instance_id}")

    async def _supervise(self):
        interval = self.config.reconcile_interval_s or self.config.interval_s
        while self._running:
            await asyncio.sleep(interval)
            self.reconcile()

    def _spawn(self, instance_id, delay=0.0):
        task = asyncio.create_task(self._loop(instance_id, delay))
        task.add_done_callback(lambda t: self._on_loop_done(instance_id, t))
        self._loops[instance_id] = task

    async def _loop(self, instance_id, delay):
        if delay > 0:
            await asyncio.sleep(delay)
        while True:
            try:
                instance = self.registry.get(instance_id)
                sample = await self.probe_once(instance)
                self.registry.mark_health(instance_id, sample)
            except UnknownInstance:
                return
            await asyncio.sleep(self.config.interval_s)

    def _on_loop_done(self, instance_id, task):
        if self._loops.get(instance_id) is task:
            del self._loops[instance_id]
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            return
        self.restarts[instance_id] = self.restarts.get(instance_id, 0) + 1
        self.logger.error(f"Probe loop for {instance_id} crashed ({error!r}), "
                          f"restart #{self.restarts[instance_id]}")
        if self._running and instance_id in self.registry and instance_id not in self._loops:
            self._spawn(instance_id, delay=self.config.interval_s)
