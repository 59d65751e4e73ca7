"""
mpstream - Benchmark

Monitors the wall-clock and CPU consumption of a block of code and reports
it as measurements, either on demand or periodically.

Usage:
    bm = Benchmark(client, "import", periodic=1.0)
    with bm:
        for item in items:
            process(item)
            bm.step()
"""

import logging
import os
import threading
import time
from contextlib import contextmanager
from typing import Callable, NamedTuple, Optional

from .schema import MeasurementPoint

logger = logging.getLogger(__name__)

BENCHMARK_POINT = "benchmark"

BENCHMARK_FIELDS = [
    "label:string",
    "note:string",
    "is_absolute:bool",
    "is_final:bool",
    "step_cnt:int32",
    "rate_real:double",
    "rate_usys:double",
    "time_wall:double",
    "time_user:double",
    "time_sys:double",
]


class _Sample(NamedTuple):
    user: float
    system: float
    wall: float

    @classmethod
    def now(cls) -> "_Sample":
        t = os.times()
        return cls(t.user, t.system, time.time())

    def shifted(self, user: float, system: float, wall: float) -> "_Sample":
        return _Sample(self.user + user, self.system + system, self.wall + wall)


class Benchmark:
    """
    CPU and wall-time benchmark reporting through a measurement client.

    Each report injects an absolute row (since start) and an incremental row
    (since the previous report). Time spent paused is excluded.
    """

    def __init__(self, client, name: str, periodic: Optional[float] = None):
        """
        Args:
            client: MeasurementClient used for reporting
            name: Benchmark name, reported in the 'label' column
            periodic: Report every N seconds while running (None disables)
        """
        self.client = client
        self.name = name
        self.periodic = periodic
        self.point: MeasurementPoint = client.registry.get_or_define(
            BENCHMARK_POINT, BENCHMARK_FIELDS
        )

        self._lock = threading.RLock()
        self._running = False
        self._paused = False
        self._first_report = True
        self._step_cnt = 0
        self._step_cnt_last = 0

        self._t0: Optional[_Sample] = None
        self._t_last: Optional[_Sample] = None
        self._paused_at: Optional[_Sample] = None
        self._last_reported_pause: Optional[_Sample] = None

        self._stop_event = threading.Event()
        self._monitor: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def step_count(self) -> int:
        return self._step_cnt

    def start(self):
        """Start measuring. Raises RuntimeError if already started."""
        with self._lock:
            if self._running:
                raise RuntimeError(f"Benchmark '{self.name}' is already running")
            self._running = True
            self._stop_event.clear()
            self._t0 = self._t_last = _Sample.now()

        if self.periodic and self.periodic > 0:
            self._monitor = threading.Thread(
                target=self._monitor_loop,
                name=f"mpstream-benchmark-{self.name}",
                daemon=True,
            )
            self._monitor.start()

    def pause(self):
        with self._lock:
            if not self._running or self._paused:
                return
            self._paused = True
            self._paused_at = _Sample.now()

    def resume(self):
        """Resume after pause(), or start if never started."""
        with self._lock:
            if not self._running:
                self.start()
                return
            if not self._paused:
                return

            now = _Sample.now()
            paused = self._paused_at
            offset = (now.user - paused.user, now.system - paused.system, now.wall - paused.wall)
            self._t0 = self._t0.shifted(*offset)
            self._t_last = self._t_last.shifted(*offset)
            self._paused = False

    def stop(self):
        """Send the final report and stop measuring."""
        self._stop()

    def step(self, count: int = 1):
        """Record processed work units, used to compute rates."""
        with self._lock:
            self._step_cnt += count

    def report(self, label: str = "-"):
        """Push out an intermediate report. Does nothing once finished."""
        with self._lock:
            if not self._running:
                return
            self._report(label)

    def measure(self, fn: Callable, *args, **kwargs):
        """Run fn under this benchmark and return its result."""
        self.start()
        try:
            return fn(*args, **kwargs)
        finally:
            self._stop()

    @contextmanager
    def task(self):
        """Measure only the enclosed block; can be entered many times."""
        self.resume()
        try:
            yield self
        finally:
            self.pause()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self._stop()
        return False

    def _stop(self):
        with self._lock:
            if not self._running:
                return
            self._report("done", is_final=True)
            self._running = False
        self._stop_event.set()
        monitor, self._monitor = self._monitor, None
        if monitor is not None and monitor is not threading.current_thread():
            monitor.join()

    def _monitor_loop(self):
        while not self._stop_event.wait(self.periodic):
            try:
                self.report()
            except Exception:
                logger.exception(f"Periodic report of benchmark '{self.name}' failed")

    def _report(self, label: str = "-", is_final: bool = False):
        now = _Sample.now()
        with self._lock:
            if self._paused:
                # Report only once while paused
                if self._paused_at is self._last_reported_pause:
                    return
                self._last_reported_pause = self._paused_at
                now = self._paused_at

            self._inject(label, True, is_final, now, self._t0, self._step_cnt)
            if not (is_final and self._first_report):
                self._inject(
                    label, False, is_final, now, self._t_last, self._step_cnt - self._step_cnt_last
                )
            self._t_last = now
            self._step_cnt_last = self._step_cnt
            self._first_report = False

    def _inject(
        self,
        label: str,
        is_absolute: bool,
        is_final: bool,
        now: _Sample,
        since: _Sample,
        step_cnt: int,
    ):
        d_user = now.user - since.user
        d_sys = now.system - since.system
        d_wall = now.wall - since.wall
        if d_wall <= 0 or (d_user + d_sys) <= 0:
            return

        self.client.inject(
            self.point,
            self.name,
            label,
            is_absolute,
            is_final,
            step_cnt,
            step_cnt / d_wall,
            step_cnt / (d_user + d_sys),
            d_wall,
            d_user,
            d_sys,
        )
