"""
周期性任务的测试：首次延迟、固定周期、异常不中断、周期不重叠。
"""

import asyncio
import threading
import time
from types import SimpleNamespace

from src.preflight.bootstrap.periodical import (
    start_periodic_bootstrap_task,
    stop_periodic_bootstrap_task,
)


class CountingReconciler:
    def __init__(self, duration: float = 0.0, fail: bool = False):
        self.duration = duration
        self.fail = fail
        self.calls = 0
        self.running = 0
        self.max_running = 0
        self._lock = threading.Lock()

    def run_once(self) -> None:
        with self._lock:
            self.calls += 1
            self.running += 1
            self.max_running = max(self.max_running, self.running)
        try:
            if self.duration:
                time.sleep(self.duration)
            if self.fail:
                raise RuntimeError("CA keystore corrupt")
        finally:
            with self._lock:
                self.running -= 1


def _run_for(reconciler, seconds: float, initial_delay: float = 0.01, period: float = 0.01):
    app = SimpleNamespace(state=SimpleNamespace())

    async def _main():
        task = start_periodic_bootstrap_task(
            reconciler, initial_delay_seconds=initial_delay, period_seconds=period, app=app
        )
        await asyncio.sleep(seconds)
        await stop_periodic_bootstrap_task(app)
        return task

    task = asyncio.run(_main())
    return app, task


def test_reconciler_runs_periodically():
    reconciler = CountingReconciler()
    app, task = _run_for(reconciler, 0.2)

    assert reconciler.calls >= 3
    assert task.done()
    assert app.state.bootstrap_task is task
    assert app.state.bootstrap_stop_event.is_set()


def test_failing_tick_does_not_stop_the_loop():
    reconciler = CountingReconciler(fail=True)
    _, task = _run_for(reconciler, 0.2)

    assert reconciler.calls >= 2
    assert task.exception() is None


def test_ticks_never_overlap():
    reconciler = CountingReconciler(duration=0.05)
    _run_for(reconciler, 0.3, period=0.0)

    assert reconciler.calls >= 2
    assert reconciler.max_running == 1


def test_stop_before_initial_delay_runs_nothing():
    reconciler = CountingReconciler()
    _, task = _run_for(reconciler, 0.05, initial_delay=10)

    assert reconciler.calls == 0
    assert task.done()


def test_stop_without_app_is_noop():
    asyncio.run(stop_periodic_bootstrap_task(None))
