"""
周期性运行信任引导协调器。

行为:
- 启动后等待 `initial_delay_seconds` 秒执行第一个周期，之后每隔 `period_seconds` 秒执行一次。
- 每个周期在工作线程中执行，等待其完成后才开始计时下一周期，因此周期之间不会重叠。
- 周期内抛出的异常（例如 CA 不可用）会被记录，下一周期照常执行。

它从 FastAPI 生命周期中启动，并注册到关闭服务中以便有序停止。
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Optional

from loguru import logger

from .services import TrustBootstrapReconciler


async def _periodic_bootstrap_loop(
    reconciler: TrustBootstrapReconciler,
    initial_delay_seconds: float,
    period_seconds: float,
    stop_event: asyncio.Event,
) -> None:
    logger.info(
        f"信任引导任务已启动：initial_delay={initial_delay_seconds}s, period={period_seconds}s"
    )
    try:
        delay = initial_delay_seconds
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
                break
            except asyncio.TimeoutError:
                # 定期唤醒
                pass

            try:
                await asyncio.to_thread(reconciler.run_once)
            except Exception:
                logger.exception("信任引导周期执行失败，将在下个周期重试")
            delay = period_seconds
    finally:
        logger.info("信任引导任务已停止")


def start_periodic_bootstrap_task(
    reconciler: TrustBootstrapReconciler,
    *,
    initial_delay_seconds: float = 2.0,
    period_seconds: float = 2.0,
    app: Optional[object] = None,
) -> asyncio.Task:
    """启动后台任务，周期性执行协调器。

    如果提供了 `app` (FastAPI 实例)，创建的任务和停止事件
    将附加到 `app.state` 以进行协调关闭。
    """
    stop_event: asyncio.Event = asyncio.Event()
    task = asyncio.create_task(
        _periodic_bootstrap_loop(reconciler, initial_delay_seconds, period_seconds, stop_event)
    )

    if app is not None:
        state = getattr(app, "state", None)
        if state is not None:
            setattr(state, "bootstrap_stop_event", stop_event)
            setattr(state, "bootstrap_task", task)

    return task


async def stop_periodic_bootstrap_task(app: Optional[object] = None, timeout: float = 5.0) -> None:
    """发出信号并等待后台任务（如果有）正常停止；正在执行的周期会先跑完。"""
    state = getattr(app, "state", None) if app is not None else None
    stop_event: asyncio.Event | None = getattr(state, "bootstrap_stop_event", None)
    task: asyncio.Task | None = getattr(state, "bootstrap_task", None)

    if stop_event is not None:
        stop_event.set()

    if task is not None:
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("信任引导任务未能在超时内停止，正在取消")
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
