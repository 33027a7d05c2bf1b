"""
进程优雅关闭。

关闭顺序固定为：
1. 发出关闭信号（生命周期进入 SHUTTING_DOWN，监听者据此停止工作）；
2. 停止对外入口，拒绝新的外部请求；
3. 停止所有注册到关闭服务的后台服务；
4. 等待这些服务停止完成；
5. 退出进程（或在嵌入式场景下直接返回）。
"""

from __future__ import annotations

import asyncio
import sys
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Protocol

from loguru import logger


class Lifecycle(str, Enum):
    RUNNING = "RUNNING"
    SHUTTING_DOWN = "SHUTTING_DOWN"


class ServerStatus:
    """进程生命周期状态。"""

    def __init__(self) -> None:
        self.lifecycle = Lifecycle.RUNNING

    def shutdown(self) -> None:
        self.lifecycle = Lifecycle.SHUTTING_DOWN

    @property
    def is_shutting_down(self) -> bool:
        return self.lifecycle == Lifecycle.SHUTTING_DOWN


class InboundInterface(Protocol):
    def stop(self) -> None: ...


class ShutdownService:
    """注册需要在关闭时有序停止的后台服务。"""

    def __init__(self, timeout_seconds: float = 10.0):
        self.timeout_seconds = timeout_seconds
        self._services: Dict[str, Callable[[], Awaitable[None]]] = {}
        self._pending: List[asyncio.Task] = []

    def register(self, name: str, stop: Callable[[], Awaitable[None]]) -> None:
        self._services[name] = stop

    def stop_async(self) -> None:
        """并发启动所有已注册服务的停止流程，不等待其完成。"""
        for name, stop in self._services.items():
            logger.info(f"正在停止服务: {name}")
            self._pending.append(asyncio.create_task(stop(), name=name))

    async def await_terminated(self) -> None:
        """等待所有停止流程完成；超时未完成的会被取消。"""
        if not self._pending:
            return
        done, pending = await asyncio.wait(self._pending, timeout=self.timeout_seconds)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.error(f"服务 {task.get_name()} 停止时发生错误: {task.exception()}")
        for task in pending:
            logger.warning(f"服务 {task.get_name()} 未能在 {self.timeout_seconds}s 内停止，正在取消")
            task.cancel()
        if pending:
            await asyncio.wait(pending)
        self._pending = []


class GracefulShutdown:
    """按固定顺序执行优雅关闭。"""

    def __init__(
        self,
        status: ServerStatus,
        inbound: InboundInterface,
        services: ShutdownService,
        exit_process: Callable[[int], None] = sys.exit,
    ):
        self._status = status
        self._inbound = inbound
        self._services = services
        self._exit_process = exit_process

    def signal_shutdown(self) -> None:
        self._status.shutdown()

    def stop_inbound_interfaces(self) -> None:
        self._inbound.stop()

    def stop_registered_services(self) -> None:
        self._services.stop_async()

    async def await_services_stopped(self) -> None:
        await self._services.await_terminated()

    async def run(self, exit_process: bool = True) -> None:
        logger.info("开始优雅关闭")
        self.signal_shutdown()
        self.stop_inbound_interfaces()
        self.stop_registered_services()
        await self.await_services_stopped()
        logger.info("再见。")
        if exit_process:
            self._exit_process(0)
