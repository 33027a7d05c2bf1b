"""
FastAPI 应用入口点：托管周期性信任引导任务，并在退出时执行优雅关闭。
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger

from src.preflight.bootstrap import (
    create_reconciler,
    start_periodic_bootstrap_task,
    stop_periodic_bootstrap_task,
)
from src.preflight.config import config
from src.preflight.shutdown import GracefulShutdown, ServerStatus, ShutdownService


class HttpInbound:
    """HTTP 对外入口：停止后新的请求返回 503。"""

    def __init__(self, app: FastAPI):
        self._app = app
        app.state.accepting_requests = True

    def stop(self) -> None:
        logger.info("停止接收外部请求")
        self._app.state.accepting_requests = False


@asynccontextmanager
async def lifespan(app: FastAPI):
    status = ServerStatus()
    services = ShutdownService(timeout_seconds=config.shutdown_timeout_seconds)
    inbound = HttpInbound(app)
    app.state.server_status = status

    reconciler = create_reconciler(config)
    start_periodic_bootstrap_task(
        reconciler,
        initial_delay_seconds=config.initial_delay_seconds,
        period_seconds=config.period_seconds,
        app=app,
    )

    async def _stop_bootstrap() -> None:
        await stop_periodic_bootstrap_task(app)
        # 超时取消后工作线程中的周期可能仍在运行，close() 会等待它结束
        await asyncio.to_thread(reconciler.close)

    services.register("trust-bootstrap", _stop_bootstrap)
    try:
        yield
    finally:
        await GracefulShutdown(status, inbound, services).run(exit_process=False)


app = FastAPI(title="Cluster Trust Bootstrap Service", lifespan=lifespan)


@app.middleware("http")
async def reject_when_stopped(request: Request, call_next):
    if not getattr(request.app.state, "accepting_requests", True):
        return JSONResponse(status_code=503, content={"detail": "服务正在关闭"})
    return await call_next(request)


@app.get("/health")
async def health() -> dict:
    status = getattr(app.state, "server_status", None)
    return {"lifecycle": status.lifecycle.value if status else "STARTING"}


logger.info(f"config: {config.model_dump_json(indent=4)}")
