"""Per-process worker runtime.

RQ calls job functions synchronously. Each worker process keeps one event loop
and the expensive collaborators (browser, bot client, provider client) alive
across jobs; ``close`` tears them down when the worker exits.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Optional, TypeVar

from config import require_telegram_bot_token, settings
from database import engine as db_engine
from services.delivery import DeliveryDispatcher
from services.providers import GenerationProvider, build_provider
from services.rendering import DocumentRenderer, RenderingEngine
from services.telegram_channel import TelegramChannel

logger = logging.getLogger(__name__)

T = TypeVar("T")


class WorkerRuntime:
    def __init__(
        self,
        *,
        provider: Optional[GenerationProvider] = None,
        channel: Optional[TelegramChannel] = None,
        rendering_engine: Optional[RenderingEngine] = None,
    ) -> None:
        self.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.loop)
        self.rendering_engine = rendering_engine or RenderingEngine(max_pages=settings.RENDER_MAX_CONCURRENT_PAGES)
        self.renderer = DocumentRenderer(
            self.rendering_engine,
            timeout_seconds=settings.RENDER_TIMEOUT_SECONDS,
            math_timeout_seconds=settings.RENDER_MATH_TIMEOUT_SECONDS,
        )
        self._provider = provider
        self._channel = channel
        self._dispatcher: Optional[DeliveryDispatcher] = None
        self.closed = False

    @property
    def provider(self) -> GenerationProvider:
        if self._provider is None:
            self._provider = build_provider()
        return self._provider

    @property
    def channel(self) -> TelegramChannel:
        if self._channel is None:
            self._channel = TelegramChannel(require_telegram_bot_token())
        return self._channel

    @property
    def dispatcher(self) -> DeliveryDispatcher:
        if self._dispatcher is None:
            self._dispatcher = DeliveryDispatcher(
                self.channel,
                self.renderer,
                lease_seconds=settings.DELIVERY_LEASE_SECONDS,
            )
        return self._dispatcher

    def run(self, coro: Awaitable[T]) -> T:
        """Run a coroutine to completion on the runtime loop.

        If the run is interrupted (e.g. by the job timeout signal) the task is
        cancelled before the exception propagates so it cannot resume on the
        next job.
        """
        task = self.loop.create_task(coro)
        try:
            return self.loop.run_until_complete(task)
        except BaseException:
            if not task.done():
                task.cancel()
                self.loop.run_until_complete(asyncio.gather(task, return_exceptions=True))
            raise

    async def _aclose(self) -> None:
        if self.rendering_engine.started:
            await self.rendering_engine.close()
        if self._channel is not None:
            await self._channel.close()
        if self._provider is not None:
            await self._provider.close()
        await db_engine.dispose()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self.loop.run_until_complete(self._aclose())
        finally:
            self.loop.close()
        logger.info("Worker runtime closed")


_runtime: Optional[WorkerRuntime] = None


def get_runtime() -> WorkerRuntime:
    global _runtime
    if _runtime is None or _runtime.closed:
        _runtime = WorkerRuntime()
    return _runtime


def set_runtime(runtime: Optional[WorkerRuntime]) -> None:
    global _runtime
    _runtime = runtime


def shutdown_runtime() -> None:
    global _runtime
    if _runtime is not None:
        _runtime.close()
        _runtime = None
