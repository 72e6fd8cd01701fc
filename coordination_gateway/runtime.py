# coordination_gateway/runtime.py
"""
Gateway Runtime

Wires the coordination components together and owns the event loop they
run on. The JSON-RPC server is a threaded WSGI app and the API server has
its own loop, so both hand their coroutines to ``AsyncBridge``, which runs
a single gateway loop in a daemon thread. All coordination state is only
ever touched from that loop.
"""

import asyncio
import concurrent.futures
import threading
import time
from typing import Any, Callable, Coroutine, Dict, Optional

from loguru import logger

from .context import ContextSynchronizer
from .conversation import ConversationManager, MessageRouter
from .errors import ErrorHandler
from .infrastructure import ConnectionPool
from .infrastructure.connection_pool import Connector
from .monitoring import CoordinationMonitor
from .resolution import ConflictResolutionEngine
from .settings import settings


class AsyncBridge:
    def __init__(self, name: str = "gateway-loop"):
        self.name = name
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._guard = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> asyncio.AbstractEventLoop:
        with self._guard:
            if not self.running:
                self._loop = asyncio.new_event_loop()
                self._thread = threading.Thread(target=self._serve, name=self.name, daemon=True)
                self._thread.start()
            return self._loop

    def _serve(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    def submit(self, coro: Coroutine) -> concurrent.futures.Future:
        loop = self.start()
        return asyncio.run_coroutine_threadsafe(coro, loop)

    def call(self, coro: Coroutine, timeout: Optional[float] = None) -> Any:
        """Run ``coro`` on the gateway loop from synchronous code."""
        future = self.submit(coro)
        try:
            return future.result(timeout or settings.TOOL_TIMEOUT)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise

    async def run(self, coro: Coroutine, timeout: Optional[float] = None) -> Any:
        """Run ``coro`` on the gateway loop from another event loop."""
        return await asyncio.wait_for(asyncio.wrap_future(self.submit(coro)), timeout or settings.TOOL_TIMEOUT)

    def stop(self) -> None:
        with self._guard:
            if not self.running:
                return
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._thread.join(timeout=5)
            self._loop.close()
            self._thread = None
            self._loop = None


class GatewayRuntime:
    """Explicitly owned coordination state; one instance per running gateway."""

    def __init__(self, clock: Callable[[], float] = time.time, connector: Optional[Connector] = None):
        self.clock = clock
        self.monitor = CoordinationMonitor(clock=clock)
        self.errors = ErrorHandler()
        self.pool = ConnectionPool(connector=connector, clock=clock)
        self.context = ContextSynchronizer(clock=clock)
        self.conversations = ConversationManager(self.pool, self.context, self.monitor, self.errors, clock=clock)
        self.router = MessageRouter(self.conversations, clock=clock)
        self.resolver = ConflictResolutionEngine(monitor=self.monitor)
        self.bridge = AsyncBridge()

    async def start(self) -> None:
        await self.conversations.start()

    async def stop(self) -> None:
        await self.conversations.stop()
        await self.pool.drain()

    def system_metrics(self) -> Dict[str, Any]:
        return {
            "conversations": self.conversations.system_metrics(),
            "resolution": self.resolver.system_metrics(),
            "context": self.context.system_status(),
            "monitor": self.monitor.system_metrics(),
            "health": self.monitor.health_report()["status"],
        }


_runtime: Optional[GatewayRuntime] = None
_runtime_guard = threading.Lock()


def get_runtime() -> GatewayRuntime:
    global _runtime
    with _runtime_guard:
        if _runtime is None:
            _runtime = GatewayRuntime()
            logger.debug("🧩 Gateway runtime created")
        return _runtime


def set_runtime(runtime: Optional[GatewayRuntime]) -> None:
    """Install (or clear, with None) the process runtime. Tests use this for isolation."""
    global _runtime
    with _runtime_guard:
        if _runtime is not None and _runtime is not runtime:
            _runtime.bridge.stop()
        _runtime = runtime
