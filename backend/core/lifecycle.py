"""
Graceful shutdown coordination.

Several components need to release resources when the process stops
(flush the log buffer, stop monitoring timers, close the probe pool).
``ShutdownCoordinator`` runs their hooks once, in registration order, no
matter whether shutdown is triggered by the ASGI lifespan, SIGINT or SIGTERM.
"""

import asyncio
import logging
import signal
from typing import Awaitable, Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

ShutdownHook = Callable[[], Awaitable[None]]


class ShutdownCoordinator:
    """Runs registered async shutdown hooks exactly once"""

    def __init__(self):
        self._hooks: List[Tuple[str, ShutdownHook]] = []
        self._task: Optional[asyncio.Task] = None

    @property
    def has_run(self) -> bool:
        return self._task is not None

    def register(self, name: str, hook: ShutdownHook) -> None:
        self._hooks.append((name, hook))

    async def _run_hooks(self) -> None:
        for name, hook in self._hooks:
            try:
                await hook()
            except Exception as e:
                logger.error(f"Shutdown hook '{name}' failed: {e}")
        logger.info("Shutdown complete")

    async def shutdown(self) -> None:
        """Run every hook; later callers await the first run"""
        if self._task is None:
            self._task = asyncio.ensure_future(self._run_hooks())
        await asyncio.shield(self._task)

    def install_signal_handlers(
        self, loop: Optional[asyncio.AbstractEventLoop] = None
    ) -> None:
        """
        Trigger shutdown on SIGINT/SIGTERM.

        Only for processes that own their event loop; under uvicorn the
        server already translates signals into the lifespan shutdown.
        """
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError) as e:
                logger.warning(f"Cannot install handler for {sig.name}: {e}")

    def _on_signal(self, sig: signal.Signals) -> None:
        if self.has_run:
            return
        logger.info(f"Received {sig.name}, shutting down")
        self._task = asyncio.ensure_future(self._run_hooks())
