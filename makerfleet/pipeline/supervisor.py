"""
Crash-only supervisor.

Relaunches a fresh orchestrator after any uncaught error, resuming from
the stage that was running when it died. Startup-fatal errors are not
supervised.
"""

import logging
from typing import Callable, Optional, Tuple, Type, Union

from makerfleet.core.errors import ConfigError, WalletStoreError
from makerfleet.delivery.timing import Clock
from makerfleet.pipeline.orchestrator import PipelineRun, StagePipelineOrchestrator

logger = logging.getLogger(__name__)

FATAL_ERRORS: Tuple[Type[BaseException], ...] = (ConfigError, WalletStoreError)


class Supervisor:
    """Restart policy around a resumable orchestrator."""

    def __init__(
        self,
        factory: Callable[[], StagePipelineOrchestrator],
        restart_delay: float = 10.0,
        clock: Optional[Clock] = None,
        fatal: Tuple[Type[BaseException], ...] = FATAL_ERRORS,
        max_restarts: Optional[int] = None,
        on_restart: Optional[Callable[[BaseException, int], None]] = None,
        log: Optional[logging.Logger] = None,
    ):
        """
        Initialize supervisor.

        Args:
            factory: Builds a fresh orchestrator for every launch
            restart_delay: Seconds to wait before relaunching
            clock: Clock for the restart delay
            fatal: Error types re-raised instead of restarting
            max_restarts: Give up (re-raise) after this many restarts; None restarts forever
            on_restart: Called with (error, resume_index) before each relaunch
            log: Logger to report crashes to
        """
        self.factory = factory
        self.restart_delay = restart_delay
        self.clock = clock or Clock()
        self.fatal = fatal
        self.max_restarts = max_restarts
        self.on_restart = on_restart
        self.log = log or logger
        self.restarts = 0

    async def run(self, start: Union[int, str] = 0) -> PipelineRun:
        resume = start

        while True:
            orchestrator = self.factory()
            try:
                return await orchestrator.run(resume)
            except self.fatal:
                raise
            except Exception as e:
                self.restarts += 1
                resume = orchestrator.run_state.current_stage_index

                if self.max_restarts is not None and self.restarts > self.max_restarts:
                    self.log.critical(f"Giving up after {self.max_restarts} restarts: {e}")
                    raise

                self.log.error(
                    f"Pipeline crashed: {e}. Restarting from stage "
                    f"{orchestrator.stages[resume].name} in {self.restart_delay:g}s..."
                )
                if self.on_restart:
                    self.on_restart(e, resume)

                await self.clock.sleep(self.restart_delay)
