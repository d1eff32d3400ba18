"""
Stage pipeline orchestrator.

Runs an ordered list of named stages. A stage that reports failure is
retried in place after a cooldown, with no failure budget and no skip:
skipping funding or teardown would strand wallets. After the last stage
the loop flag is re-read; enabled starts a fresh pass from stage 0,
disabled halts.

    IDLE -> RUNNING_STAGE(i) -> COOLING_DOWN(i) -> RUNNING_STAGE(i+1) ... -> LOOPING
                         \\-- failure --> COOLING_DOWN(i) -> RUNNING_STAGE(i)
    LOOPING -> RUNNING_STAGE(0) | HALTED
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence, Union

from makerfleet.delivery.timing import Clock

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    IDLE = "idle"
    RUNNING_STAGE = "running_stage"
    COOLING_DOWN = "cooling_down"
    LOOPING = "looping"
    HALTED = "halted"


@dataclass(frozen=True)
class Stage:
    """A named pipeline step. `ordinal` alone decides the order."""
    name: str
    ordinal: int
    unit: Any  # StageUnit: async run(context) -> bool


@dataclass(frozen=True)
class Transition:
    state: PipelineState
    stage_index: Optional[int] = None
    stage_name: Optional[str] = None


@dataclass
class PipelineRun:
    """Mutable progress of one orchestrator invocation."""
    current_stage_index: int = 0
    loop_enabled: bool = False
    restart_delay: float = 0.0
    passes: int = 0
    state: PipelineState = PipelineState.IDLE
    stage_attempts: int = 0
    history: List[Transition] = field(default_factory=list)


class StagePipelineOrchestrator:
    """
    Drives stages through the pipeline state machine.

    Exceptions raised by a stage unit count as a failure signal for that
    stage. Anything else that escapes (loop flag reader, callbacks) is left
    to the Supervisor.
    """

    def __init__(
        self,
        stages: Sequence[Stage],
        context: Any = None,
        clock: Optional[Clock] = None,
        inter_stage_delay: float = 10.0,
        failure_cooldown: float = 10.0,
        loop_delay: float = 20.0,
        loop_flag: Optional[Callable[[], bool]] = None,
        on_pass_complete: Optional[Callable[[PipelineRun], None]] = None,
        log: Optional[logging.Logger] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            stages: Pipeline stages, sorted here by ordinal
            context: Shared object handed to every stage unit
            clock: Clock for cooldowns
            inter_stage_delay: Wait after a successful stage
            failure_cooldown: Wait before retrying a failed stage
            loop_delay: Wait before starting the next pass
            loop_flag: Reads the current loop-enabled flag (called at loop boundaries only)
            on_pass_complete: Called after each completed pass
            log: Logger to report transitions to
        """
        if not stages:
            raise ValueError("Pipeline needs at least one stage")

        ordered = sorted(stages, key=lambda s: s.ordinal)
        ordinals = [s.ordinal for s in ordered]
        if len(set(ordinals)) != len(ordinals):
            raise ValueError(f"Duplicate stage ordinals: {ordinals}")

        self.stages: List[Stage] = ordered
        self.context = context
        self.clock = clock or Clock()
        self.inter_stage_delay = inter_stage_delay
        self.failure_cooldown = failure_cooldown
        self.loop_delay = loop_delay
        self.loop_flag = loop_flag or (lambda: False)
        self.on_pass_complete = on_pass_complete
        self.log = log or logger
        self.run_state = PipelineRun(restart_delay=loop_delay)

    def index_of(self, name: str) -> int:
        """Index of the first stage called `name`."""
        for index, stage in enumerate(self.stages):
            if stage.name == name:
                return index
        raise ValueError(f"Unknown stage: {name}")

    def _resolve(self, start: Union[int, str]) -> int:
        if isinstance(start, str):
            return self.index_of(start)
        if not 0 <= start < len(self.stages):
            raise ValueError(f"Stage index out of range: {start}")
        return start

    def _enter(self, state: PipelineState, index: Optional[int] = None) -> None:
        self.run_state.state = state
        if index is not None:
            self.run_state.current_stage_index = index
        name = self.stages[index].name if index is not None else None
        self.run_state.history.append(Transition(state, index, name))

    async def run(self, start: Union[int, str] = 0) -> PipelineRun:
        """
        Run from `start` until the loop flag is off after a full pass.

        Args:
            start: Stage index or stage name to resume from

        Returns:
            The final PipelineRun (state HALTED)
        """
        index = self._resolve(start)
        self.run_state = PipelineRun(current_stage_index=index, restart_delay=self.loop_delay)
        self._enter(PipelineState.IDLE)

        while True:
            stage = self.stages[index]
            self._enter(PipelineState.RUNNING_STAGE, index)

            ok = await self._run_stage(stage)
            self._enter(PipelineState.COOLING_DOWN, index)

            if not ok:
                self.log.warning(
                    f"Stage '{stage.name}' did not complete "
                    f"(attempt {self.run_state.stage_attempts}). "
                    f"Retrying in {self.failure_cooldown:g}s..."
                )
                await self.clock.sleep(self.failure_cooldown)
                continue

            self.log.info(f"Stage '{stage.name}' complete")
            self.run_state.stage_attempts = 0
            await self.clock.sleep(self.inter_stage_delay)

            if index + 1 < len(self.stages):
                index += 1
                continue

            self.run_state.passes += 1
            self._enter(PipelineState.LOOPING, index)
            self.log.info(f"Pass {self.run_state.passes} complete")

            if self.on_pass_complete:
                self.on_pass_complete(self.run_state)

            self.run_state.loop_enabled = bool(self.loop_flag())
            if not self.run_state.loop_enabled:
                self._enter(PipelineState.HALTED)
                self.log.info("Loop disabled, halting")
                return self.run_state

            self.log.info(f"Loop enabled, restarting in {self.loop_delay:g}s...")
            await self.clock.sleep(self.loop_delay)
            index = 0

    async def _run_stage(self, stage: Stage) -> bool:
        self.run_state.stage_attempts += 1
        self.log.info(f"Running stage '{stage.name}' (ordinal {stage.ordinal})")

        try:
            return bool(await stage.unit.run(self.context))
        except Exception as e:
            self.log.exception(f"Stage '{stage.name}' raised: {e}")
            return False
