"""
Step model and run handler shared by the update and rollback pipelines

A run is an ordered list of named steps. StepRunner owns the per-step
bookkeeping (status transitions, timestamps, broadcast, persistence) and
PipelineRun owns the run as a whole: log row creation, success/failure
finalisation, and releasing the gate and closing the channel no matter how
the run ends.
"""
import enum
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import structlog
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import SQLAlchemyError

from pars.models import UpdateLogStatus
from pars.services.concurrency_gate import ConcurrencyGate
from pars.services.operation_log import OperationLogRepository
from pars.services.progress import EVENT_COMPLETE, EVENT_INIT, EVENT_STEP, ProgressChannel

logger = structlog.get_logger(__name__)

WARNING_PREFIX = "WARNING: "
SKIPPED_MESSAGE = "Skipped because a previous step failed"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class UpdateError(Exception):
    """Base exception for update and rollback runs"""

    pass


class StepFailedError(UpdateError):
    """A required step failed; the run stops here"""

    def __init__(self, message: str, index: int):
        super().__init__(message)
        self.index = index


class StepStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class StepInfo(BaseModel):
    """One step as shown to the client and stored in update_log.steps"""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    status: StepStatus = StepStatus.PENDING
    message: str = ""
    started_at: Optional[str] = Field(default=None, alias="startedAt")
    completed_at: Optional[str] = Field(default=None, alias="completedAt")

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class StepOutcome:
    """
    Result of a step body

    A warning outcome is a degraded success: the step still ends as success
    and the run continues, with the message marked as a warning.
    """

    __slots__ = ("message", "is_warning")

    def __init__(self, message: str, is_warning: bool = False):
        self.message = message
        self.is_warning = is_warning

    @classmethod
    def ok(cls, message: str) -> "StepOutcome":
        return cls(message)

    @classmethod
    def warning(cls, message: str) -> "StepOutcome":
        return cls(message, is_warning=True)

    @property
    def display_message(self) -> str:
        return f"{WARNING_PREFIX}{self.message}" if self.is_warning else self.message

    def __repr__(self) -> str:
        kind = "warning" if self.is_warning else "ok"
        return f"<StepOutcome({kind}, {self.message!r})>"


StepFn = Callable[[], Awaitable[StepOutcome]]
PersistFn = Callable[[List[Dict[str, Any]]], Awaitable[None]]


class StepRunner:
    """Runs step bodies in order and records every status transition"""

    def __init__(self, names: Sequence[str], channel: ProgressChannel, persist: PersistFn):
        self.steps: List[StepInfo] = [StepInfo(name=name) for name in names]
        self.channel = channel
        self.persist = persist

    def snapshot(self) -> List[Dict[str, Any]]:
        return [step.to_dict() for step in self.steps]

    def summary(self) -> List[Dict[str, str]]:
        return [{"name": step.name, "status": step.status.value} for step in self.steps]

    async def _transition(self, index: int) -> None:
        self.channel.publish(EVENT_STEP, {"index": index, "step": self.steps[index].to_dict()})
        await self.persist(self.snapshot())

    async def run_step(self, index: int, fn: StepFn) -> bool:
        """
        Run one step body

        Returns:
            True if the step ended as success, False if it failed
        """
        step = self.steps[index]
        step.status = StepStatus.RUNNING
        step.started_at = _now_iso()
        await self._transition(index)

        try:
            outcome = await fn()
        except Exception as e:
            step.status = StepStatus.FAILED
            step.message = str(e) or e.__class__.__name__
            step.completed_at = _now_iso()
            logger.warning("step_failed", step=step.name, error=step.message)
            await self._transition(index)
            return False

        step.status = StepStatus.SUCCESS
        step.message = outcome.display_message
        step.completed_at = _now_iso()
        if outcome.is_warning:
            logger.warning("step_degraded", step=step.name, message=outcome.message)
        else:
            logger.info("step_succeeded", step=step.name)
        await self._transition(index)
        return True

    async def require(self, index: int, fn: StepFn, failure_message: str) -> None:
        """Run a step that the rest of the run depends on"""
        if not await self.run_step(index, fn):
            raise StepFailedError(failure_message, index)

    def skip_pending(self, message: str = SKIPPED_MESSAGE) -> None:
        for step in self.steps:
            if step.status == StepStatus.PENDING:
                step.status = StepStatus.SKIPPED
                step.message = message


class PipelineRun:
    """
    Run handler for one update or rollback

    Subclasses provide the step names, the log row, the step sequence and
    what to record on success; execute() handles everything else. The last
    step name is the synthetic completion step.
    """

    step_names: Tuple[str, ...] = ()
    completed_message = "Completed successfully"

    def __init__(
        self,
        log_repository: OperationLogRepository,
        gate: ConcurrencyGate,
        channel: ProgressChannel,
        triggered_by: str,
    ):
        self.log_repository = log_repository
        self.gate = gate
        self.channel = channel
        self.triggered_by = triggered_by
        self.log_id: Optional[str] = None

    async def create_log(self, steps: List[Dict[str, Any]]) -> str:
        """Create the IN_PROGRESS row and return its id"""
        raise NotImplementedError

    async def run_steps(self, runner: StepRunner) -> None:
        """Run every step except the completion step"""
        raise NotImplementedError

    async def success_fields(self) -> Tuple[Dict[str, Any], str]:
        """Extra log fields to store on success, and the version to report"""
        raise NotImplementedError

    def failure_fields(self, message: str) -> Dict[str, Any]:
        return {"error": message}

    async def _persist_steps(self, steps: List[Dict[str, Any]]) -> None:
        if self.log_id is None:
            return
        try:
            await self.log_repository.update_steps(self.log_id, steps)
        except SQLAlchemyError as e:
            logger.warning("step_snapshot_write_failed", log_id=self.log_id, error=str(e))

    async def _complete(self) -> StepOutcome:
        return StepOutcome.ok(self.completed_message)

    async def execute(self) -> None:
        started = time.monotonic()
        runner = StepRunner(self.step_names, self.channel, self._persist_steps)
        log = logger.bind(run=type(self).__name__, triggered_by=self.triggered_by)

        try:
            self.log_id = await self.create_log(runner.snapshot())
            log = log.bind(log_id=self.log_id)
            log.info("run_started")
            self.channel.publish(EVENT_INIT, {"logId": self.log_id, "steps": runner.summary()})

            await self.run_steps(runner)
            await runner.run_step(len(self.step_names) - 1, self._complete)

            fields, version = await self.success_fields()
            duration = round(time.monotonic() - started)
            await self.log_repository.finalize(
                self.log_id,
                UpdateLogStatus.SUCCESS,
                completed_at=datetime.now(timezone.utc),
                duration=duration,
                steps=runner.snapshot(),
                **fields,
            )
            log.info("run_succeeded", duration=duration, version=version)
            self.channel.publish(
                EVENT_COMPLETE,
                {"status": UpdateLogStatus.SUCCESS.value, "duration": duration, "version": version},
            )
        except Exception as e:
            message = str(e) or e.__class__.__name__
            runner.skip_pending()
            duration = round(time.monotonic() - started)
            log.error("run_failed", error=message, duration=duration)

            if self.log_id is not None:
                try:
                    await self.log_repository.finalize(
                        self.log_id,
                        UpdateLogStatus.FAILED,
                        completed_at=datetime.now(timezone.utc),
                        duration=duration,
                        steps=runner.snapshot(),
                        **self.failure_fields(message),
                    )
                except Exception as write_error:
                    log.warning("run_failure_write_failed", error=str(write_error))

            self.channel.publish(
                EVENT_COMPLETE,
                {"status": UpdateLogStatus.FAILED.value, "duration": duration, "error": message},
            )
        finally:
            self.gate.release()
            self.channel.close()
