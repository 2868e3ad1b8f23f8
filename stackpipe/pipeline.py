"""
Pipeline orchestrator - the delivery state machine.

    PENDING -> SOURCE -> BUILD -> SELF_UPDATE -> DEPLOY(env_1) -> ... -> DEPLOY(env_n) -> DONE

Any non-terminal state may end in FAILED or CANCELLED.

A run goes through three phases:

1. Preconditions: every SecretRequirement must resolve. A missing secret
   ends the run FAILED before SOURCE begins; the provider is never called.
2. Synthesis: every environment is composed and rendered in memory. Any
   construction error ends the run FAILED, again before SOURCE.
3. Execution: stages run strictly in order, one at a time. The first
   failing stage ends the run FAILED; later environments never start and
   earlier ones are not unwound.

SELF_UPDATE compares the pipeline definition produced by BUILD with the one
currently deployed and redeploys the pipeline if they differ. Whenever the
built definition is not the one this orchestrator was constructed from, a
new Orchestrator, constructed from the built definition, carries on with its
own remaining stages. If everything matches, the stage is a no-op. A failed
redeploy is fatal: the pre-change remaining stages do not run.

Cancellation is checked between stages only. A cancelled run leaves the
completed stages in place; running again from SOURCE is safe because every
stage re-declares the same resources.
"""

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from stackpipe.composer import DEFAULT_ASSETS_ROOT, StageComposer
from stackpipe.data import DataStack
from stackpipe.errors import InvalidTransitionError, StackpipeError, StageExecutionError
from stackpipe.providers import BuildArtifact, DeploymentProvider, SourceArtifact
from stackpipe.render import StackTemplate, render_stage
from stackpipe.schemas import PipelineDefinition, PipelineStage, ServiceSpec, StageKind
from stackpipe.secrets import SecretStore, ensure_preconditions
from stackpipe.utils import sanitize_error_message

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    """States of a pipeline run."""
    PENDING = "pending"
    SOURCE = "source"
    BUILD = "build"
    SELF_UPDATE = "self_update"
    DEPLOY = "deploy"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (PipelineState.DONE, PipelineState.FAILED, PipelineState.CANCELLED)


_STATE_FOR_KIND = {
    StageKind.SOURCE: PipelineState.SOURCE,
    StageKind.BUILD: PipelineState.BUILD,
    StageKind.SELF_UPDATE: PipelineState.SELF_UPDATE,
    StageKind.DEPLOY: PipelineState.DEPLOY,
}

# Forward transitions; any non-terminal state may also go to FAILED or CANCELLED
_TRANSITIONS = {
    PipelineState.PENDING: {PipelineState.SOURCE},
    PipelineState.SOURCE: {PipelineState.BUILD},
    PipelineState.BUILD: {PipelineState.SELF_UPDATE},
    PipelineState.SELF_UPDATE: {PipelineState.DEPLOY, PipelineState.DONE},
    PipelineState.DEPLOY: {PipelineState.DEPLOY, PipelineState.DONE},
}


class StageStatus(str, Enum):
    """Outcome of a pipeline stage."""
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StageResult:
    """Result of one pipeline stage."""

    stage_name: str
    status: StageStatus
    environment: Optional[str] = None
    duration_seconds: float = 0.0
    error_message: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return self.status == StageStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage_name": self.stage_name,
            "status": self.status.value,
            "environment": self.environment,
            "duration_seconds": self.duration_seconds,
            "error_message": self.error_message,
            "metadata": self.metadata,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StageResult":
        return cls(
            stage_name=data["stage_name"],
            status=StageStatus(data["status"]),
            environment=data.get("environment"),
            duration_seconds=data.get("duration_seconds", 0.0),
            error_message=data.get("error_message"),
            metadata=data.get("metadata", {}),
            started_at=datetime.fromisoformat(data["started_at"]) if data.get("started_at") else None,
            ended_at=datetime.fromisoformat(data["ended_at"]) if data.get("ended_at") else None,
        )


@dataclass
class PipelineRun:
    """
    Summary of a pipeline run.

    outputs maps each deployed environment to its stack outputs, including
    the ApiGatewayUrl of its API surface.
    """
    pipeline_name: str
    fingerprint: str
    state: PipelineState = PipelineState.PENDING
    started_at: datetime = field(default_factory=_utcnow)
    ended_at: Optional[datetime] = None
    stages: list[StageResult] = field(default_factory=list)
    outputs: dict[str, dict[str, str]] = field(default_factory=dict)
    error_message: Optional[str] = None
    failed_stage: Optional[str] = None
    self_updated: bool = False
    error: Optional[BaseException] = field(default=None, repr=False, compare=False)

    @property
    def success(self) -> bool:
        return self.state == PipelineState.DONE

    @property
    def duration_seconds(self) -> float:
        if self.ended_at is None:
            return 0.0
        return (self.ended_at - self.started_at).total_seconds()

    def stage(self, stage_name: str) -> Optional[StageResult]:
        for result in self.stages:
            if result.stage_name == stage_name:
                return result
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pipeline_name": self.pipeline_name,
            "fingerprint": self.fingerprint,
            "state": self.state.value,
            "success": self.success,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_seconds": self.duration_seconds,
            "stages": [s.to_dict() for s in self.stages],
            "outputs": self.outputs,
            "error_message": self.error_message,
            "failed_stage": self.failed_stage,
            "self_updated": self.self_updated,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PipelineRun":
        return cls(
            pipeline_name=data["pipeline_name"],
            fingerprint=data["fingerprint"],
            state=PipelineState(data["state"]),
            started_at=datetime.fromisoformat(data["started_at"]),
            ended_at=datetime.fromisoformat(data["ended_at"]) if data.get("ended_at") else None,
            stages=[StageResult.from_dict(s) for s in data.get("stages", [])],
            outputs=data.get("outputs", {}),
            error_message=data.get("error_message"),
            failed_stage=data.get("failed_stage"),
            self_updated=data.get("self_updated", False),
        )


def synthesize(
    definition: PipelineDefinition,
    assets_root: str = DEFAULT_ASSETS_ROOT,
) -> dict[str, list[StackTemplate]]:
    """
    Compose and render every environment of a definition in memory.

    Returns:
        Rendered stacks per environment, in deployment order

    Raises:
        ConstructionError: On any descriptor invariant violation
    """
    composer = StageComposer(definition.service, assets_root)
    assembly = {}
    for environment in definition.environments:
        data_stack = DataStack.for_environment(environment, definition.service.tables)
        composed = composer.compose(environment, data_stack.refs())
        assembly[environment] = render_stage(composed, data_stack)
    return assembly


class Orchestrator:
    """
    Runs one pipeline definition through its stage table.

    The stage table is fixed at construction. Self-update never edits it;
    it hands the rest of the run to a new Orchestrator built from the new
    definition.
    """

    def __init__(
        self,
        definition: PipelineDefinition,
        provider: DeploymentProvider,
        secrets: SecretStore,
        assets_root: str = DEFAULT_ASSETS_ROOT,
        should_abort: Optional[Callable[[], bool]] = None,
        create_placeholders: bool = True,
        initial_state: PipelineState = PipelineState.PENDING,
    ):
        self.definition = definition
        self.provider = provider
        self.secrets = secrets
        self.assets_root = assets_root
        self.should_abort = should_abort
        self.create_placeholders = create_placeholders
        self.stages: tuple[PipelineStage, ...] = definition.stages()
        self.redeployed = False
        self._state = initial_state

    @property
    def state(self) -> PipelineState:
        return self._state

    def _transition(self, new_state: PipelineState) -> None:
        current = self._state
        if current.terminal:
            raise InvalidTransitionError(f"Run already finished in state {current.value}")
        allowed = _TRANSITIONS.get(current, set()) | {PipelineState.FAILED, PipelineState.CANCELLED}
        if new_state not in allowed:
            raise InvalidTransitionError(f"Cannot move from {current.value} to {new_state.value}")
        self._state = new_state
        logger.debug(
            f"{self.definition.name}: {current.value} -> {new_state.value}",
            extra={"event": "state_transition"},
        )

    # ------------------------------------------------------------------
    # Construction-time phases
    # ------------------------------------------------------------------

    def synthesize(self, definition: Optional[PipelineDefinition] = None) -> dict[str, list[StackTemplate]]:
        """Synthesize a definition (default: this orchestrator's) with this assets root."""
        return synthesize(definition or self.definition, self.assets_root)

    def _prepare(self) -> str:
        """Check preconditions and synthesize; return the source token."""
        resolved = ensure_preconditions(
            self.definition.secret_requirements(),
            self.secrets,
            create_placeholders=self.create_placeholders,
        )
        self.synthesize()
        return resolved[self.definition.source.token_secret_id]

    # ------------------------------------------------------------------
    # Stage operations
    # ------------------------------------------------------------------

    def self_update(self, build: BuildArtifact) -> Optional["Orchestrator"]:
        """
        Redeploy the pipeline if its definition changed.

        The built definition is authoritative. It is compared with the
        deployed one to decide whether to redeploy, and with this
        orchestrator's own definition to decide who runs the remaining
        stages.

        Returns:
            None when both the deployed definition and this orchestrator's
            definition already match (no-op), otherwise the Orchestrator for
            the built definition

        Raises:
            Exception: Whatever the provider raised while redeploying
        """
        desired = build.definition or self.definition
        deployed = self.provider.deployed_fingerprint(desired.name)
        redeploy = deployed != desired.fingerprint

        if not redeploy and desired.fingerprint == self.definition.fingerprint:
            logger.info(
                f"Pipeline {desired.name} is up to date ({desired.fingerprint[:12]})",
                extra={"event": "self_update_noop", "stage": "SelfUpdate"},
            )
            return None

        if redeploy:
            logger.info(
                f"Pipeline {desired.name} changed "
                f"({(deployed or 'none')[:12]} -> {desired.fingerprint[:12]}), redeploying",
                extra={"event": "self_update_started", "stage": "SelfUpdate"},
            )
            self.provider.update_pipeline(desired)
        else:
            logger.info(
                f"Pipeline {desired.name} is deployed at {desired.fingerprint[:12]}; "
                f"continuing with it instead of {self.definition.fingerprint[:12]}",
                extra={"event": "self_update_handoff", "stage": "SelfUpdate"},
            )

        successor = Orchestrator(
            desired,
            self.provider,
            self.secrets,
            assets_root=self.assets_root,
            should_abort=self.should_abort,
            create_placeholders=self.create_placeholders,
            initial_state=PipelineState.SELF_UPDATE,
        )
        successor.redeployed = redeploy
        return successor

    def _service_for(self, build: Optional[BuildArtifact]) -> ServiceSpec:
        if build is not None and build.definition is not None:
            return build.definition.service
        return self.definition.service

    def deploy(self, environment: str, build: Optional[BuildArtifact] = None) -> dict[str, str]:
        """Compose, render and apply one environment; return its stack outputs."""
        service = self._service_for(build)
        data_stack = DataStack.for_environment(environment, service.tables)
        composed = StageComposer(service, self.assets_root).compose(environment, data_stack.refs())

        outputs: dict[str, str] = {}
        for stack in render_stage(composed, data_stack):
            logger.info(
                f"Deploying {stack.stack_name}",
                extra={"event": "stack_deploying", "stage": environment},
            )
            outputs.update(self.provider.deploy_stack(stack))
        return outputs

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    def run(self) -> PipelineRun:
        """Execute a fresh run from SOURCE."""
        run = PipelineRun(pipeline_name=self.definition.name, fingerprint=self.definition.fingerprint)

        logger.info(
            f"Starting pipeline: {self.definition.name} ({self.definition.source.slug})",
            extra={
                "event": "pipeline_started",
                "metadata": {
                    "fingerprint": self.definition.fingerprint,
                    "environments": list(self.definition.environments),
                },
            },
        )

        try:
            token = self._prepare()
        except StackpipeError as e:
            logger.error(
                f"Pipeline {self.definition.name} aborted before {PipelineState.SOURCE.value}: {e}",
                extra={"event": "preconditions_failed"},
            )
            return self._finish(run, PipelineState.FAILED, error=e)

        return self._execute(run, token)

    def _resume(
        self,
        run: PipelineRun,
        source: SourceArtifact,
        build: BuildArtifact,
    ) -> PipelineRun:
        """Continue a run after SELF_UPDATE with this orchestrator's stage table."""
        run.pipeline_name = self.definition.name
        run.fingerprint = self.definition.fingerprint
        run.self_updated = self.redeployed

        try:
            token = self._prepare()
        except StackpipeError as e:
            logger.error(
                f"Updated pipeline {self.definition.name} failed validation: {e}",
                extra={"event": "preconditions_failed"},
            )
            self._skip_remaining(run, 0, lambda s: s.kind == StageKind.DEPLOY)
            return self._finish(run, PipelineState.FAILED, error=e)

        start = next(i for i, s in enumerate(self.stages) if s.kind == StageKind.SELF_UPDATE) + 1
        return self._execute(run, token, start=start, source=source, build=build)

    def _execute(
        self,
        run: PipelineRun,
        token: str,
        start: int = 0,
        source: Optional[SourceArtifact] = None,
        build: Optional[BuildArtifact] = None,
    ) -> PipelineRun:
        for index in range(start, len(self.stages)):
            stage = self.stages[index]

            if self.should_abort is not None and self.should_abort():
                logger.warning(
                    f"Run cancelled before {stage.name}",
                    extra={"event": "pipeline_cancelled", "stage": stage.name},
                )
                self._skip_remaining(run, index)
                return self._finish(run, PipelineState.CANCELLED)

            result = StageResult(
                stage_name=stage.name,
                status=StageStatus.COMPLETED,
                environment=stage.environment,
                started_at=_utcnow(),
            )
            start_time = time.time()
            logger.info(f"Executing stage: {stage.name}", extra={"event": "stage_starting", "stage": stage.name})

            try:
                self._transition(_STATE_FOR_KIND[stage.kind])

                if stage.kind == StageKind.SOURCE:
                    source = self.provider.fetch_source(self.definition.source, token)
                    result.metadata["commit"] = source.commit

                elif stage.kind == StageKind.BUILD:
                    build = self.provider.build(source)
                    if build.definition is not None:
                        self.synthesize(build.definition)
                    result.metadata["artifact_id"] = build.artifact_id
                    result.metadata["definition_found"] = build.definition is not None

                elif stage.kind == StageKind.SELF_UPDATE:
                    successor = self.self_update(build)
                    result.metadata["changed"] = successor is not None and successor.redeployed
                    if successor is not None:
                        result.metadata["fingerprint"] = successor.definition.fingerprint
                        self._complete(run, result, start_time)
                        run = successor._resume(run, source, build)
                        self._transition(run.state)
                        return run

                else:
                    outputs = self.deploy(stage.environment, build)
                    run.outputs[stage.environment] = outputs
                    result.metadata["outputs"] = outputs

            except Exception as e:
                if isinstance(e, StageExecutionError):
                    error = e
                else:
                    error = StageExecutionError(stage.kind.value, stage.environment, e)
                result.status = StageStatus.FAILED
                result.error_message = sanitize_error_message(e)
                self._complete(run, result, start_time)

                logger.error(
                    f"Stage {stage.name} failed: {result.error_message}",
                    extra={"event": "stage_failed", "stage": stage.name},
                    exc_info=True,
                )
                run.failed_stage = stage.name
                self._skip_remaining(run, index + 1)
                return self._finish(run, PipelineState.FAILED, error=error)

            self._complete(run, result, start_time)

        return self._finish(run, PipelineState.DONE)

    def _complete(self, run: PipelineRun, result: StageResult, start_time: float) -> None:
        result.ended_at = _utcnow()
        result.duration_seconds = time.time() - start_time
        run.stages.append(result)
        if result.success:
            logger.info(
                f"Stage {result.stage_name} completed",
                extra={
                    "event": "stage_completed",
                    "stage": result.stage_name,
                    "metadata": {"duration_seconds": result.duration_seconds},
                },
            )

    def _skip_remaining(self, run: PipelineRun, start: int, predicate=None) -> None:
        for stage in self.stages[start:]:
            if predicate is not None and not predicate(stage):
                continue
            run.stages.append(StageResult(
                stage_name=stage.name,
                status=StageStatus.SKIPPED,
                environment=stage.environment,
            ))

    def _finish(
        self,
        run: PipelineRun,
        state: PipelineState,
        error: Optional[BaseException] = None,
    ) -> PipelineRun:
        if self._state != state:
            self._transition(state)
        run.state = state
        run.ended_at = _utcnow()
        if error is not None:
            run.error = error
            run.error_message = sanitize_error_message(error)

        log = logger.info if state == PipelineState.DONE else logger.error
        log(
            f"Pipeline {run.pipeline_name}: state={state.value}, "
            f"stages={len([s for s in run.stages if s.status != StageStatus.SKIPPED])}, "
            f"environments={list(run.outputs)}",
            extra={"event": f"pipeline_{state.value}", "metadata": {"error": run.error_message}},
        )
        return run


def save_run(run: PipelineRun, state_file: Path) -> None:
    """Persist a run summary (for `stackpipe status`)."""
    state_file.parent.mkdir(parents=True, exist_ok=True)
    with open(state_file, "w") as f:
        json.dump(run.to_dict(), f, indent=2)


def load_run(state_file: Path) -> Optional[PipelineRun]:
    """Load the last saved run summary, or None if there is none."""
    if not state_file.exists():
        return None
    try:
        with open(state_file, "r") as f:
            return PipelineRun.from_dict(json.load(f))
    except (json.JSONDecodeError, KeyError, ValueError) as e:
        logger.warning(f"Could not load pipeline state: {e}")
        return None
