"""
Deployment providers - the execution substrate behind pipeline stages.

The orchestrator never talks to a cloud directly. Each stage transition is
delegated to a DeploymentProvider, which reports success by returning and
failure by raising. Retries, if any, are the provider's business.

Implementations:
- InMemoryProvider: records calls, can be told to fail; for tests and dry runs
- LocalProvider: works on a local checkout, keeps deployed state and the
  rendered templates under a work directory
"""

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from stackpipe.errors import ProviderError
from stackpipe.render import StackTemplate
from stackpipe.schemas import ApiSurface, PipelineDefinition, SourceRevision
from stackpipe.utils import get_directory_checksum

logger = logging.getLogger(__name__)

SOURCE_CONFIG_NAME = "stackpipe.yaml"


@dataclass(frozen=True)
class SourceArtifact:
    """A fetched source revision."""
    revision: SourceRevision
    commit: str
    path: Optional[Path] = None


@dataclass(frozen=True)
class BuildArtifact:
    """
    Output of the build stage.

    definition is the pipeline definition found in the built source, if any.
    The self-update stage compares it with what is currently deployed.
    """
    source: SourceArtifact
    artifact_id: str
    definition: Optional[PipelineDefinition] = None


class DeploymentProvider(ABC):
    """Narrow contract of the source/build/deploy substrate."""

    @abstractmethod
    def fetch_source(self, revision: SourceRevision, token: str) -> SourceArtifact:
        pass

    @abstractmethod
    def build(self, source: SourceArtifact) -> BuildArtifact:
        pass

    @abstractmethod
    def deployed_fingerprint(self, pipeline_name: str) -> Optional[str]:
        """Fingerprint of the pipeline definition currently deployed, or None."""
        pass

    @abstractmethod
    def update_pipeline(self, definition: PipelineDefinition) -> None:
        """Redeploy the pipeline itself from a new definition."""
        pass

    @abstractmethod
    def deploy_stack(self, stack: StackTemplate) -> dict[str, str]:
        """
        Create or update a stack.

        Returns:
            The stack outputs
        """
        pass


def simulated_outputs(stack: StackTemplate) -> dict[str, str]:
    """Outputs a provider without a real cloud reports for a stack."""
    outputs = {}
    digest = hashlib.sha256(stack.stack_name.encode("utf-8")).hexdigest()[:10]
    for key in stack.output_keys:
        if key == ApiSurface.output_key:
            outputs[key] = f"https://{digest}.execute-api.localhost/{stack.environment}/"
        else:
            outputs[key] = f"{stack.stack_name}:{key}"
    return outputs


class InMemoryProvider(DeploymentProvider):
    """
    Provider that records every call and deploys nothing.

    fail_on entries name operations to fail: "fetch_source", "build",
    "update_pipeline", "deploy_stack", or "deploy_stack:<environment>" /
    "deploy_stack:<stack name>" for one target.
    """

    def __init__(
        self,
        deployed: Optional[dict[str, str]] = None,
        fail_on: Iterable[str] = (),
        built_definition: Optional[PipelineDefinition] = None,
    ):
        self.calls: list[str] = []
        self.pipelines: dict[str, str] = dict(deployed or {})
        self.stacks: dict[str, StackTemplate] = {}
        self.fail_on = set(fail_on)
        self.built_definition = built_definition

    def _record(self, operation: str, *targets: str) -> None:
        self.calls.append(":".join((operation, *targets[:1])) if targets else operation)
        keys = {operation, *(f"{operation}:{t}" for t in targets)}
        failing = keys & self.fail_on
        if failing:
            raise ProviderError(f"Simulated failure: {sorted(failing)[0]}")

    def calls_for(self, operation: str) -> list[str]:
        return [c for c in self.calls if c.split(":", 1)[0] == operation]

    def fetch_source(self, revision: SourceRevision, token: str) -> SourceArtifact:
        self._record("fetch_source", revision.slug)
        commit = hashlib.sha1(revision.slug.encode("utf-8")).hexdigest()
        return SourceArtifact(revision=revision, commit=commit)

    def build(self, source: SourceArtifact) -> BuildArtifact:
        self._record("build", source.commit)
        return BuildArtifact(
            source=source,
            artifact_id=f"build-{source.commit[:12]}",
            definition=self.built_definition,
        )

    def deployed_fingerprint(self, pipeline_name: str) -> Optional[str]:
        return self.pipelines.get(pipeline_name)

    def update_pipeline(self, definition: PipelineDefinition) -> None:
        self._record("update_pipeline", definition.name)
        self.pipelines[definition.name] = definition.fingerprint

    def deploy_stack(self, stack: StackTemplate) -> dict[str, str]:
        self._record("deploy_stack", stack.environment, stack.stack_name)
        self.stacks[stack.stack_name] = stack
        return simulated_outputs(stack)

    @property
    def deployed_environments(self) -> list[str]:
        seen: list[str] = []
        for stack in self.stacks.values():
            if stack.environment not in seen:
                seen.append(stack.environment)
        return seen


class LocalProvider(DeploymentProvider):
    """
    Provider backed by a local checkout and a work directory.

    Layout:
        <workdir>/assembly/<stack>.template.yaml   rendered templates
        <workdir>/state/deployed.json              deployed pipelines and stacks
    """

    def __init__(self, workdir: Path, source_dir: Path):
        self.workdir = Path(workdir)
        self.source_dir = Path(source_dir)

    @property
    def assembly_dir(self) -> Path:
        return self.workdir / "assembly"

    @property
    def state_file(self) -> Path:
        return self.workdir / "state" / "deployed.json"

    def _load_state(self) -> dict[str, Any]:
        if not self.state_file.exists():
            return {"pipelines": {}, "stacks": {}}
        try:
            with open(self.state_file, "r") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise ProviderError(f"Corrupt provider state {self.state_file}: {e}") from e

    def _save_state(self, state: dict[str, Any]) -> None:
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.state_file.with_suffix(".tmp")
        with open(tmp, "w") as f:
            json.dump(state, f, indent=2, sort_keys=True)
        tmp.replace(self.state_file)

    def fetch_source(self, revision: SourceRevision, token: str) -> SourceArtifact:
        if not self.source_dir.is_dir():
            raise ProviderError(f"Source checkout not found: {self.source_dir}")
        commit = get_directory_checksum(self.source_dir)
        logger.info(
            f"Fetched {revision.slug} at {commit[:12]}",
            extra={"event": "source_fetched", "metadata": {"path": str(self.source_dir)}},
        )
        return SourceArtifact(revision=revision, commit=commit, path=self.source_dir)

    def build(self, source: SourceArtifact) -> BuildArtifact:
        from stackpipe.config import load_config

        root = source.path or self.source_dir
        assets = root / "assets"
        artifact_id = get_directory_checksum(assets) if assets.is_dir() else source.commit

        definition = None
        config_path = root / SOURCE_CONFIG_NAME
        if config_path.exists():
            config = load_config(config_path)
            config.validate()
            definition = config.to_definition()

        return BuildArtifact(source=source, artifact_id=artifact_id, definition=definition)

    def deployed_fingerprint(self, pipeline_name: str) -> Optional[str]:
        entry = self._load_state()["pipelines"].get(pipeline_name)
        return entry["fingerprint"] if entry else None

    def update_pipeline(self, definition: PipelineDefinition) -> None:
        state = self._load_state()
        state["pipelines"][definition.name] = {
            "fingerprint": definition.fingerprint,
            "definition": definition.pipeline_dict(),
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        self._save_state(state)

    def deploy_stack(self, stack: StackTemplate) -> dict[str, str]:
        self.assembly_dir.mkdir(parents=True, exist_ok=True)
        template_path = self.assembly_dir / f"{stack.stack_name}.template.yaml"
        template_path.write_text(stack.to_yaml())

        outputs = simulated_outputs(stack)
        state = self._load_state()
        state["stacks"][stack.stack_name] = {
            "environment": stack.environment,
            "kind": stack.kind,
            "template": str(template_path),
            "outputs": outputs,
            "deployed_at": datetime.now(timezone.utc).isoformat(),
        }
        self._save_state(state)
        return outputs
