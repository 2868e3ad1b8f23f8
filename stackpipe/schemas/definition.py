"""
PipelineDefinition schema - the declarative definition of a delivery pipeline.

A PipelineDefinition is immutable. It names the source revision to track,
the ordered deployment environments and the service to deploy into each of
them. Its stage table is derived, never stored:

    SOURCE -> BUILD -> SELF_UPDATE -> DEPLOY(env_1) -> ... -> DEPLOY(env_n)

The fingerprint covers the fields that shape the pipeline itself (name,
source, environments). The service definition does not participate: a route
change is deployed by the existing pipeline and does not need a self-update.
"""

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .api import CorsConfig, HttpMethod
from .units import DEFAULT_HANDLER, DEFAULT_RUNTIME


class StageKind(str, Enum):
    """Kinds of pipeline stage, in execution order."""
    SOURCE = "source"
    BUILD = "build"
    SELF_UPDATE = "self_update"
    DEPLOY = "deploy"


_STAGE_LABELS = {
    StageKind.SOURCE: "Source",
    StageKind.BUILD: "Build",
    StageKind.SELF_UPDATE: "SelfUpdate",
    StageKind.DEPLOY: "Deploy",
}


@dataclass(frozen=True)
class PipelineStage:
    """
    One ordered step of the pipeline.

    Attributes:
        kind: Stage kind
        environment: Target environment, required for DEPLOY and only valid there
    """
    kind: StageKind
    environment: Optional[str] = None

    def __post_init__(self):
        if self.kind == StageKind.DEPLOY and not self.environment:
            raise ValueError("DEPLOY stages require an environment")
        if self.kind != StageKind.DEPLOY and self.environment:
            raise ValueError(f"{self.kind.value} stages do not take an environment")

    @property
    def name(self) -> str:
        label = _STAGE_LABELS[self.kind]
        if self.environment:
            return f"{label}-{self.environment}"
        return label


@dataclass(frozen=True)
class SecretRequirement:
    """A secret that must resolve to a non-empty value before the run starts."""
    identifier: str
    required_by: StageKind = StageKind.SOURCE


@dataclass(frozen=True)
class SourceRevision:
    """The source branch the pipeline tracks and the secret holding its access token."""
    owner: str
    repository: str
    branch: str
    token_secret_id: str

    @property
    def slug(self) -> str:
        return f"{self.owner}/{self.repository}@{self.branch}"

    def to_dict(self) -> dict[str, str]:
        return {
            "owner": self.owner,
            "repository": self.repository,
            "branch": self.branch,
            "token_secret_id": self.token_secret_id,
        }


@dataclass(frozen=True)
class RouteSpec:
    """
    Declared route of the service.

    Attributes:
        path: URL template
        methods: HTTP methods served on the path
        name: Logical name of the integration unit (e.g. "ListWidgets")
        asset: Asset directory of the integration code, relative to the assets root
        table: Name of the table the integration reads and writes, if any
        authorize: Whether the route is gated behind the authorizer
    """
    path: str
    methods: tuple[HttpMethod, ...]
    name: str
    asset: str
    table: Optional[str] = None
    authorize: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "methods": [m.value for m in self.methods],
            "name": self.name,
            "asset": self.asset,
            "table": self.table,
            "authorize": self.authorize,
        }


DEFAULT_ROUTES = (
    RouteSpec(
        path="/widgets",
        methods=(HttpMethod.GET,),
        name="ListWidgets",
        asset="widgets/list",
        table="widgets",
    ),
)


@dataclass(frozen=True)
class ServiceSpec:
    """The HTTP service deployed into every environment."""
    api_name: str = "StartupSnack-CICD-Widgets"
    cors: CorsConfig = field(default_factory=CorsConfig)
    authorizer_asset: str = "authorizer"
    runtime: str = DEFAULT_RUNTIME
    handler: str = DEFAULT_HANDLER
    routes: tuple[RouteSpec, ...] = DEFAULT_ROUTES
    tables: tuple[str, ...] = ("widgets",)

    def to_dict(self) -> dict[str, Any]:
        return {
            "api_name": self.api_name,
            "cors": self.cors.to_dict(),
            "authorizer_asset": self.authorizer_asset,
            "runtime": self.runtime,
            "handler": self.handler,
            "routes": [r.to_dict() for r in self.routes],
            "tables": list(self.tables),
        }


@dataclass(frozen=True)
class PipelineDefinition:
    """
    Declarative pipeline definition.

    Attributes:
        name: Pipeline name (unique per tracked branch)
        source: Source revision to track
        environments: Deployment environments, in promotion order
        service: Service deployed into each environment
    """
    name: str
    source: SourceRevision
    environments: tuple[str, ...] = ("dev", "prod")
    service: ServiceSpec = field(default_factory=ServiceSpec)

    def __post_init__(self):
        if not self.name:
            raise ValueError("Pipeline name is required")
        if not self.environments:
            raise ValueError("At least one environment is required")
        if len(set(self.environments)) != len(self.environments):
            duplicates = sorted({e for e in self.environments if self.environments.count(e) > 1})
            raise ValueError(f"Duplicate environments: {duplicates}")

    def stages(self) -> tuple[PipelineStage, ...]:
        """The stage table, in execution order."""
        return (
            PipelineStage(StageKind.SOURCE),
            PipelineStage(StageKind.BUILD),
            PipelineStage(StageKind.SELF_UPDATE),
            *(PipelineStage(StageKind.DEPLOY, env) for env in self.environments),
        )

    def secret_requirements(self) -> frozenset[SecretRequirement]:
        return frozenset({SecretRequirement(self.source.token_secret_id, StageKind.SOURCE)})

    def pipeline_dict(self) -> dict[str, Any]:
        """Fields that shape the pipeline itself."""
        return {
            "name": self.name,
            "source": self.source.to_dict(),
            "environments": list(self.environments),
            "stages": [s.name for s in self.stages()],
        }

    @property
    def fingerprint(self) -> str:
        canonical = json.dumps(self.pipeline_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.pipeline_dict(),
            "fingerprint": self.fingerprint,
            "service": self.service.to_dict(),
        }
