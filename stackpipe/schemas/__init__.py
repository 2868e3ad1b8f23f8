"""
stackpipe.schemas - descriptor graph for pipelines and the services they deploy.

PipelineDefinition -> PipelineStage (derived stage table)
ServiceSpec -> ApiSurface -> Route -> RouteHandle
                          -> AuthorizerBinding
                          -> DeployableUnit -> Grant

Everything here is in-memory and provider-neutral. Invariants are checked
when objects are built; stackpipe.render turns a validated graph into
provider templates.
"""

from .units import (
    DEFAULT_HANDLER,
    DEFAULT_RUNTIME,
    DeployableUnit,
    Grant,
    logical_id_for,
)
from .api import (
    ApiSurface,
    AuthorizationMode,
    AuthorizerBinding,
    CorsConfig,
    HttpMethod,
    Route,
    RouteHandle,
)
from .definition import (
    PipelineDefinition,
    PipelineStage,
    RouteSpec,
    SecretRequirement,
    ServiceSpec,
    SourceRevision,
    StageKind,
)

__all__ = [
    # Units
    "DEFAULT_HANDLER",
    "DEFAULT_RUNTIME",
    "DeployableUnit",
    "Grant",
    "logical_id_for",
    # API surface
    "ApiSurface",
    "AuthorizationMode",
    "AuthorizerBinding",
    "CorsConfig",
    "HttpMethod",
    "Route",
    "RouteHandle",
    # Pipeline definition
    "PipelineDefinition",
    "PipelineStage",
    "RouteSpec",
    "SecretRequirement",
    "ServiceSpec",
    "SourceRevision",
    "StageKind",
]
