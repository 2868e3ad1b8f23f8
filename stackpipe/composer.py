"""
Stage composer - build the API surface of one environment.

compose() declares, for one environment:
- the authorizer unit (Authorizer-{env}) and its binding
- one integration unit per route spec ({name}-{env}), granted read/write
  access to its table through the cross-stack references
- the routes, authorized per spec

The result is validated (every CUSTOM route fully covered) and its units are
sealed before it is returned. Composing twice with the same inputs yields
equal graphs; grants are sets, so nothing is duplicated.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from stackpipe.authorizer import bind
from stackpipe.data import TableHandle
from stackpipe.errors import ConstructionError
from stackpipe.routes import add_routes, require_authorization, verify_authorization
from stackpipe.schemas import ApiSurface, DeployableUnit, RouteSpec, ServiceSpec

logger = logging.getLogger(__name__)

DEFAULT_ASSETS_ROOT = "assets/lambda"


@dataclass
class ComposedStage:
    """Descriptor graph of one environment, ready for translation."""
    environment: str
    surface: ApiSurface
    refs: dict[str, TableHandle] = field(default_factory=dict)

    @property
    def units(self) -> list[DeployableUnit]:
        return list(self.surface.units.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "environment": self.environment,
            "api_name": self.surface.name,
            "stage_name": self.surface.stage_name,
            "routes": [
                {
                    "route_key": h.route_key,
                    "integration": h.route.integration.function_name,
                    "authorization": h.overrides.get("AuthorizationType", "NONE"),
                }
                for h in self.surface.handles
            ],
            "units": [u.to_dict() for u in self.units],
        }


class StageComposer:
    """Composes the per-environment API surface of a service."""

    def __init__(self, service: ServiceSpec, assets_root: str = DEFAULT_ASSETS_ROOT):
        self.service = service
        self.assets_root = assets_root.rstrip("/")

    def _asset(self, *parts: str) -> str:
        return "/".join([self.assets_root, *(p.strip("/") for p in parts)])

    def _unit(self, name: str, environment: str, asset: str, extra_env=None) -> DeployableUnit:
        env_vars = {"STAGE": environment}
        env_vars.update(extra_env or {})
        return DeployableUnit(
            logical_name=name,
            stage_name=environment,
            code=self._asset(asset),
            runtime=self.service.runtime,
            handler=self.service.handler,
            environment=env_vars,
        )

    def _integration(self, spec: RouteSpec, environment: str, refs: Mapping[str, TableHandle]) -> DeployableUnit:
        extra_env = {}
        table = None
        if spec.table:
            table = refs.get(spec.table)
            if table is None:
                raise ConstructionError(
                    f"Route {spec.path} needs table '{spec.table}' but no such reference "
                    f"was provided for {environment} (have: {sorted(refs)})"
                )
            extra_env[table.env_var] = table.table_name

        unit = self._unit(spec.name, environment, spec.asset, extra_env)
        if table is not None:
            table.grant_read_write_data(unit)
        return unit

    def compose(self, environment: str, cross_stack_refs: Mapping[str, TableHandle]) -> ComposedStage:
        """
        Build the API surface for one environment.

        Args:
            environment: Deployment environment (becomes the API stage name)
            cross_stack_refs: Table handles from the environment's data stack

        Returns:
            ComposedStage with a validated, sealed surface

        Raises:
            ConstructionError: On any descriptor invariant violation
        """
        surface = ApiSurface(
            name=self.service.api_name,
            stage_name=environment,
            cors=self.service.cors,
            auto_deploy=True,
        )

        binding = None
        if any(spec.authorize for spec in self.service.routes):
            authorizer = self._unit("Authorizer", environment, self.service.authorizer_asset)
            binding = bind(surface, authorizer)

        for spec in self.service.routes:
            integration = self._integration(spec, environment, cross_stack_refs)
            handles = add_routes(surface, spec.path, spec.methods, integration)
            if spec.authorize:
                require_authorization(handles, binding)

        verify_authorization(surface)
        for unit in surface.units.values():
            unit.seal()

        logger.info(
            f"Composed {surface.name} for {environment}: "
            f"{len(surface.handles)} routes, {len(surface.units)} units",
            extra={"event": "stage_composed", "stage": environment},
        )
        return ComposedStage(environment=environment, surface=surface, refs=dict(cross_stack_refs))
