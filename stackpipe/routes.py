"""
Route table provisioner.

Routes are declared first and patched afterwards. add_routes() returns one
RouteHandle per HTTP method; require_authorization() then applies the
authorizer as property overrides on each handle:

    AuthorizationType = CUSTOM
    AuthorizerId      = <the binding, rendered as a ref to its authorizer>

A bulk declaration of GET and HEAD on one path yields two handles. Both must
be patched, otherwise one method on the path stays unauthenticated.
verify_authorization() checks exactly that before a surface leaves
construction.
"""

import logging
from typing import Iterable, Sequence

from stackpipe.errors import (
    AuthorizerNotDeclaredError,
    ConstructionError,
    RouteAuthorizationIncompleteError,
)
from stackpipe.schemas import (
    ApiSurface,
    AuthorizationMode,
    AuthorizerBinding,
    DeployableUnit,
    HttpMethod,
    Route,
    RouteHandle,
    logical_id_for,
)

logger = logging.getLogger(__name__)


def _handle_id(surface: ApiSurface, route: Route, method: HttpMethod) -> str:
    base = logical_id_for(f"Route {method.value.title()} {route.path.title()}")
    taken = {h.logical_id for h in surface.handles}
    candidate = base
    suffix = 2
    while candidate in taken:
        candidate = f"{base}{suffix}"
        suffix += 1
    return candidate


def add_routes(
    surface: ApiSurface,
    path: str,
    methods: Sequence[HttpMethod | str],
    integration: DeployableUnit,
) -> list[RouteHandle]:
    """
    Declare a route and return one handle per method.

    The integration unit is declared to the surface if it is not already.

    Raises:
        ConstructionError: On an invalid route or a route key declared twice
    """
    parsed = tuple(m if isinstance(m, HttpMethod) else HttpMethod.from_string(m) for m in methods)
    route = Route(path=path, methods=parsed, integration=integration)

    existing_keys = set(surface.route_keys())
    for method in parsed:
        key = route.route_key(method)
        if key in existing_keys:
            raise ConstructionError(f"Route {key} is already declared on {surface.name}")

    surface.declare_unit(integration)
    surface.routes.append(route)

    handles = []
    for method in parsed:
        handle = RouteHandle(route=route, method=method, logical_id=_handle_id(surface, route, method))
        surface.handles.append(handle)
        handles.append(handle)

    logger.debug(
        f"Declared {', '.join(h.route_key for h in handles)} -> {integration.function_name}",
        extra={"event": "routes_declared", "stage": surface.stage_name},
    )
    return handles


def require_authorization(handles: Iterable[RouteHandle], binding: AuthorizerBinding) -> list[RouteHandle]:
    """
    Gate every given handle behind the authorizer.

    Applies the override to each handle, not just the first, and switches
    the owning logical routes to CUSTOM.

    Raises:
        ConstructionError: If a handle belongs to a different surface than the binding
        AuthorizerNotDeclaredError: If the binding is not declared yet
    """
    handles = list(handles)
    if not binding.declared:
        raise AuthorizerNotDeclaredError(
            f"Authorizer for surface '{binding.surface.name}' has not been declared yet"
        )

    for handle in handles:
        if handle not in binding.surface.handles:
            raise ConstructionError(
                f"Route {handle.route_key} is not part of surface '{binding.surface.name}'"
            )

    for handle in handles:
        handle.add_property_override("AuthorizationType", AuthorizationMode.CUSTOM.value)
        handle.add_property_override("AuthorizerId", binding)
        handle.route.authorization = AuthorizationMode.CUSTOM
        handle.route.binding = binding

    logger.debug(
        f"Authorized {len(handles)} route handles on {binding.surface.name}",
        extra={
            "event": "routes_authorized",
            "stage": binding.surface.stage_name,
            "metadata": {"routes": [h.route_key for h in handles]},
        },
    )
    return handles


def add_authorized_routes(
    surface: ApiSurface,
    path: str,
    methods: Sequence[HttpMethod | str],
    integration: DeployableUnit,
    binding: AuthorizerBinding,
) -> list[RouteHandle]:
    """Declare a route and gate all of its method handles behind the authorizer."""
    handles = add_routes(surface, path, methods, integration)
    return require_authorization(handles, binding)


def verify_authorization(surface: ApiSurface) -> None:
    """
    Check that every handle of every CUSTOM route carries the override.

    Raises:
        RouteAuthorizationIncompleteError: Listing each uncovered route key
        ConstructionError: If a CUSTOM route references another surface's binding
    """
    uncovered = []
    for route in surface.routes:
        if route.authorization != AuthorizationMode.CUSTOM:
            continue
        if route.binding is None or route.binding is not surface.authorizer:
            raise ConstructionError(
                f"Route {route.path} on '{surface.name}' references an authorizer "
                f"that is not bound to this surface"
            )
        route_handles = surface.handles_for(route)
        covered_methods = {h.method for h in route_handles}
        for method in route.methods:
            if method not in covered_methods:
                uncovered.append(route.route_key(method))
        for handle in route_handles:
            if not handle.has_authorizer_override(route.binding):
                uncovered.append(handle.route_key)

    if uncovered:
        raise RouteAuthorizationIncompleteError(uncovered)
