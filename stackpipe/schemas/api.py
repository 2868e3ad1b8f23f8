"""
API surface schemas - routes, route handles and the authorizer binding.

An ApiSurface is one HTTP entry point for one environment. It owns its
routes, the route handles generated from them, the units declared to it and
at most one AuthorizerBinding.

Routes are logical ("GET and HEAD on /widgets"). Each (route, method) pair
becomes a RouteHandle, the low-level representation that the translation
step renders as a single route resource. Authorization is applied to
handles as property overrides, never as a surface-wide policy.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Optional

from stackpipe.errors import AuthorizerNotDeclaredError, ConstructionError

from .units import DeployableUnit


class HttpMethod(str, Enum):
    """HTTP methods accepted on routes and in CORS configuration."""
    GET = "GET"
    HEAD = "HEAD"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
    OPTIONS = "OPTIONS"
    ANY = "ANY"

    @classmethod
    def from_string(cls, value: str) -> "HttpMethod":
        """Parse a method name (case-insensitive)."""
        try:
            return cls(value.upper())
        except (AttributeError, ValueError):
            raise ValueError(f"Unknown HTTP method: {value}")


class AuthorizationMode(str, Enum):
    NONE = "NONE"
    CUSTOM = "CUSTOM"


@dataclass(frozen=True)
class CorsConfig:
    """CORS preflight policy shared by every route of a surface."""
    allow_origins: tuple[str, ...] = ("*",)
    allow_headers: tuple[str, ...] = ("Authorization",)
    allow_methods: tuple[HttpMethod, ...] = (
        HttpMethod.GET,
        HttpMethod.HEAD,
        HttpMethod.OPTIONS,
        HttpMethod.POST,
    )
    max_age_seconds: int = 86400

    def to_dict(self) -> dict[str, Any]:
        return {
            "allow_origins": list(self.allow_origins),
            "allow_headers": list(self.allow_headers),
            "allow_methods": [m.value for m in self.allow_methods],
            "max_age_seconds": self.max_age_seconds,
        }


@dataclass(eq=False)
class Route:
    """
    A logical route: one path, one or more methods, one integration.

    authorization starts as NONE and is switched to CUSTOM by the route
    provisioner when a binding is applied to its handles.
    """
    path: str
    methods: tuple[HttpMethod, ...]
    integration: DeployableUnit
    authorization: AuthorizationMode = AuthorizationMode.NONE
    binding: Optional["AuthorizerBinding"] = None

    def __post_init__(self):
        if not self.path.startswith("/"):
            raise ConstructionError(f"Route path must start with '/': {self.path!r}")
        if not self.methods:
            raise ConstructionError(f"Route {self.path} declares no methods")
        if len(set(self.methods)) != len(self.methods):
            raise ConstructionError(f"Route {self.path} declares duplicate methods")

    def route_key(self, method: HttpMethod) -> str:
        return f"{method.value} {self.path}"


@dataclass(eq=False)
class RouteHandle:
    """
    Low-level representation of one (route, method) pair.

    overrides maps property paths to values. The translation step applies
    them with add_property_override on the route resource rendered for this
    handle. An AuthorizerBinding value stands for the id of the authorizer
    it declares.
    """
    route: Route
    method: HttpMethod
    logical_id: str
    overrides: dict[str, Any] = field(default_factory=dict)

    @property
    def route_key(self) -> str:
        return self.route.route_key(self.method)

    def add_property_override(self, path: str, value: Any) -> None:
        self.overrides[path] = value

    def has_authorizer_override(self, binding: Optional["AuthorizerBinding"] = None) -> bool:
        if self.overrides.get("AuthorizationType") != AuthorizationMode.CUSTOM.value:
            return False
        target = self.overrides.get("AuthorizerId")
        if not isinstance(target, AuthorizerBinding):
            return False
        return binding is None or target is binding


class AuthorizerBinding:
    """
    The single identity-check unit attached to an ApiSurface.

    authorizer_id (the logical id the authorizer resource is declared under)
    becomes readable only after declare(), which requires the unit to have
    been declared to the surface first.
    """

    logical_id = "Authorizer"
    identity_source = ("$request.header.Authorization",)

    def __init__(self, surface: "ApiSurface", unit: DeployableUnit):
        self.surface = surface
        self.unit = unit
        self._authorizer_id: Optional[str] = None

    @property
    def declared(self) -> bool:
        return self._authorizer_id is not None

    @property
    def authorizer_id(self) -> str:
        if self._authorizer_id is None:
            raise AuthorizerNotDeclaredError(
                f"Authorizer for surface '{self.surface.name}' has not been declared yet"
            )
        return self._authorizer_id

    def declare(self) -> None:
        if self.surface.units.get(self.unit.logical_name) is not self.unit:
            raise AuthorizerNotDeclaredError(
                f"Authorizer unit '{self.unit.function_name}' is not declared "
                f"to surface '{self.surface.name}'"
            )
        self._authorizer_id = self.logical_id

    def __repr__(self) -> str:
        return (
            f"AuthorizerBinding(surface={self.surface.name}, "
            f"unit={self.unit.function_name}, declared={self.declared})"
        )


@dataclass(eq=False)
class ApiSurface:
    """
    One HTTP entry point for one environment.

    The stage name comes from the environment. Recreating a surface gives it
    a new endpoint, so every URL published for the old one stops working.
    """
    name: str
    stage_name: str
    cors: CorsConfig = field(default_factory=CorsConfig)
    auto_deploy: bool = True
    routes: list[Route] = field(default_factory=list)
    handles: list[RouteHandle] = field(default_factory=list)
    units: dict[str, DeployableUnit] = field(default_factory=dict)
    authorizer: Optional[AuthorizerBinding] = None

    output_key: ClassVar[str] = "ApiGatewayUrl"

    def __post_init__(self):
        if not self.name:
            raise ConstructionError("API surface requires a name")
        if not self.stage_name:
            raise ConstructionError(f"API surface '{self.name}' requires a stage name")

    def declare_unit(self, unit: DeployableUnit) -> DeployableUnit:
        """Declare a unit to this surface. Declaring the same unit again is a no-op."""
        if unit.stage_name != self.stage_name:
            raise ConstructionError(
                f"Unit '{unit.function_name}' belongs to stage '{unit.stage_name}', "
                f"not '{self.stage_name}'"
            )
        existing = self.units.get(unit.logical_name)
        if existing is unit:
            return unit
        if existing is not None:
            raise ConstructionError(
                f"Surface '{self.name}' already declares a unit named '{unit.logical_name}'"
            )
        self.units[unit.logical_name] = unit
        return unit

    def handles_for(self, route: Route) -> list[RouteHandle]:
        return [h for h in self.handles if h.route is route]

    def find_handle(self, route_key: str) -> Optional[RouteHandle]:
        for handle in self.handles:
            if handle.route_key == route_key:
                return handle
        return None

    def route_keys(self) -> list[str]:
        return [h.route_key for h in self.handles]
