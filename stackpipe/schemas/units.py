"""
DeployableUnit schema - an opaque packaged handler bound to one environment.

A unit is identified by {logical_name, stage_name}. Its code is a reference
to an asset directory; nothing here looks inside it. Permissions are a set of
(capability, target) grants, so granting the same thing twice is a no-op.

Units are mutable only while the stage is being composed. Once sealed, any
attempt to grant further permissions is a construction error; a redeploy
builds a new unit instead.
"""

import re
from dataclasses import dataclass, field
from typing import Any

from stackpipe.errors import ConstructionError

DEFAULT_RUNTIME = "nodejs12.x"
DEFAULT_HANDLER = "index.handler"

_LOGICAL_ID_PATTERN = re.compile(r"[^A-Za-z0-9]")


def logical_id_for(name: str) -> str:
    """Template-safe logical id for a name (alphanumerics only)."""
    return _LOGICAL_ID_PATTERN.sub("", name)


@dataclass(frozen=True)
class Grant:
    """
    A single permission granted to a unit.

    Attributes:
        capability: Access level, e.g. "read_write_data"
        target: Name of the resource it applies to, e.g. a table name
    """
    capability: str
    target: str

    def to_dict(self) -> dict[str, Any]:
        return {"capability": self.capability, "target": self.target}


@dataclass(eq=False)
class DeployableUnit:
    """
    Packaged executable code plus its environment-scoped identity.

    Attributes:
        logical_name: Name unique within the environment (e.g. "ListWidgets")
        stage_name: Deployment environment (e.g. "dev")
        code: Asset path of the packaged code
        runtime: Runtime identifier
        handler: Entry point within the package
        environment: Environment variables passed to the handler
        permissions: Granted (capability, target) pairs
    """
    logical_name: str
    stage_name: str
    code: str
    runtime: str = DEFAULT_RUNTIME
    handler: str = DEFAULT_HANDLER
    environment: dict[str, str] = field(default_factory=dict)
    permissions: set[Grant] = field(default_factory=set)
    _sealed: bool = field(default=False, init=False, repr=False)

    def __post_init__(self):
        if not self.logical_name or not logical_id_for(self.logical_name):
            raise ConstructionError(f"Invalid unit name: {self.logical_name!r}")
        if not self.stage_name:
            raise ConstructionError(f"Unit '{self.logical_name}' has no stage name")
        for key, value in self.environment.items():
            if not isinstance(key, str) or not isinstance(value, str):
                raise ConstructionError(
                    f"Unit '{self.logical_name}': environment must map str to str, "
                    f"got {key!r}={value!r}"
                )

    @property
    def identity(self) -> tuple[str, str]:
        return (self.logical_name, self.stage_name)

    @property
    def function_name(self) -> str:
        return f"{self.logical_name}-{self.stage_name}"

    @property
    def logical_id(self) -> str:
        return logical_id_for(self.logical_name)

    @property
    def sealed(self) -> bool:
        return self._sealed

    def grant(self, capability: str, target: str) -> None:
        """Add a permission. Re-granting an existing pair changes nothing."""
        if self._sealed:
            raise ConstructionError(
                f"Unit '{self.function_name}' is sealed; cannot grant {capability}"
            )
        self.permissions.add(Grant(capability, target))

    def seal(self) -> None:
        self._sealed = True

    def sorted_permissions(self) -> list[Grant]:
        return sorted(self.permissions, key=lambda g: (g.capability, g.target))

    def to_dict(self) -> dict[str, Any]:
        return {
            "logical_name": self.logical_name,
            "stage_name": self.stage_name,
            "function_name": self.function_name,
            "code": self.code,
            "runtime": self.runtime,
            "handler": self.handler,
            "environment": dict(self.environment),
            "permissions": [g.to_dict() for g in self.sorted_permissions()],
        }
