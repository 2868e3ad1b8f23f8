"""
Error classes for stackpipe.

Errors fall into two groups that are handled at different boundaries:
- Construction-time errors (ConstructionError and subclasses, MissingSecretError,
  ConfigError): invariant violations found while building the descriptor graph.
  They abort the whole run before any cloud mutation.
- Execution errors (ProviderError, StageExecutionError): a provider reported
  failure for a stage. Forward progress halts at the failing stage; already
  deployed environments are left in place.

Error handling contract:
- Errors are exceptions, not values
- The orchestrator catches at the stage boundary and records the failure
- The CLI surfaces the message and exits non-zero
"""

from typing import Iterable, Optional


class StackpipeError(Exception):
    """Base exception for stackpipe."""
    pass


class ConfigError(StackpipeError):
    """Configuration validation error."""
    pass


class MissingSecretError(StackpipeError):
    """A required secret is absent or empty. Fatal to the run."""

    def __init__(self, identifier: str, required_by: Optional[str] = None):
        self.identifier = identifier
        self.required_by = required_by
        message = f"Required secret '{identifier}' is missing or empty"
        if required_by:
            message += f" (required by {required_by})"
        super().__init__(message)


class ConstructionError(StackpipeError):
    """
    Descriptor graph invariant violation.

    Raised while composing units, routes and surfaces. Always fatal and
    always raised before the provider is asked to change anything.
    """
    pass


class DuplicateAuthorizerError(ConstructionError):
    """A second authorizer was bound to an API surface."""

    def __init__(self, surface_name: str):
        self.surface_name = surface_name
        super().__init__(f"API surface '{surface_name}' already has an authorizer binding")


class AuthorizerNotDeclaredError(ConstructionError):
    """An authorizer binding was used before it was declared to its surface."""
    pass


class RouteAuthorizationIncompleteError(ConstructionError):
    """One or more route handles of a CUSTOM route lack the authorizer override."""

    def __init__(self, route_keys: Iterable[str]):
        self.route_keys = sorted(route_keys)
        super().__init__(
            "Routes requested CUSTOM authorization but have no override applied: "
            + ", ".join(self.route_keys)
        )


class ProviderError(StackpipeError):
    """The deployment provider reported a failure."""
    pass


class StageExecutionError(StackpipeError):
    """Wraps a provider-level failure for a named pipeline stage."""

    def __init__(
        self,
        stage: str,
        environment: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        self.stage = stage
        self.environment = environment
        self.cause = cause
        where = f"{stage}({environment})" if environment else stage
        message = f"Stage {where} failed"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class InvalidTransitionError(StackpipeError):
    """The orchestrator was asked to make a transition its state machine forbids."""
    pass
