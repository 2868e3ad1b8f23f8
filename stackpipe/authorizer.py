"""Authorizer binding - attach one identity-check unit to an API surface."""

import logging

from stackpipe.errors import DuplicateAuthorizerError
from stackpipe.schemas import ApiSurface, AuthorizerBinding, DeployableUnit

logger = logging.getLogger(__name__)


def bind(surface: ApiSurface, authorizer_unit: DeployableUnit) -> AuthorizerBinding:
    """
    Bind an authorizer unit to a surface.

    The unit is declared to the surface first; only then is the binding
    declared, which makes its authorizer_id readable.

    Raises:
        DuplicateAuthorizerError: If the surface already has a binding
    """
    if surface.authorizer is not None:
        raise DuplicateAuthorizerError(surface.name)

    surface.declare_unit(authorizer_unit)
    binding = AuthorizerBinding(surface, authorizer_unit)
    binding.declare()
    surface.authorizer = binding

    logger.debug(
        f"Bound authorizer {authorizer_unit.function_name} to {surface.name}",
        extra={"event": "authorizer_bound", "stage": surface.stage_name},
    )
    return binding
