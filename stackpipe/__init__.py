"""
stackpipe - self-updating delivery pipeline for an authorized HTTP API.

Composes a per-environment API surface (authorizer, routes, integrations,
tables), renders it to provider templates and drives it through
source → build → self-update → deploy(env...).
"""

__version__ = "0.1.0"

from stackpipe.errors import StackpipeError

__all__ = ["StackpipeError", "__version__"]
