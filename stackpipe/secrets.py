"""
Secret precondition gate and secret store backends.

The gate runs before the first pipeline stage. Every SecretRequirement must
resolve to a present, non-empty value; otherwise the run aborts before any
descriptor is built or any provider is called.

Missing secrets get a placeholder entry so an operator can fill them in.
The placeholder never satisfies a requirement, not even on a later run.
"""

import logging
import os
import re
from abc import ABC, abstractmethod
from typing import Iterable, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from stackpipe.errors import MissingSecretError, ProviderError
from stackpipe.schemas import SecretRequirement

logger = logging.getLogger(__name__)

PLACEHOLDER = "<<replace-me>>"


class SecretStore(ABC):
    """Narrow contract of the external secret collaborator."""

    @abstractmethod
    def get(self, identifier: str) -> Optional[str]:
        """Return the secret value, or None if the secret does not exist."""
        pass

    @abstractmethod
    def put_if_absent(self, identifier: str, placeholder: str) -> bool:
        """
        Create the secret with a placeholder value unless it already exists.

        Returns:
            True if a placeholder was created
        """
        pass


class InMemorySecretStore(SecretStore):
    """Dictionary-backed store for tests and dry runs."""

    def __init__(self, values: Optional[dict[str, str]] = None):
        self.values: dict[str, str] = dict(values or {})

    def get(self, identifier: str) -> Optional[str]:
        return self.values.get(identifier)

    def put_if_absent(self, identifier: str, placeholder: str) -> bool:
        if identifier in self.values:
            return False
        self.values[identifier] = placeholder
        return True


class EnvSecretStore(SecretStore):
    """
    Reads secrets from environment variables.

    "github-token" is looked up as GITHUB_TOKEN (optionally prefixed).
    Placeholders cannot be created in the environment; a warning is logged.
    """

    def __init__(self, prefix: str = "", environ: Optional[dict[str, str]] = None):
        self.prefix = prefix
        self._environ = environ if environ is not None else os.environ

    def variable_name(self, identifier: str) -> str:
        return self.prefix + re.sub(r"[^A-Za-z0-9]", "_", identifier).upper()

    def get(self, identifier: str) -> Optional[str]:
        return self._environ.get(self.variable_name(identifier))

    def put_if_absent(self, identifier: str, placeholder: str) -> bool:
        logger.warning(
            f"Secret {identifier} not set; export {self.variable_name(identifier)} to provide it",
            extra={"event": "secret_placeholder_skipped"},
        )
        return False


class SecretsManagerStore(SecretStore):
    """AWS Secrets Manager backed store (boto3)."""

    def __init__(self, region_name: Optional[str] = None, client=None):
        if client is None:
            client = boto3.client(
                "secretsmanager",
                region_name=region_name,
                config=Config(retries={"max_attempts": 3, "mode": "standard"}),
            )
        self._client = client

    def get(self, identifier: str) -> Optional[str]:
        try:
            response = self._client.get_secret_value(SecretId=identifier)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "ResourceNotFoundException":
                return None
            raise ProviderError(f"Could not read secret {identifier}: {exc}") from exc
        except BotoCoreError as exc:
            raise ProviderError(f"Could not read secret {identifier}: {exc}") from exc
        return response.get("SecretString")

    def put_if_absent(self, identifier: str, placeholder: str) -> bool:
        try:
            self._client.create_secret(
                Name=identifier,
                SecretString=placeholder,
                Description="Created by stackpipe; replace the placeholder value",
            )
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "ResourceExistsException":
                return False
            raise ProviderError(f"Could not create secret {identifier}: {exc}") from exc
        except BotoCoreError as exc:
            raise ProviderError(f"Could not create secret {identifier}: {exc}") from exc
        return True


def _is_satisfied(value: Optional[str]) -> bool:
    return bool(value and value.strip()) and value != PLACEHOLDER


def ensure_preconditions(
    requirements: Iterable[SecretRequirement],
    store: SecretStore,
    create_placeholders: bool = True,
) -> dict[str, str]:
    """
    Verify every required secret is present and non-empty.

    Args:
        requirements: Secrets required by the run
        store: Secret collaborator
        create_placeholders: Create placeholder entries for missing secrets

    Returns:
        Mapping of identifier to resolved value

    Raises:
        MissingSecretError: For the first missing requirement (in identifier order)
    """
    resolved: dict[str, str] = {}
    missing: list[SecretRequirement] = []

    for requirement in sorted(requirements, key=lambda r: r.identifier):
        value = store.get(requirement.identifier)
        if _is_satisfied(value):
            resolved[requirement.identifier] = value
            continue

        missing.append(requirement)
        logger.error(
            f"Secret {requirement.identifier} is missing or empty",
            extra={"event": "secret_missing", "stage": requirement.required_by.value},
        )
        if create_placeholders and value is None:
            if store.put_if_absent(requirement.identifier, PLACEHOLDER):
                logger.info(
                    f"Created placeholder for secret {requirement.identifier}",
                    extra={"event": "secret_placeholder_created"},
                )

    if missing:
        first = missing[0]
        raise MissingSecretError(first.identifier, first.required_by.value)

    logger.debug(
        f"All {len(resolved)} required secrets present",
        extra={"event": "secrets_verified"},
    )
    return resolved
