"""Tests for the secret precondition gate and secret stores."""

from unittest.mock import MagicMock

import boto3
import pytest
from botocore.stub import Stubber

from stackpipe.errors import MissingSecretError, ProviderError
from stackpipe.schemas import SecretRequirement, StageKind
from stackpipe.secrets import (
    PLACEHOLDER,
    EnvSecretStore,
    InMemorySecretStore,
    SecretsManagerStore,
    ensure_preconditions,
)

REQUIREMENT = SecretRequirement("github-token", StageKind.SOURCE)


class TestEnsurePreconditions:

    def test_all_present_is_noop(self):
        store = MagicMock(wraps=InMemorySecretStore({"github-token": "t0k3n"}))
        resolved = ensure_preconditions([REQUIREMENT], store)
        assert resolved == {"github-token": "t0k3n"}
        store.put_if_absent.assert_not_called()

    def test_missing_raises_and_creates_placeholder(self):
        store = InMemorySecretStore()
        with pytest.raises(MissingSecretError) as exc_info:
            ensure_preconditions([REQUIREMENT], store)
        assert exc_info.value.identifier == "github-token"
        assert exc_info.value.required_by == "source"
        assert store.values == {"github-token": PLACEHOLDER}

    def test_placeholder_never_satisfies(self):
        store = InMemorySecretStore({"github-token": PLACEHOLDER})
        with pytest.raises(MissingSecretError):
            ensure_preconditions([REQUIREMENT], store)

    def test_empty_value_is_missing(self):
        store = InMemorySecretStore({"github-token": "   "})
        with pytest.raises(MissingSecretError):
            ensure_preconditions([REQUIREMENT], store)
        # An existing entry is never overwritten
        assert store.values["github-token"] == "   "

    def test_placeholders_can_be_disabled(self):
        store = InMemorySecretStore()
        with pytest.raises(MissingSecretError):
            ensure_preconditions([REQUIREMENT], store, create_placeholders=False)
        assert store.values == {}

    def test_reports_first_missing_in_identifier_order(self):
        store = InMemorySecretStore({"b-token": "x"})
        requirements = [SecretRequirement("c-token"), SecretRequirement("a-token"), SecretRequirement("b-token")]
        with pytest.raises(MissingSecretError) as exc_info:
            ensure_preconditions(requirements, store)
        assert exc_info.value.identifier == "a-token"
        # Every missing secret still gets a placeholder
        assert store.values["c-token"] == PLACEHOLDER

    def test_secret_value_not_logged(self, caplog):
        store = InMemorySecretStore({"github-token": "super-secret-value"})
        with caplog.at_level("DEBUG", logger="stackpipe"):
            ensure_preconditions([REQUIREMENT], store)
        assert "super-secret-value" not in caplog.text


class TestEnvSecretStore:

    def test_variable_name(self):
        store = EnvSecretStore(prefix="CI_")
        assert store.variable_name("github-token") == "CI_GITHUB_TOKEN"

    def test_get(self):
        store = EnvSecretStore(environ={"GITHUB_TOKEN": "abc"})
        assert store.get("github-token") == "abc"
        assert store.get("other") is None

    def test_put_if_absent_never_creates(self):
        environ = {}
        store = EnvSecretStore(environ=environ)
        assert store.put_if_absent("github-token", PLACEHOLDER) is False
        assert environ == {}


@pytest.fixture
def secretsmanager():
    client = boto3.client(
        "secretsmanager",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )
    with Stubber(client) as stubber:
        yield client, stubber


class TestSecretsManagerStore:

    def test_get_value(self, secretsmanager):
        client, stubber = secretsmanager
        stubber.add_response(
            "get_secret_value",
            {"Name": "github-token", "SecretString": "t0k3n"},
            {"SecretId": "github-token"},
        )
        assert SecretsManagerStore(client=client).get("github-token") == "t0k3n"

    def test_get_missing_returns_none(self, secretsmanager):
        client, stubber = secretsmanager
        stubber.add_client_error("get_secret_value", service_error_code="ResourceNotFoundException")
        assert SecretsManagerStore(client=client).get("github-token") is None

    def test_get_other_error_raises(self, secretsmanager):
        client, stubber = secretsmanager
        stubber.add_client_error("get_secret_value", service_error_code="AccessDeniedException")
        with pytest.raises(ProviderError, match="github-token"):
            SecretsManagerStore(client=client).get("github-token")

    def test_put_if_absent_creates(self, secretsmanager):
        client, stubber = secretsmanager
        stubber.add_response(
            "create_secret",
            {"Name": "github-token"},
            {
                "Name": "github-token",
                "SecretString": PLACEHOLDER,
                "Description": "Created by stackpipe; replace the placeholder value",
            },
        )
        assert SecretsManagerStore(client=client).put_if_absent("github-token", PLACEHOLDER) is True

    def test_put_if_absent_existing(self, secretsmanager):
        client, stubber = secretsmanager
        stubber.add_client_error("create_secret", service_error_code="ResourceExistsException")
        assert SecretsManagerStore(client=client).put_if_absent("github-token", PLACEHOLDER) is False

    def test_gate_with_secrets_manager(self, secretsmanager):
        client, stubber = secretsmanager
        stubber.add_client_error("get_secret_value", service_error_code="ResourceNotFoundException")
        stubber.add_response("create_secret", {"Name": "github-token"})
        with pytest.raises(MissingSecretError):
            ensure_preconditions([REQUIREMENT], SecretsManagerStore(client=client))
        stubber.assert_no_pending_responses()

    def test_default_client_is_secretsmanager(self, monkeypatch):
        calls = []

        def fake_client(service, **kwargs):
            calls.append((service, kwargs))
            return MagicMock()

        monkeypatch.setattr("stackpipe.secrets.boto3.client", fake_client)
        SecretsManagerStore(region_name="eu-west-1")

        service, kwargs = calls[0]
        assert service == "secretsmanager"
        assert kwargs["region_name"] == "eu-west-1"
        assert kwargs["config"].retries["max_attempts"] == 3
