import pytest

from stackpipe.pipeline import Orchestrator
from stackpipe.providers import InMemoryProvider
from stackpipe.schemas import (
    ApiSurface,
    DeployableUnit,
    PipelineDefinition,
    SourceRevision,
)
from stackpipe.secrets import InMemorySecretStore

TOKEN = "ghp_" + "a" * 36


@pytest.fixture
def source_revision():
    return SourceRevision(
        owner="acme",
        repository="widgets",
        branch="main",
        token_secret_id="github-token",
    )


@pytest.fixture
def definition(source_revision):
    return PipelineDefinition(
        name="CDKSnackCICD-main",
        source=source_revision,
        environments=("dev", "prod"),
    )


@pytest.fixture
def secret_store():
    return InMemorySecretStore({"github-token": TOKEN})


@pytest.fixture
def provider():
    return InMemoryProvider()


@pytest.fixture
def orchestrator(definition, provider, secret_store):
    return Orchestrator(definition, provider, secret_store)


@pytest.fixture
def surface():
    return ApiSurface(name="StartupSnack-CICD-Widgets", stage_name="dev")


@pytest.fixture
def make_unit():
    def _make(name="ListWidgets", stage="dev", **kwargs):
        kwargs.setdefault("code", f"assets/lambda/{name.lower()}")
        return DeployableUnit(logical_name=name, stage_name=stage, **kwargs)
    return _make


@pytest.fixture
def config_data():
    return {
        "config": {
            "gitHubOwner": "acme",
            "gitHubRepository": "widgets",
            "gitHubBranch": "main",
            "gitHubTokenSecretId": "github-token",
        },
        "environments": ["dev", "prod"],
        "logging": {"output": None, "console": False},
    }
