"""Tests for pipeline configuration loading and validation."""

import json
from pathlib import Path

import pytest
import yaml

from stackpipe.config import PipelineConfig, load_config
from stackpipe.errors import ConfigError
from stackpipe.schemas import HttpMethod


def _write_yaml(path: Path, data) -> Path:
    path.write_text(yaml.safe_dump(data))
    return path


class TestPipelineConfig:

    def test_defaults(self, config_data):
        config = PipelineConfig(config_data)
        config.validate()
        definition = config.to_definition()

        assert definition.name == "CDKSnackCICD-main"
        assert definition.source.slug == "acme/widgets@main"
        assert definition.source.token_secret_id == "github-token"
        assert definition.environments == ("dev", "prod")
        assert definition.service.api_name == "StartupSnack-CICD-Widgets"
        assert definition.service.routes[0].name == "ListWidgets"
        assert config.assets_root == "assets/lambda"

    def test_explicit_name(self, config_data):
        config_data["pipeline"] = {"name": "widgets-pipeline"}
        assert PipelineConfig(config_data).to_definition().name == "widgets-pipeline"

    @pytest.mark.parametrize("field_name", [
        "gitHubBranch", "gitHubOwner", "gitHubRepository", "gitHubTokenSecretId",
    ])
    def test_source_fields_required(self, config_data, field_name):
        del config_data["config"][field_name]
        with pytest.raises(ConfigError, match=field_name):
            PipelineConfig(config_data).validate()

    def test_blank_source_field(self, config_data):
        config_data["config"]["gitHubOwner"] = "  "
        with pytest.raises(ConfigError, match="gitHubOwner"):
            PipelineConfig(config_data).validate()

    def test_environments_required(self, config_data):
        config_data["environments"] = []
        with pytest.raises(ConfigError, match="environments"):
            PipelineConfig(config_data).validate()

    def test_duplicate_environments(self, config_data):
        config_data["environments"] = ["dev", "dev"]
        with pytest.raises(ConfigError, match="Duplicate"):
            PipelineConfig(config_data).validate()

    def test_custom_routes(self, config_data):
        config_data["api"] = {
            "routes": [
                {"path": "/widgets", "methods": ["get", "HEAD"], "name": "ListWidgets",
                 "asset": "widgets/list", "table": "widgets"},
                {"path": "/health", "name": "Health", "asset": "health", "authorize": False},
            ],
        }
        config = PipelineConfig(config_data)
        config.validate()
        routes = config.service_spec().routes
        assert routes[0].methods == (HttpMethod.GET, HttpMethod.HEAD)
        assert routes[0].authorize is True
        assert routes[1].methods == (HttpMethod.GET,)
        assert routes[1].authorize is False

    def test_route_unknown_table(self, config_data):
        config_data["api"] = {"routes": [
            {"path": "/gadgets", "name": "ListGadgets", "asset": "gadgets/list", "table": "gadgets"},
        ]}
        with pytest.raises(ConfigError, match="unknown table 'gadgets'"):
            PipelineConfig(config_data).validate()

    def test_route_bad_method(self, config_data):
        config_data["api"] = {"routes": [
            {"path": "/widgets", "methods": ["FETCH"], "name": "ListWidgets", "asset": "widgets/list"},
        ]}
        with pytest.raises(ConfigError, match="Unknown HTTP method"):
            PipelineConfig(config_data).validate()

    def test_route_path_must_be_absolute(self, config_data):
        config_data["api"] = {"routes": [{"path": "widgets", "name": "ListWidgets", "asset": "a"}]}
        with pytest.raises(ConfigError, match="must start with '/'"):
            PipelineConfig(config_data).validate()

    def test_empty_routes(self, config_data):
        config_data["api"] = {"routes": []}
        with pytest.raises(ConfigError, match="at least one route"):
            PipelineConfig(config_data).validate()

    def test_default_route_needs_table(self, config_data):
        config_data["tables"] = []
        with pytest.raises(ConfigError, match="needs table 'widgets'"):
            PipelineConfig(config_data).validate()

    def test_cors(self, config_data):
        config_data["api"] = {"cors": {"allowOrigins": ["https://example.com"], "allowMethods": ["get"],
                                       "maxAgeSeconds": 60}}
        cors = PipelineConfig(config_data).service_spec().cors
        assert cors.allow_origins == ("https://example.com",)
        assert cors.allow_headers == ("Authorization",)
        assert cors.allow_methods == (HttpMethod.GET,)
        assert cors.max_age_seconds == 60

    def test_logging_settings(self, config_data):
        config_data["logging"] = {"level": "debug", "format": "pretty", "output": "logs/{date}.log"}
        config = PipelineConfig(config_data)
        assert config.get_log_level() == "DEBUG"
        assert config.get_log_format() == "pretty"
        assert "{date}" not in str(config.get_log_file_path())

    def test_log_file_disabled(self, config_data):
        assert PipelineConfig(config_data).get_log_file_path() is None

    def test_placeholder_behavior(self, config_data):
        assert PipelineConfig(config_data).should_create_placeholders() is True
        config_data["behavior"] = {"create_placeholder_secrets": False}
        assert PipelineConfig(config_data).should_create_placeholders() is False


class TestLoadConfig:

    def test_yaml_file(self, tmp_path, config_data):
        path = _write_yaml(tmp_path / "stackpipe.yaml", config_data)
        config = load_config(path)
        assert config.config_path == path
        assert config.github_repository == "widgets"

    def test_package_json(self, tmp_path):
        package = {
            "name": "cdk-snack",
            "config": {
                "gitHubBranch": "main",
                "gitHubOwner": "acme",
                "gitHubRepository": "widgets",
                "gitHubTokenSecretId": "github-token",
                "unrelated": "ignored",
            },
            "stackpipe": {"environments": ["dev"]},
        }
        path = tmp_path / "package.json"
        path.write_text(json.dumps(package))

        config = load_config(path)
        config.validate()
        definition = config.to_definition()
        assert definition.name == "CDKSnackCICD-main"
        assert definition.environments == ("dev",)
        assert "unrelated" not in config.raw_config["config"]

    def test_env_var(self, tmp_path, config_data, monkeypatch):
        path = _write_yaml(tmp_path / "custom.yaml", config_data)
        monkeypatch.setenv("STACKPIPE_CONFIG", str(path))
        assert load_config().config_path == path

    def test_cwd_default(self, tmp_path, config_data, monkeypatch):
        _write_yaml(tmp_path / "stackpipe.yaml", config_data)
        monkeypatch.delenv("STACKPIPE_CONFIG", raising=False)
        monkeypatch.chdir(tmp_path)
        assert load_config().github_owner == "acme"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "nope.yaml")

    def test_empty_file(self, tmp_path):
        path = tmp_path / "stackpipe.yaml"
        path.write_text("")
        with pytest.raises(ConfigError, match="empty"):
            load_config(path)

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "stackpipe.yaml"
        path.write_text("config: [unclosed")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(path)

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "package.json"
        path.write_text("{not json")
        with pytest.raises(ConfigError, match="Invalid JSON"):
            load_config(path)
