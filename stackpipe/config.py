"""
Configuration management for stackpipe.

Loads and validates the pipeline configuration, read once at startup and
passed explicitly to the orchestrator. Two formats are accepted:

stackpipe.yaml:
    pipeline:
      name: CDKSnackCICD-main          # default: CDKSnackCICD-{gitHubBranch}
    config:
      gitHubOwner: acme
      gitHubRepository: widgets
      gitHubBranch: main
      gitHubTokenSecretId: github-token
    environments: [dev, prod]
    api:
      name: StartupSnack-CICD-Widgets
      cors: {allowOrigins: ["*"], allowHeaders: [Authorization],
             allowMethods: [GET, HEAD, OPTIONS, POST], maxAgeSeconds: 86400}
      authorizer: {asset: authorizer}
      routes:
        - {path: /widgets, methods: [GET], name: ListWidgets,
           asset: widgets/list, table: widgets, authorize: true}
    tables: [widgets]
    logging: {level: INFO, format: structured, console: true, output: .stackpipe/logs/pipeline-{date}.log}

package.json:
    The "config" block carries the four gitHub* fields; an optional
    "stackpipe" block carries every other section.
"""

import json
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from stackpipe.errors import ConfigError
from stackpipe.schemas import (
    CorsConfig,
    HttpMethod,
    PipelineDefinition,
    RouteSpec,
    ServiceSpec,
    SourceRevision,
)
from stackpipe.schemas.definition import DEFAULT_ROUTES

DEFAULT_CONFIG_NAME = "stackpipe.yaml"
SOURCE_FIELDS = ("gitHubBranch", "gitHubOwner", "gitHubRepository", "gitHubTokenSecretId")
PIPELINE_NAME_PREFIX = "CDKSnackCICD"


class RouteConfig:
    """Configuration for a single API route."""

    def __init__(self, index: int, data: Dict[str, Any]):
        self.index = index
        self.path = data.get("path")
        self.methods = data.get("methods", ["GET"])
        self.name = data.get("name")
        self.asset = data.get("asset")
        self.table = data.get("table")
        self.authorize = data.get("authorize", True)

    def validate(self, tables: List[str]) -> None:
        label = f"Route #{self.index}"
        if not self.path or not str(self.path).startswith("/"):
            raise ConfigError(f"{label}: 'path' must start with '/'")
        if not self.name:
            raise ConfigError(f"{label} ({self.path}): missing 'name'")
        if not self.asset:
            raise ConfigError(f"{label} ({self.path}): missing 'asset'")
        if not isinstance(self.methods, list) or not self.methods:
            raise ConfigError(f"{label} ({self.path}): 'methods' must be a non-empty list")
        for method in self.methods:
            try:
                HttpMethod.from_string(method)
            except ValueError as e:
                raise ConfigError(f"{label} ({self.path}): {e}")
        if self.table and self.table not in tables:
            raise ConfigError(f"{label} ({self.path}): unknown table '{self.table}'")

    def to_spec(self) -> RouteSpec:
        return RouteSpec(
            path=self.path,
            methods=tuple(HttpMethod.from_string(m) for m in self.methods),
            name=self.name,
            asset=self.asset,
            table=self.table,
            authorize=bool(self.authorize),
        )

    def __repr__(self) -> str:
        return f"RouteConfig(path={self.path}, methods={self.methods}, name={self.name})"


class PipelineConfig:
    """Complete pipeline configuration."""

    def __init__(self, raw_config: Dict[str, Any], config_path: Optional[Path] = None):
        self.config_path = config_path
        self.raw_config = raw_config

        # Source revision (package.json-compatible keys)
        source = self.raw_config.get("config", {}) or {}
        self.github_branch = source.get("gitHubBranch")
        self.github_owner = source.get("gitHubOwner")
        self.github_repository = source.get("gitHubRepository")
        self.github_token_secret_id = source.get("gitHubTokenSecretId")

        # Pipeline metadata
        pipeline = self.raw_config.get("pipeline", {}) or {}
        self.name = pipeline.get("name") or f"{PIPELINE_NAME_PREFIX}-{self.github_branch}"
        self.assets_root = pipeline.get("assets_root", "assets/lambda")

        self.environments = self.raw_config.get("environments", ["dev", "prod"])
        self.tables = self.raw_config.get("tables", ["widgets"])

        # API surface
        self.api = self.raw_config.get("api", {}) or {}
        if "routes" in self.api:
            self.routes = [RouteConfig(i, r or {}) for i, r in enumerate(self.api["routes"], start=1)]
        else:
            self.routes = None

        self.logging = self.raw_config.get("logging", {}) or {}
        self.behavior = self.raw_config.get("behavior", {}) or {}

    @classmethod
    def from_file(cls, config_path: Path) -> "PipelineConfig":
        if not config_path.exists():
            raise ConfigError(f"Configuration file not found: {config_path}")

        if config_path.suffix == ".json":
            return cls(_load_package_json(config_path), config_path)
        return cls(_load_yaml(config_path), config_path)

    def get_log_file_path(self) -> Optional[Path]:
        """Get log file path with date interpolation (None disables file logging)."""
        log_output = self.logging.get("output", ".stackpipe/logs/pipeline-{date}.log")
        if not log_output:
            return None
        log_output = log_output.replace("{date}", datetime.now().strftime("%Y-%m-%d"))
        return Path(log_output)

    def get_log_level(self) -> str:
        return self.logging.get("level", "INFO").upper()

    def get_log_format(self) -> str:
        """Get log format (structured or pretty)."""
        return self.logging.get("format", "structured")

    def should_log_to_console(self) -> bool:
        return self.logging.get("console", True)

    def should_create_placeholders(self) -> bool:
        """Create placeholder secrets for missing requirements."""
        return self.behavior.get("create_placeholder_secrets", True)

    def validate(self) -> None:
        """Validate entire configuration."""
        source = self.raw_config.get("config") or {}
        for field_name in SOURCE_FIELDS:
            value = source.get(field_name)
            if not isinstance(value, str) or not value.strip():
                raise ConfigError(f"config.{field_name} is required")

        if not self.name:
            raise ConfigError("Pipeline name is required")

        if not isinstance(self.environments, list) or not self.environments:
            raise ConfigError("'environments' must be a non-empty list")
        for env in self.environments:
            if not isinstance(env, str) or not env.strip():
                raise ConfigError(f"Invalid environment name: {env!r}")
        if len(set(self.environments)) != len(self.environments):
            raise ConfigError(f"Duplicate environments: {self.environments}")

        if not isinstance(self.tables, list):
            raise ConfigError("'tables' must be a list")

        if self.routes is not None:
            if not self.routes:
                raise ConfigError("api.routes must declare at least one route")
            for route in self.routes:
                route.validate(self.tables)
        else:
            for spec in DEFAULT_ROUTES:
                if spec.table and spec.table not in self.tables:
                    raise ConfigError(f"Default route {spec.path} needs table '{spec.table}'")

        cors = self.api.get("cors", {}) or {}
        for method in cors.get("allowMethods", []):
            try:
                HttpMethod.from_string(method)
            except ValueError as e:
                raise ConfigError(f"api.cors.allowMethods: {e}")

    def source_revision(self) -> SourceRevision:
        return SourceRevision(
            owner=self.github_owner,
            repository=self.github_repository,
            branch=self.github_branch,
            token_secret_id=self.github_token_secret_id,
        )

    def service_spec(self) -> ServiceSpec:
        defaults = ServiceSpec()
        cors_data = self.api.get("cors", {}) or {}
        cors = CorsConfig(
            allow_origins=tuple(cors_data.get("allowOrigins", defaults.cors.allow_origins)),
            allow_headers=tuple(cors_data.get("allowHeaders", defaults.cors.allow_headers)),
            allow_methods=tuple(
                HttpMethod.from_string(m)
                for m in cors_data.get("allowMethods", [m.value for m in defaults.cors.allow_methods])
            ),
            max_age_seconds=int(cors_data.get("maxAgeSeconds", defaults.cors.max_age_seconds)),
        )
        authorizer = self.api.get("authorizer", {}) or {}
        routes = tuple(r.to_spec() for r in self.routes) if self.routes is not None else defaults.routes

        return ServiceSpec(
            api_name=self.api.get("name", defaults.api_name),
            cors=cors,
            authorizer_asset=authorizer.get("asset", defaults.authorizer_asset),
            runtime=self.api.get("runtime", defaults.runtime),
            handler=self.api.get("handler", defaults.handler),
            routes=routes,
            tables=tuple(self.tables),
        )

    def to_definition(self) -> PipelineDefinition:
        """Build the pipeline definition. Call validate() first."""
        try:
            return PipelineDefinition(
                name=self.name,
                source=self.source_revision(),
                environments=tuple(self.environments),
                service=self.service_spec(),
            )
        except ValueError as e:
            raise ConfigError(str(e))

    def __repr__(self) -> str:
        return f"PipelineConfig(name={self.name}, environments={self.environments})"


def _load_yaml(config_path: Path) -> Dict[str, Any]:
    """Load and parse YAML configuration file."""
    try:
        with open(config_path, "r") as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax: {e}")
    if not config:
        raise ConfigError("Configuration file is empty")
    if not isinstance(config, dict):
        raise ConfigError("Configuration must be a mapping")
    return config


def _load_package_json(config_path: Path) -> Dict[str, Any]:
    """Read the config block (and optional stackpipe block) of a package.json."""
    try:
        with open(config_path, "r") as f:
            package = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {config_path}: {e}")

    raw = dict(package.get("stackpipe", {}) or {})
    raw["config"] = {k: v for k, v in (package.get("config", {}) or {}).items() if k in SOURCE_FIELDS}
    return raw


def load_config(config_path: Optional[Path] = None) -> PipelineConfig:
    """
    Load pipeline configuration.

    Args:
        config_path: Path to a YAML file or package.json. Defaults to
            $STACKPIPE_CONFIG, then ./stackpipe.yaml

    Returns:
        PipelineConfig instance

    Raises:
        ConfigError: If config is invalid or missing
    """
    if config_path is None:
        env_path = os.environ.get("STACKPIPE_CONFIG")
        config_path = Path(env_path) if env_path else Path.cwd() / DEFAULT_CONFIG_NAME

    return PipelineConfig.from_file(Path(config_path))
