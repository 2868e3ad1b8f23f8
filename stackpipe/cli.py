"""
CLI interface for the stackpipe delivery pipeline.

Provides commands: run, synth, validate, status, check-secrets.
"""

import signal
from contextlib import contextmanager
from pathlib import Path

import click
from botocore.exceptions import BotoCoreError

from stackpipe import __version__
from stackpipe.config import PipelineConfig, load_config
from stackpipe.errors import StackpipeError
from stackpipe.pipeline import Orchestrator, StageStatus, load_run, save_run, synthesize
from stackpipe.providers import InMemoryProvider, LocalProvider
from stackpipe.secrets import (
    EnvSecretStore,
    InMemorySecretStore,
    SecretsManagerStore,
    SecretStore,
    ensure_preconditions,
)
from stackpipe.utils import (
    format_duration,
    print_banner,
    print_error,
    print_info,
    print_success,
    print_warning,
    sanitize_error_message,
    setup_logging,
)

DEFAULT_WORKDIR = ".stackpipe"

_STAGE_SYMBOLS = {
    StageStatus.COMPLETED: "✅",
    StageStatus.FAILED: "❌",
    StageStatus.SKIPPED: "⏭ ",
}


def _load_validated(config_path) -> PipelineConfig:
    pipeline_config = load_config(config_path) if config_path else load_config()
    pipeline_config.validate()
    return pipeline_config


def _secret_store(kind: str, seeded: tuple[str, ...], region: str | None) -> SecretStore:
    if kind == "aws":
        return SecretsManagerStore(region_name=region)
    if kind == "memory":
        values = {}
        for item in seeded:
            key, sep, value = item.partition("=")
            if not sep or not key:
                raise click.BadParameter(f"expected ID=VALUE, got {item!r}", param_hint="--secret")
            values[key] = value
        return InMemorySecretStore(values)
    return EnvSecretStore()


def _state_file(workdir: Path) -> Path:
    return workdir / "state" / "last-run.json"


@contextmanager
def _interrupt_requests():
    """Turn the first Ctrl-C into a cancellation request checked between stages."""
    requested = {"abort": False}

    def handler(signum, frame):
        if requested["abort"]:
            raise KeyboardInterrupt
        requested["abort"] = True
        print_warning("Cancellation requested; stopping after the current stage")

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield lambda: requested["abort"]
    finally:
        signal.signal(signal.SIGINT, previous)


@click.group()
@click.version_option(version=__version__, prog_name="stackpipe")
def main():
    """
    stackpipe - self-updating delivery pipeline for an authorized HTTP API.

    Runs source → build → self-update → deploy(env...) in order.
    """
    pass


config_option = click.option(
    "--config",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Configuration file: stackpipe.yaml or package.json (default: $STACKPIPE_CONFIG, ./stackpipe.yaml)",
)
workdir_option = click.option(
    "--workdir",
    type=click.Path(file_okay=False, path_type=Path),
    default=DEFAULT_WORKDIR,
    show_default=True,
    help="Directory for deployed state, templates and run summaries",
)


@main.command()
@config_option
@workdir_option
@click.option(
    "--source-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=".",
    show_default=True,
    help="Local checkout of the tracked repository",
)
@click.option(
    "--secrets",
    "secrets_backend",
    type=click.Choice(["env", "aws", "memory"], case_sensitive=False),
    default="env",
    show_default=True,
    help="Where required secrets are read from",
)
@click.option(
    "--secret",
    "seeded_secrets",
    multiple=True,
    metavar="ID=VALUE",
    help="Seed the memory secret store (repeatable)",
)
@click.option("--region", help="AWS region for the Secrets Manager store")
@click.option(
    "--dry-run",
    is_flag=True,
    help="Run every stage against an in-memory provider; nothing is written",
)
@click.option(
    "--verbose",
    is_flag=True,
    help="Enable debug logging",
)
def run(config, workdir, source_dir, secrets_backend, seeded_secrets, region, dry_run, verbose):
    """
    Run the pipeline.

    Examples:

      # Run with the token from $GITHUB_TOKEN
      stackpipe run

      # Dry run against an in-memory provider
      stackpipe run --dry-run --secrets memory --secret github-token=ghp_xxx

      # Read secrets from AWS Secrets Manager
      stackpipe run --secrets aws --region eu-west-1
    """
    try:
        pipeline_config = _load_validated(config)
        definition = pipeline_config.to_definition()
    except StackpipeError as e:
        print_error(f"Invalid configuration: {e}")
        raise SystemExit(1)

    setup_logging(
        log_file=None if dry_run else pipeline_config.get_log_file_path(),
        log_level="DEBUG" if verbose else pipeline_config.get_log_level(),
        log_format=pipeline_config.get_log_format(),
        console_output=pipeline_config.should_log_to_console() or verbose,
    )

    if dry_run:
        print_banner("DRY RUN (in-memory provider)")
        provider = InMemoryProvider()
    else:
        provider = LocalProvider(workdir, source_dir)

    try:
        store = _secret_store(secrets_backend.lower(), seeded_secrets, region)
    except (StackpipeError, BotoCoreError) as e:
        print_error(f"Could not open secret store: {e}")
        raise SystemExit(1)

    print_info(f"Pipeline {definition.name}: {definition.source.slug} → {', '.join(definition.environments)}")

    with _interrupt_requests() as should_abort:
        orchestrator = Orchestrator(
            definition,
            provider,
            store,
            assets_root=pipeline_config.assets_root,
            should_abort=should_abort,
            create_placeholders=pipeline_config.should_create_placeholders(),
        )
        result = orchestrator.run()

    if not dry_run:
        save_run(result, _state_file(workdir))

    for environment, outputs in result.outputs.items():
        url = outputs.get("ApiGatewayUrl")
        if url:
            print_info(f"{environment}: {url}")

    if result.success:
        suffix = " (pipeline self-updated)" if result.self_updated else ""
        print_success(f"Pipeline completed in {format_duration(result.duration_seconds)}{suffix}")
        raise SystemExit(0)

    print_error(f"Pipeline {result.state.value}: {result.error_message or 'cancelled'}")
    raise SystemExit(1)


@main.command()
@config_option
@click.option(
    "--out",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path(DEFAULT_WORKDIR) / "assembly",
    show_default=True,
    help="Output directory for rendered templates",
)
@click.option(
    "--environment",
    "-e",
    "environments",
    multiple=True,
    help="Only write these environments (repeatable)",
)
def synth(config, out, environments):
    """
    Render the stacks of every environment to YAML templates.

    Examples:

      stackpipe synth
      stackpipe synth -e dev --out cdk.out
    """
    try:
        pipeline_config = _load_validated(config)
        definition = pipeline_config.to_definition()
        assembly = synthesize(definition, pipeline_config.assets_root)
    except StackpipeError as e:
        print_error(f"Synthesis failed: {e}")
        raise SystemExit(1)

    unknown = sorted(set(environments) - set(assembly))
    if unknown:
        print_error(f"Unknown environment(s): {', '.join(unknown)}")
        raise SystemExit(1)

    out.mkdir(parents=True, exist_ok=True)
    for environment, stacks in assembly.items():
        if environments and environment not in environments:
            continue
        for stack in stacks:
            path = out / f"{stack.stack_name}.template.yaml"
            path.write_text(stack.to_yaml())
            click.echo(f"  {path}  ({len(stack.resources)} resources)")

    print_success(f"Templates written to {out}")


@main.command()
@config_option
def validate(config):
    """
    Validate configuration and the descriptor graph of every environment.

    No secrets are read and nothing is deployed.
    """
    try:
        pipeline_config = _load_validated(config)
        definition = pipeline_config.to_definition()
        assembly = synthesize(definition, pipeline_config.assets_root)
    except StackpipeError as e:
        print_error(f"Validation failed: {e}")
        raise SystemExit(1)

    for environment, stacks in assembly.items():
        api = stacks[-1]
        routes = api.resources_of_type("AWS::ApiGatewayV2::Route")
        custom = [r for r in routes.values() if r["Properties"]["AuthorizationType"] == "CUSTOM"]
        click.echo(f"  {environment}: {len(routes)} routes ({len(custom)} authorized), {len(stacks)} stacks")

    print_success(f"Pipeline configuration is valid (fingerprint {definition.fingerprint[:12]})")


@main.command()
@workdir_option
def status(workdir):
    """Show the last saved pipeline run."""
    last_run = load_run(_state_file(workdir))
    if last_run is None:
        print_info("No previous pipeline runs found")
        raise SystemExit(0)

    print_info(f"Pipeline Status: {last_run.pipeline_name}\n")

    status_symbol = "✅" if last_run.success else "❌"
    click.echo(f"Last Run: {last_run.started_at.strftime('%Y-%m-%d %H:%M:%S')}")
    click.echo(f"Status: {status_symbol} {last_run.state.value.upper()}")
    click.echo(f"Duration: {format_duration(last_run.duration_seconds)}")
    click.echo(f"Fingerprint: {last_run.fingerprint[:12]}")
    if last_run.self_updated:
        click.echo("Self-updated: yes")
    if last_run.error_message:
        click.echo(f"Error: {last_run.error_message}")

    if last_run.stages:
        click.echo("\nStages:")
        for stage in last_run.stages:
            symbol = _STAGE_SYMBOLS[stage.status]
            click.echo(f"  {symbol} {stage.stage_name:<16} {format_duration(stage.duration_seconds):>8}")

    for environment, outputs in last_run.outputs.items():
        if "ApiGatewayUrl" in outputs:
            click.echo(f"\n{environment}: {outputs['ApiGatewayUrl']}")


@main.command("check-secrets")
@config_option
@click.option(
    "--secrets",
    "secrets_backend",
    type=click.Choice(["env", "aws", "memory"], case_sensitive=False),
    default="env",
    show_default=True,
)
@click.option("--secret", "seeded_secrets", multiple=True, metavar="ID=VALUE")
@click.option("--region", help="AWS region for the Secrets Manager store")
@click.option(
    "--create-placeholders/--no-create-placeholders",
    default=False,
    show_default=True,
    help="Create placeholder entries for missing secrets",
)
def check_secrets(config, secrets_backend, seeded_secrets, region, create_placeholders):
    """Check that every secret the pipeline requires is present."""
    try:
        pipeline_config = _load_validated(config)
        definition = pipeline_config.to_definition()
        store = _secret_store(secrets_backend.lower(), seeded_secrets, region)
        resolved = ensure_preconditions(
            definition.secret_requirements(),
            store,
            create_placeholders=create_placeholders,
        )
    except (StackpipeError, BotoCoreError) as e:
        print_error(sanitize_error_message(e))
        raise SystemExit(1)

    for identifier in sorted(resolved):
        print_success(f"{identifier}: present")
