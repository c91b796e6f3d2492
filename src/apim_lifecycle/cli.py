"""CLI entry point for apim-lifecycle."""

import json
from pathlib import Path

import click

from apim_lifecycle.config import get_settings
from apim_lifecycle.contract.base import ContractFormat
from apim_lifecycle.contract.detect import detect_format
from apim_lifecycle.contract.loader import load_contract
from apim_lifecycle.dependencies import DependencyOrchestrator
from apim_lifecycle.errors import LifecycleError
from apim_lifecycle.gateway.memory import InMemoryGateway
from apim_lifecycle.gateway.rest import RestGateway
from apim_lifecycle.lifecycle import ResourceLifecycleManager
from apim_lifecycle.locks import KeyedLocks
from apim_lifecycle.log import configure_logging
from apim_lifecycle.tools import ToolDispatcher, ToolResult
from apim_lifecycle.versioning import VersionStrategyResolver


def _build_dispatcher(ctx: click.Context) -> ToolDispatcher:
    settings = ctx.obj["settings"]
    timeout = ctx.obj["timeout"]
    if ctx.obj["dry_run"]:
        gateway = InMemoryGateway()
    else:
        try:
            gateway = RestGateway.from_settings(settings)
        except LifecycleError as e:
            raise click.ClickException(str(e)) from e

    resolver = VersionStrategyResolver.from_settings(settings)
    locks = KeyedLocks()
    manager = ResourceLifecycleManager(gateway, resolver, locks, timeout)
    orchestrator = DependencyOrchestrator(gateway, locks, timeout)
    return ToolDispatcher(manager, orchestrator, resolver)


def _emit(ctx: click.Context, result: ToolResult) -> None:
    click.echo(json.dumps(result.model_dump(exclude_none=True), indent=2))
    if not result.ok:
        ctx.exit(1)


def _parse_pairs(pairs: tuple[str, ...]) -> dict:
    """Turn key=value pairs into tool arguments; @path reads the value from a file."""
    arguments = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got '{pair}'", param_hint="--arg")
        if value.startswith("@"):
            value = Path(value[1:]).read_text(encoding="utf-8")
        arguments[key] = value
    return arguments


@click.group()
@click.option("--dry-run", is_flag=True, help="Work against an in-memory gateway instead of the management API.")
@click.option("--timeout", type=click.FloatRange(min=0, min_open=True), default=None, help="Seconds allowed per remote call.")
@click.option("--log-level", default=None, help="Log level (default from APIM_LOG_LEVEL).")
@click.option("--log-json/--no-log-json", default=None, help="Render logs as JSON lines.")
@click.pass_context
def main(ctx: click.Context, dry_run: bool, timeout: float | None, log_level: str | None, log_json: bool | None):
    """APIM Lifecycle: import API contracts and manage versions, revisions and products."""
    settings = get_settings()
    configure_logging(
        level=log_level or settings.log_level,
        json_output=settings.log_json if log_json is None else log_json,
    )
    ctx.obj = {
        "settings": settings,
        "dry_run": dry_run,
        "timeout": timeout or settings.request_timeout,
    }


@main.command()
@click.argument("contract_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--format", "fmt", default="auto", type=click.Choice(["auto", "openapi", "protobuf"]), help="Contract format.")
def parse(contract_path: Path, fmt: str):
    """Parse a contract and list the operations it describes."""
    try:
        contract = load_contract(contract_path, fmt)
    except LifecycleError as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"{contract.title} ({contract.source_format.value}): {contract.operation_count} operations")
    if contract.base_service_url:
        click.echo(f"Service URL: {contract.base_service_url}")
    for op in contract.operations:
        click.echo(f"  {op.method:<7} {op.url_template}  [{op.name}]")
    for warning in contract.warnings:
        click.echo(f"warning: {warning}")


@main.command("import-api")
@click.argument("contract_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--api-id", required=True, help="Identifier of the API on the gateway.")
@click.option("--display-name", default=None, help="Display name (defaults to the contract title).")
@click.option("--path", "api_path", default=None, help="Public URL path of the API.")
@click.option("--service-url", default=None, help="Backend service URL.")
@click.option("--version", "initial_version", default=None, help="Register the API as this version.")
@click.option("--scheme", default="Segment", type=click.Choice(["Segment", "Query", "Header"]), help="Versioning scheme.")
@click.option("--query-name", default=None, help="Query parameter selecting the version.")
@click.option("--header-name", default=None, help="Header selecting the version.")
@click.pass_context
def import_api(
    ctx: click.Context,
    contract_path: Path,
    api_id: str,
    display_name: str | None,
    api_path: str | None,
    service_url: str | None,
    initial_version: str | None,
    scheme: str,
    query_name: str | None,
    header_name: str | None,
):
    """Create or converge an API from an OpenAPI or Protobuf contract."""
    text = contract_path.read_text(encoding="utf-8")
    fmt = detect_format(text)
    if fmt is None:
        raise click.ClickException(f"cannot tell whether {contract_path.name} is OpenAPI or Protobuf")

    arguments = {
        "apiId": api_id,
        "displayName": display_name or api_id,
        "path": api_path,
        "serviceUrl": service_url,
        "initialVersion": initial_version,
        "versioningScheme": scheme,
        "versionQueryName": query_name,
        "versionHeaderName": header_name,
    }
    if fmt is ContractFormat.OPENAPI:
        tool, arguments["yamlContract"] = "create_api_from_yaml", text
    else:
        tool, arguments["protoDefinition"] = "create_grpc_api_from_proto", text

    dispatcher = _build_dispatcher(ctx)
    _emit(ctx, dispatcher.call(tool, {k: v for k, v in arguments.items() if v is not None}))


@main.command()
@click.argument("tool")
@click.option("-a", "--arg", "pairs", multiple=True, help="Tool argument as key=value; @file reads the value from a file.")
@click.option("--json", "json_args", default=None, help="Tool arguments as a JSON object.")
@click.pass_context
def call(ctx: click.Context, tool: str, pairs: tuple[str, ...], json_args: str | None):
    """Invoke one tool by name and print its JSON result."""
    arguments = {}
    if json_args:
        try:
            arguments = json.loads(json_args)
        except json.JSONDecodeError as e:
            raise click.BadParameter(f"invalid JSON: {e}", param_hint="--json") from e
        if not isinstance(arguments, dict):
            raise click.BadParameter("expected a JSON object", param_hint="--json")
    arguments.update(_parse_pairs(pairs))

    dispatcher = _build_dispatcher(ctx)
    _emit(ctx, dispatcher.call(tool, arguments))


@main.command("tools")
@click.pass_context
def list_tools(ctx: click.Context):
    """List the available tool names."""
    ctx.obj["dry_run"] = True
    for name in _build_dispatcher(ctx).tool_names:
        click.echo(name)
