"""CLI entrypoint for stackapply."""

import importlib
import io
import logging
import signal
import sys
import threading
from collections.abc import Callable
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from stackapply.diff import DiffEngine
from stackapply.document import load_document
from stackapply.drift import DriftDetector
from stackapply.errors import PlanError
from stackapply.executor import PlanExecutor
from stackapply.formatter import (
    format_drift_json,
    format_drift_markdown,
    format_drift_table,
    format_plan_json,
    format_plan_markdown,
    format_plan_table,
    format_summary_json,
    format_summary_markdown,
    format_summary_table,
)
from stackapply.providers.base import ProviderRegistry
from stackapply.state import StateStore

DEFAULT_STATE = "stackapply.state.json"
DEFAULT_PROVIDER = "stackapply.providers:simulated_registry"

PLAN_FORMATTERS = {
    "table": format_plan_table,
    "json": format_plan_json,
    "markdown": format_plan_markdown,
}

SUMMARY_FORMATTERS = {
    "table": format_summary_table,
    "json": format_summary_json,
    "markdown": format_summary_markdown,
}

DRIFT_FORMATTERS = {
    "table": format_drift_table,
    "json": format_drift_json,
    "markdown": format_drift_markdown,
}

state_option = click.option(
    "--state",
    "state_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_STATE,
    show_default=True,
    help="Snapshot file.",
)
format_option = click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json", "markdown"]),
    default="table",
    help="Output format.",
)
redact_option = click.option(
    "--redact-values", is_flag=True, help="Hide property values in the output."
)
provider_option = click.option(
    "--provider",
    default=DEFAULT_PROVIDER,
    show_default=True,
    help="Provider factory as module:callable, called with the state path.",
)
document_options = [
    click.argument("document", type=click.Path(exists=True, dir_okay=False, path_type=Path)),
    click.option(
        "--var-file",
        multiple=True,
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
        help="Variable overlay file, merged in order.",
    ),
    click.option("--var", "var_pairs", multiple=True, help="Variable override (KEY=VALUE)."),
]


def _document_options(func):
    for option in reversed(document_options):
        func = option(func)
    return func


def _parse_vars(pairs: tuple[str, ...]) -> dict[str, str]:
    variables = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--var")
        variables[key] = value
    return variables


def _load_providers(spec: str, state_path: Path) -> ProviderRegistry:
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise click.BadParameter(f"expected module:callable, got {spec!r}", param_hint="--provider")
    try:
        factory: Callable[[Path], ProviderRegistry] = getattr(
            importlib.import_module(module_name), attr
        )
    except (ImportError, AttributeError) as exc:
        raise click.BadParameter(f"cannot load {spec!r}: {exc}", param_hint="--provider") from exc
    return factory(state_path)


def _fail(exc: Exception) -> None:
    click.echo(f"Error: {exc}", err=True)
    sys.exit(2)


@click.group()
@click.option("-v", "--verbose", count=True, help="Log progress to stderr (-vv for debug).")
def main(verbose):
    """Plan and apply declarative network infrastructure."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG if verbose > 1 else logging.INFO,
            format="%(message)s",
            handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        )


@main.command()
@_document_options
@state_option
@format_option
@redact_option
def plan(document, var_file, var_pairs, state_path, output_format, redact_values):
    """Show the changes needed to reach DOCUMENT. Exits 1 when changes are pending."""
    try:
        model = load_document(document, overlays=var_file, variables=_parse_vars(var_pairs))
        snapshot = StateStore(state_path).load()
        change_set = DiffEngine().diff(model, snapshot)
    except PlanError as exc:
        _fail(exc)

    click.echo(PLAN_FORMATTERS[output_format](change_set, redact=redact_values))
    sys.exit(1 if change_set.has_changes else 0)


@main.command()
@_document_options
@state_option
@provider_option
@click.option(
    "--max-concurrent",
    type=click.IntRange(1, 50),
    default=5,
    help="Max concurrent provider operations.",
)
@click.option("--max-attempts", type=click.IntRange(1, 20), default=3, help="Attempts per operation.")
@click.option("--timeout", type=float, default=300.0, help="Seconds per provider operation.")
@click.option("--lock-timeout", type=float, default=10.0, help="Seconds to wait for the state lock.")
@format_option
@redact_option
def apply(
    document,
    var_file,
    var_pairs,
    state_path,
    provider,
    max_concurrent,
    max_attempts,
    timeout,
    lock_timeout,
    output_format,
    redact_values,
):
    """Reconcile live infrastructure with DOCUMENT."""
    providers = _load_providers(provider, state_path)
    store = StateStore(state_path, lock_timeout=lock_timeout)
    cancel_event = threading.Event()

    try:
        model = load_document(document, overlays=var_file, variables=_parse_vars(var_pairs))
        with store.locked():
            snapshot = store.load()
            change_set = DiffEngine().diff(model, snapshot)
            if output_format != "json":
                click.echo(PLAN_FORMATTERS[output_format](change_set, redact=redact_values))

            executor = PlanExecutor(
                providers,
                store,
                max_concurrent=max_concurrent,
                max_attempts=max_attempts,
                timeout=timeout,
            )
            previous = signal.signal(signal.SIGINT, lambda *_: cancel_event.set())
            try:
                summary = executor.execute(
                    change_set, snapshot, model=model, cancel_event=cancel_event
                )
            finally:
                signal.signal(signal.SIGINT, previous)
    except PlanError as exc:
        _fail(exc)

    click.echo(SUMMARY_FORMATTERS[output_format](summary))
    sys.exit(0 if summary.ok else 1)


@main.command()
@state_option
@provider_option
@click.option(
    "--max-concurrent",
    type=click.IntRange(1, 50),
    default=5,
    help="Max concurrent reads.",
)
@format_option
@redact_option
def drift(state_path, provider, max_concurrent, output_format, redact_values):
    """Compare the snapshot with live state. Exits 1 when drift is found."""
    providers = _load_providers(provider, state_path)
    try:
        snapshot = StateStore(state_path).load()
    except PlanError as exc:
        _fail(exc)

    report = DriftDetector(providers, max_concurrent=max_concurrent).detect(snapshot)
    click.echo(DRIFT_FORMATTERS[output_format](report, redact=redact_values))

    if report.failed_resources:
        click.echo(
            f"Error: could not read {', '.join(report.failed_resources)}",
            err=True,
        )
        sys.exit(2)
    sys.exit(1 if report.drifted else 0)


@main.group()
def state():
    """Inspect the stored snapshot."""


@state.command("show")
@state_option
@click.option("--json", "as_json", is_flag=True, help="Print the raw snapshot document.")
def state_show(state_path, as_json):
    """List resources recorded in the snapshot."""
    try:
        snapshot = StateStore(state_path).load()
    except PlanError as exc:
        _fail(exc)

    if as_json:
        click.echo(state_path.read_text() if state_path.exists() else "{}")
        return

    console = Console(record=True, width=120, file=io.StringIO())
    table = Table(title=f"{state_path} (serial {snapshot.serial})")
    table.add_column("Resource")
    table.add_column("Kind")
    table.add_column("Physical ID")
    table.add_column("Depends on")
    for entry in snapshot.entries.values():
        table.add_row(
            entry.logical_id,
            entry.kind,
            entry.physical_id,
            ", ".join(entry.dependencies),
        )
    console.print(table)
    click.echo(console.export_text())


@main.command("force-unlock")
@state_option
def force_unlock(state_path):
    """Remove a run lock left behind by a crashed apply."""
    holder = StateStore(state_path).force_unlock()
    if holder:
        click.echo(f"Removed lock held by {holder}.")
    else:
        click.echo("No readable lock found; lock file removed if present.")


if __name__ == "__main__":
    main()
