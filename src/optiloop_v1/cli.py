from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from .config import Settings
from .controller.experiment import (
    ExperimentReconciler,
    ReconcileResult,
    request_for,
    run_until_idle,
)
from .controller.template import OwnershipError
from .metrics.capture import MetricCapture
from .metrics.collector import capture_trial_values
from .metrics.query import MetricCaptureError
from .remote.api import APIError, HttpRemoteAPI
from .selectors import SelectorError
from .store.memory import InMemoryStore, StoreError
from .suggest import (
    FALLBACK_NONE,
    MappingSuggestionSource,
    SuggestionError,
    create_in_cluster_suggestion,
    create_remote_suggestion,
    parse_assignments,
)
from .utils import read_json
from .version import GIT_COMMIT, get_version

app = typer.Typer(help="optiloop experiment controller CLI")
console = Console()

CLI_ERRORS = (
    StoreError,
    APIError,
    SelectorError,
    MetricCaptureError,
    SuggestionError,
    OwnershipError,
)

CONFIG_OPTION = typer.Option(None, "--config", exists=True, dir_okay=False)
STATE_OPTION = typer.Option(..., "--state", dir_okay=False, help="JSON state snapshot.")
NAMESPACE_OPTION = typer.Option(None, "--namespace", "-n")
NAME_OPTION = typer.Option(..., "--name")
UNTIL_IDLE_OPTION = typer.Option(False, "--until-idle")
MANAGER_OPTION = typer.Option(False, "--manager", help="Include controller settings.")
REMOTE_OPTION = typer.Option(False, "--remote", help="Create the suggestion on the server.")
ASSIGN_OPTION = typer.Option(None, "--assign", help="Parameter assignment as name=value.")
FALLBACK_OPTION = typer.Option(FALLBACK_NONE, "--fallback")
SEED_OPTION = typer.Option(0, "--seed")

config_app = typer.Typer(help="Configuration commands")
app.add_typer(config_app, name="config")


@app.callback()
def main() -> None:
    pass


def _load_settings(config: Optional[Path]) -> Settings:
    if config is None:
        settings = Settings()
    else:
        settings = Settings(**read_json(config))
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    return settings


def _fail(exc: Exception) -> None:
    console.print(f"[red]error:[/red] {escape(str(exc))}")
    raise typer.Exit(code=1)


@app.command("version")
def version_cmd() -> None:
    console.print({"version": get_version(), "git_commit": GIT_COMMIT})


@config_app.command("env")
def config_env_cmd(
    config: Optional[Path] = CONFIG_OPTION, manager: bool = MANAGER_OPTION
) -> None:
    settings = _load_settings(config)
    env = settings.env_mapping(include_controller=manager)
    for key in sorted(env):
        typer.echo(f"{key}={env[key]}")


@app.command("reconcile")
def reconcile_cmd(
    state: Path = STATE_OPTION,
    name: str = NAME_OPTION,
    namespace: Optional[str] = NAMESPACE_OPTION,
    until_idle: bool = UNTIL_IDLE_OPTION,
    config: Optional[Path] = CONFIG_OPTION,
) -> None:
    settings = _load_settings(config)
    namespace = namespace or settings.default_namespace
    store = InMemoryStore.load(state)

    def save_step(result: ReconcileResult) -> None:
        if result.mutated:
            store.save(state)

    # Completed steps (a report above all) must survive any later failure
    try:
        with HttpRemoteAPI.from_settings(settings) as api:
            reconciler = ExperimentReconciler(store, api)
            if until_idle:
                results = run_until_idle(
                    reconciler,
                    namespace,
                    name,
                    max_steps=settings.max_reconcile_steps,
                    on_step=save_step,
                )
            else:
                results = [reconciler.reconcile(namespace, name)]
    except CLI_ERRORS as exc:
        _fail(exc)
    finally:
        store.save(state)

    table = Table(title=f"reconcile {namespace}/{name}")
    table.add_column("step")
    table.add_column("action")
    table.add_column("requeue after")
    for index, result in enumerate(results, start=1):
        after = "" if result.requeue_after is None else f"{result.requeue_after:g}s"
        table.add_row(str(index), result.action, after)
    console.print(table)


@app.command("suggest")
def suggest_cmd(
    state: Path = STATE_OPTION,
    name: str = NAME_OPTION,
    namespace: Optional[str] = NAMESPACE_OPTION,
    remote: bool = REMOTE_OPTION,
    assign: Optional[List[str]] = ASSIGN_OPTION,
    fallback: str = FALLBACK_OPTION,
    seed: int = SEED_OPTION,
    config: Optional[Path] = CONFIG_OPTION,
) -> None:
    settings = _load_settings(config)
    try:
        source = MappingSuggestionSource(parse_assignments(assign or []), fallback, seed)
        if remote:
            with HttpRemoteAPI.from_settings(settings) as api:
                location = create_remote_suggestion(api, name, source)
            console.print({"trial": location})
            return
        store = InMemoryStore.load(state)
        trial = create_in_cluster_suggestion(
            store, namespace or settings.default_namespace, name, source
        )
        store.save(state)
    except CLI_ERRORS as exc:
        _fail(exc)
    console.print(
        {
            "trial": f"{trial.metadata.namespace}/{trial.metadata.name}",
            "assignments": trial.assignment_map(),
        }
    )


@app.command("capture")
def capture_cmd(
    state: Path = STATE_OPTION,
    name: str = NAME_OPTION,
    namespace: Optional[str] = NAMESPACE_OPTION,
    config: Optional[Path] = CONFIG_OPTION,
) -> None:
    settings = _load_settings(config)
    store = InMemoryStore.load(state)
    try:
        trial = store.get_trial(namespace or settings.default_namespace, name)
        owner = request_for(trial)
        if owner is None:
            raise StoreError(f"trial {name} is not owned by an experiment")
        experiment = store.get_experiment(*owner)
        with MetricCapture.from_settings(settings) as capture:
            result = capture_trial_values(trial, experiment.spec.metrics, capture)
        if result.captured:
            store.update(trial)
            store.save(state)
    except CLI_ERRORS as exc:
        _fail(exc)
    console.print(
        {
            "captured": result.captured,
            "pending": result.pending,
            "retry_after": result.retry_after,
            "values": trial.value_map(),
        }
    )


if __name__ == "__main__":
    app()
