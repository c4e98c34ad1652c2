# cli.py
from __future__ import annotations

import logging
import sys
from pathlib import Path

import click

from relayci import dag
from relayci.archive import RunArchive
from relayci.cache import CacheStore, backend_from_settings
from relayci.config import load_workflow
from relayci.errors import ConfigError
from relayci.reports import ReportCollector, export_junit
from relayci.scheduler import JobEvent, Scheduler
from relayci.settings import Settings
from relayci.ui.console import Console, get_console, set_console

DEFAULT_PIPELINES = (
    ".relayci.yml",
    ".relayci.yaml",
    ".circleci/config.yml",
    "relayci_workflow.py",
)


def find_pipeline_files() -> list[Path]:
    """Every pipeline definition in the current directory, default names first."""
    current_dir = Path(".")
    found = [current_dir / name for name in DEFAULT_PIPELINES if (current_dir / name).exists()]
    for path in sorted(current_dir.glob("*_workflow.py")):
        if path not in found:
            found.append(path)
    return found


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    Pipeline file from the argument, or the single one found by convention.
    Exits with a message when nothing (or too much) is found.
    """
    console = get_console()

    if pipeline_arg:
        path = Path(pipeline_arg)
        if not path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {pipeline_arg}",
                suggestion="Specify a different path:\n  relayci run --pipeline .circleci/config.yml",
            )
            sys.exit(1)
        return path

    found = find_pipeline_files()
    if not found:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline definition.",
            details=["Looked for:", *[f"  {n}" for n in DEFAULT_PIPELINES], "  *_workflow.py"],
            suggestion="Specify one explicitly:\n  relayci run --pipeline my_pipeline.yml",
        )
        sys.exit(1)
    if len(found) > 1:
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple pipeline files. Please specify which one to use:",
            details=[str(f) for f in found],
            suggestion=f"relayci run --pipeline {found[0]}",
        )
        sys.exit(1)
    return found[0]


def _load_or_exit(ctx, pipeline: str | None, workflow: str | None):
    console = get_console()
    path = discover_pipeline(pipeline)
    try:
        return path, load_workflow(path, workflow)
    except ConfigError as e:
        console.print_error("Invalid pipeline", f"{path}: {e}")
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(2)


@click.group()
@click.option("--debug", is_flag=True, default=False, help="Show stack traces, full step output and debug logs")
@click.option("-v", "--verbose", is_flag=True, default=False, help="Log scheduler and cache activity")
@click.pass_context
def cli(ctx, debug, verbose):
    """relayci: DAG-driven CI pipeline runner with caching."""
    level = logging.DEBUG if debug else logging.INFO if verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--pipeline", default=None, help="Pipeline file (.yml/.yaml document or .py workflow)")
@click.option("--workflow", default=None, help="Workflow name inside the document (defaults to the first)")
@click.option("--workers", default=None, type=int, help="Number of parallel job slots")
@click.option("--cache-dir", default=None, help="Local cache directory")
@click.option("--cache-url", default=None, help="Redis URL for a shared cache (overrides --cache-dir)")
@click.option("--work-dir", default=None, help="Where isolated job directories are created")
@click.option("--fail-fast/--no-fail-fast", default=None, help="Stop dispatching new jobs after the first failure")
@click.option("--keep-workdirs", is_flag=True, default=False, help="Keep job directories after the run")
@click.option("--junit", "junit_path", default=None, type=click.Path(dir_okay=False), help="Write a JUnit XML report")
@click.option("--archive", "archive_url", default=None, help="SQLAlchemy URL to archive the final run snapshot")
@click.pass_context
def run(ctx, pipeline, workflow, workers, cache_dir, cache_url, work_dir, fail_fast, keep_workdirs, junit_path, archive_url):
    """Run a pipeline locally."""
    console = get_console()
    path, wf = _load_or_exit(ctx, pipeline, workflow)

    settings = Settings.from_env(
        workers=workers,
        cache_dir=Path(cache_dir) if cache_dir else None,
        cache_url=cache_url,
        work_dir=Path(work_dir) if work_dir else None,
        fail_fast=fail_fast,
        keep_workdirs=keep_workdirs or None,
        archive_url=archive_url,
    )
    scheduler = Scheduler(settings)
    collector = ReportCollector().attach(scheduler)

    def on_job(event: JobEvent) -> None:
        job = event.job
        console.print_job_finished(job.name, job.state, job.reason.value, job.detail)

    scheduler.subscribe(on_job)
    if settings.archive_url:
        scheduler.subscribe_runs(RunArchive(settings.archive_url).save)

    handle = scheduler.submit(wf)
    console.print_run_started(handle.id, f"{path.name}:{wf.name}", len(wf.jobs), scheduler.max_workers)

    try:
        snapshot = scheduler.wait(handle)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user, cancelling...")
        scheduler.cancel(handle)
        snapshot = scheduler.wait(handle)
        console.print_results(snapshot)
        sys.exit(130)
    finally:
        scheduler.shutdown(wait=False)

    console.print_failure_output(snapshot)
    console.print_results(snapshot)

    if junit_path:
        Path(junit_path).write_bytes(export_junit(snapshot, collector))
        console.print_info(f"JUnit report written to {junit_path}")

    if snapshot.status != "succeeded":
        sys.exit(1)


@cli.command()
@click.option("--pipeline", default=None, help="Pipeline file")
@click.option("--workflow", default=None, help="Workflow name inside the document")
@click.pass_context
def plan(ctx, pipeline, workflow):
    """Print the execution order and parallel stages."""
    console = get_console()
    _path, wf = _load_or_exit(ctx, pipeline, workflow)
    console.print_header("ORDER")
    console.print_lines(f"  {i}. {name}" for i, name in enumerate(dag.resolve(wf.jobs), start=1))
    console.print_plan(dag.levels(wf.jobs))


@cli.command()
@click.option("--pipeline", default=None, help="Pipeline file")
@click.option("--workflow", default=None, help="Workflow name inside the document")
@click.pass_context
def validate(ctx, pipeline, workflow):
    """Check a pipeline definition without running it."""
    path, wf = _load_or_exit(ctx, pipeline, workflow)
    get_console().print_info(f"{path}: workflow '{wf.name}' with {len(wf.jobs)} job(s) is valid")


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, type=int, show_default=True)
@click.option("--base-dir", default=".", show_default=True, help="Directory pipeline paths are resolved against")
@click.option("--archive", "archive_url", default=None, help="SQLAlchemy URL to archive finished runs")
def serve(host, port, base_dir, archive_url):
    """Serve the HTTP control API."""
    import uvicorn

    from relayci.api import create_app

    settings = Settings.from_env(archive_url=archive_url, source_dir=Path(base_dir))
    scheduler = Scheduler(settings)
    archive = RunArchive(settings.archive_url) if settings.archive_url else None
    if archive is not None:
        scheduler.subscribe_runs(archive.save)

    app = create_app(scheduler, archive=archive, base_dir=base_dir)
    uvicorn.run(app, host=host, port=port, log_config=None)


@cli.group()
def cache():
    """Cache maintenance."""


@cache.command("prune")
@click.argument("prefix")
@click.option("--keep", default=3, show_default=True, type=int, help="Entries to keep per prefix")
@click.option("--cache-dir", default=None, help="Local cache directory")
@click.option("--cache-url", default=None, help="Redis URL of a shared cache")
def cache_prune(prefix, keep, cache_dir, cache_url):
    """Delete all but the newest KEEP entries whose key starts with PREFIX."""
    settings = Settings.from_env(cache_dir=Path(cache_dir) if cache_dir else None, cache_url=cache_url)
    store = CacheStore(backend_from_settings(settings.cache_dir, settings.cache_url))
    removed = store.prune(prefix, keep=keep)
    console = get_console()
    console.print_info(f"Removed {len(removed)} cache entr{'y' if len(removed) == 1 else 'ies'}")
    for key in removed:
        console.print_info(f"  {key}")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
