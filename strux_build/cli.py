"""Thin CLI wrapper for strux_build.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from strux_build import __version__
from strux_build.config import Settings, get_settings, print_settings_json
from strux_build.types import BuildContext

app = typer.Typer(
    name="strux",
    help="Strux - build kiosk Linux images with an incremental build cache",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

# Exit status of `cache check --exit-code` when the step must rebuild
REBUILD_EXIT_CODE = 10

BoardOption = Annotated[
    str | None,
    typer.Option("--board", "-b", help="Board (BSP) name; defaults to STRUX_BOARD"),
]
JsonOption = Annotated[
    bool,
    typer.Option("--json", help="Output as JSON"),
]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"strux-build version {__version__}")
        raise typer.Exit()


def configure_logging(level: str) -> None:
    """Route strux_build log records through rich on stderr."""
    package_logger = logging.getLogger("strux_build")
    package_logger.setLevel(level)
    if not package_logger.handlers:
        package_logger.addHandler(RichHandler(console=err_console, show_path=False))


def print_json(text: str) -> None:
    """Print JSON unwrapped and without markup so it stays parseable."""
    console.print(text, soft_wrap=True, markup=False, highlight=False)


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Show debug logs (why steps rebuild)"),
    ] = False,
) -> None:
    """Strux - build kiosk Linux images with an incremental build cache."""
    settings = get_settings()
    configure_logging("DEBUG" if verbose else settings.log_level)


def _fail(message: str) -> typer.Exit:
    console.print(f"[red]{escape(message)}[/red]")
    return typer.Exit(code=1)


def _resolve_context(
    settings: Settings,
    board: str | None,
    clean: bool = False,
    force: list[str] | None = None,
) -> tuple[BuildContext, bool]:
    """Merge settings, strux.yaml and CLI flags into a build context.

    Returns:
        Tuple of (context, cache_enabled).
    """
    from strux_build.boards.io import BoardConfigError, load_cache_config

    try:
        cache_config = load_cache_config(settings.project_path)
        ctx = settings.build_context(
            board=board,
            clean=clean,
            force_rebuild=[*cache_config.force_rebuild, *(force or [])],
            ignore_patterns=cache_config.ignore_patterns,
        )
    except (BoardConfigError, ValueError) as e:
        raise _fail(str(e)) from None

    return ctx, settings.cache_enabled and cache_config.enabled


def _parse_step(step: str):
    from strux_build.types import BuildStep

    try:
        return BuildStep(step)
    except ValueError:
        valid = ", ".join(s.value for s in BuildStep)
        raise _fail(f"Unknown build step: {step} (valid: {valid})") from None


@app.command()
def config(
    json_output: JsonOption = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        print_json(print_settings_json(settings))
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Project path:        {settings.project_path}")
    console.print(f"  Board:               {settings.board or '(not set)'}")
    console.print()
    console.print("[bold]Build cache:[/bold]")
    console.print(f"  Enabled:             {settings.cache_enabled}")
    console.print(f"  Force rebuild:       {', '.join(settings.force_rebuild) or '-'}")
    console.print(f"  Ignore patterns:     {', '.join(settings.ignore_patterns) or '-'}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Log level:           {settings.log_level}")
    console.print(f"  Container image:     {settings.container_image}")
    console.print()
    console.print("[bold]Timeouts (seconds):[/bold]")
    console.print(f"  Script timeout:      {settings.script_timeout}")
    console.print(f"  Lock timeout:        {settings.lock_timeout}")


@app.command()
def prepare(
    board: BoardOption = None,
) -> None:
    """Build the builder image if it is missing or its recipe changed."""
    from strux_build.builds.pipeline import BuildPipeline
    from strux_build.builds.runner import (
        ScriptExecutionError,
        build_container_image,
        container_image_exists,
    )
    from strux_build.cache.assets import DOCKERFILE_ASSET, get_asset_registry
    from strux_build.cache.manifest import CacheStore

    settings = get_settings()
    ctx, cache_enabled = _resolve_context(settings, board)
    registry = get_asset_registry()
    dockerfile = b"\n".join(registry.content(DOCKERFILE_ASSET) or ())
    image = settings.container_image

    try:
        with CacheStore(ctx.project_root).lock(ctx.target, timeout=settings.lock_timeout):
            pipeline = BuildPipeline.open(ctx, cache_enabled=cache_enabled, registry=registry)
            rebuilt = pipeline.prepare_environment(
                lambda: container_image_exists(image),
                lambda: build_container_image(
                    image,
                    dockerfile,
                    ctx.shared_cache_dir / "builder",
                    timeout=settings.script_timeout,
                ),
            )
    except (ScriptExecutionError, TimeoutError) as e:
        raise _fail(str(e)) from None

    if rebuilt:
        console.print(f"[green]Built builder image {image}[/green]")
    else:
        console.print(f"[green]Builder image {image} is up to date[/green]")


@app.command()
def build(
    board: BoardOption = None,
    clean: Annotated[
        bool,
        typer.Option("--clean", help="Delete the board cache and rebuild everything"),
    ] = False,
    force: Annotated[
        list[str] | None,
        typer.Option("--force", "-f", help="Force a step to rebuild (can be repeated)"),
    ] = None,
) -> None:
    """Build the board image, skipping steps whose inputs did not change."""
    from strux_build.boards.io import BoardConfigError, load_board, scripts_for_stage
    from strux_build.builds.pipeline import BuildPipeline
    from strux_build.builds.runner import (
        ScriptExecutionError,
        build_container_image,
        container_image_exists,
    )
    from strux_build.builds.steps import copy_starter_artifacts, run_step_script, write_build_info
    from strux_build.cache.assets import DOCKERFILE_ASSET, get_asset_registry
    from strux_build.cache.manifest import CacheStore

    for step in force or []:
        _parse_step(step)

    settings = get_settings()
    ctx, cache_enabled = _resolve_context(settings, board, clean=clean, force=force)
    registry = get_asset_registry()
    dockerfile = b"\n".join(registry.content(DOCKERFILE_ASSET) or ())
    image = settings.container_image
    store = CacheStore(ctx.project_root)

    def run_step(step) -> None:
        run_step_script(ctx, step, image, timeout=settings.script_timeout)

    try:
        board_config = load_board(ctx.project_root, ctx.target)
        with store.lock(ctx.target, timeout=settings.lock_timeout):
            if clean and store.clear(ctx.target):
                console.print(f"[yellow]Cleared cache for {ctx.target}[/yellow]")

            copy_starter_artifacts(ctx)
            pipeline = BuildPipeline.open(ctx, cache_enabled=cache_enabled, registry=registry)
            pipeline.prepare_environment(
                lambda: container_image_exists(image),
                lambda: build_container_image(
                    image,
                    dockerfile,
                    ctx.shared_cache_dir / "builder",
                    timeout=settings.script_timeout,
                ),
            )
            report = pipeline.build(
                run_step,
                lambda stage: scripts_for_stage(board_config, stage),
                lambda stage: _script_executor(ctx, settings, stage),
            )
            write_build_info(ctx)
    except (BoardConfigError, ScriptExecutionError, TimeoutError) as e:
        raise _fail(str(e)) from None

    for outcome in report.steps:
        if outcome.ran:
            reason = outcome.decision.reason
            console.print(f"  [yellow]built[/yellow]  {outcome.step.value}: {escape(reason)}")
        else:
            console.print(f"  [green]cached[/green] {outcome.step.value}")
    console.print(
        f"[green]Build completed for {ctx.target}: {len(report.steps_run)} steps rebuilt, "
        f"{report.scripts_run} scripts run[/green]"
    )


cache_app = typer.Typer(help="Inspect and update the build cache")
app.add_typer(cache_app, name="cache")


@cache_app.command("status")
def cache_status(
    board: BoardOption = None,
    json_output: JsonOption = False,
) -> None:
    """Show what the board's manifest records."""
    from strux_build.cache.manifest import CacheStore

    settings = get_settings()
    ctx, _ = _resolve_context(settings, board)
    store = CacheStore(ctx.project_root)
    manifest = store.load(ctx.target)

    if json_output:
        print_json(manifest.model_dump_json(indent=2))
        return

    console.print(f"[bold]Build cache for {ctx.target}:[/bold]")
    console.print(f"  Manifest:            {store.manifest_path(ctx.target)}")
    console.print(f"  Environment hash:    {manifest.build_environment_hash or '-'}")
    console.print(f"  Tool version:        {manifest.tool_version or '-'}")
    console.print()
    if not manifest.steps and not manifest.scripts:
        console.print("[yellow]Nothing cached[/yellow]")
        return

    for name, entry in sorted(manifest.steps.items()):
        console.print(f"  [green]{name}[/green]")
        console.print(f"    Last run: {entry.last_run_at.isoformat()}")
        console.print(f"    Inputs:   {len(entry.dependency_hashes)}")
        console.print(f"    Outputs:  {', '.join(entry.artifacts)}")
    for key, script_entry in sorted(manifest.scripts.items()):
        console.print(f"  [cyan]{key}[/cyan]")
        console.print(f"    Last run: {script_entry.last_run_at.isoformat()}")


@cache_app.command("check")
def cache_check(
    step: Annotated[str, typer.Argument(help="Build step to check")],
    board: BoardOption = None,
    clean: Annotated[
        bool,
        typer.Option("--clean", help="Treat as a clean build"),
    ] = False,
    force: Annotated[
        list[str] | None,
        typer.Option("--force", "-f", help="Force a step to rebuild (can be repeated)"),
    ] = None,
    exit_code: Annotated[
        bool,
        typer.Option(
            "--exit-code",
            help=f"Exit with {REBUILD_EXIT_CODE} when the step must rebuild",
        ),
    ] = False,
    json_output: JsonOption = False,
) -> None:
    """Decide whether a build step must run."""
    from strux_build.builds.pipeline import BuildPipeline

    build_step = _parse_step(step)
    settings = get_settings()
    ctx, cache_enabled = _resolve_context(settings, board, clean=clean, force=force)
    decision = BuildPipeline.open(ctx, cache_enabled=cache_enabled).decide(build_step)

    if json_output:
        output = {"step": build_step.value, "rebuild": decision.rebuild, "reason": decision.reason}
        print_json(json.dumps(output, indent=2))
    elif decision.rebuild:
        console.print(f"[yellow]Rebuild {build_step.value}: {decision.reason}[/yellow]")
    else:
        console.print(f"[green]Cached: {build_step.value}[/green]")

    if exit_code and decision.rebuild:
        raise typer.Exit(code=REBUILD_EXIT_CODE)


@cache_app.command("plan")
def cache_plan(
    board: BoardOption = None,
    clean: Annotated[
        bool,
        typer.Option("--clean", help="Treat as a clean build"),
    ] = False,
    json_output: JsonOption = False,
) -> None:
    """Show the cache verdict of every step, in pipeline order."""
    from strux_build.builds.pipeline import BuildPipeline

    settings = get_settings()
    ctx, cache_enabled = _resolve_context(settings, board, clean=clean)
    plan = BuildPipeline.open(ctx, cache_enabled=cache_enabled).plan()

    if json_output:
        output = [
            {"step": step.value, "rebuild": decision.rebuild, "reason": decision.reason}
            for step, decision in plan
        ]
        print_json(json.dumps(output, indent=2))
        return

    console.print(f"[bold]Build plan for {ctx.target}:[/bold]")
    for step, decision in plan:
        if decision.rebuild:
            console.print(f"  [yellow]rebuild[/yellow] {step.value}: {decision.reason}")
        else:
            console.print(f"  [green]cached[/green]  {step.value}")


@cache_app.command("record")
def cache_record(
    step: Annotated[str, typer.Argument(help="Build step that completed successfully")],
    board: BoardOption = None,
) -> None:
    """Record a step as built with its current inputs."""
    from strux_build.builds.pipeline import BuildPipeline
    from strux_build.cache.manifest import CacheStore

    build_step = _parse_step(step)
    settings = get_settings()
    ctx, cache_enabled = _resolve_context(settings, board)
    if not cache_enabled:
        console.print("[yellow]Build cache disabled, nothing recorded[/yellow]")
        return

    try:
        with CacheStore(ctx.project_root).lock(ctx.target, timeout=settings.lock_timeout):
            entry = BuildPipeline.open(ctx).record_step(build_step)
    except TimeoutError as e:
        raise _fail(str(e)) from None

    inputs = len(entry.dependency_hashes) if entry else 0
    console.print(f"[green]Recorded {build_step.value} ({inputs} inputs)[/green]")


@cache_app.command("env")
def cache_env(
    board: BoardOption = None,
    rebuilt: Annotated[
        bool,
        typer.Option("--rebuilt", help="The builder image was rebuilt: drop step entries"),
    ] = False,
    record: Annotated[
        bool,
        typer.Option("--record", help="Record the current recipe without invalidating"),
    ] = False,
) -> None:
    """Compare the builder recipe with the one the cache was built in."""
    from strux_build.cache.assets import get_asset_registry
    from strux_build.cache.environment import BuildEnvironmentInvalidator
    from strux_build.cache.manifest import CacheStore

    settings = get_settings()
    ctx, _ = _resolve_context(settings, board)
    store = CacheStore(ctx.project_root)
    invalidator = BuildEnvironmentInvalidator(get_asset_registry(), __version__)

    try:
        with store.lock(ctx.target, timeout=settings.lock_timeout):
            manifest = store.load(ctx.target)
            stale = invalidator.should_rebuild_environment(manifest)
            console.print(f"  Recorded recipe: {manifest.build_environment_hash or '-'}")
            console.print(f"  Current recipe:  {invalidator.current_hash()}")

            if rebuilt or record:
                invalidator.sync(manifest, rebuilt, store, ctx.target)
                action = "invalidated all steps" if rebuilt else "recorded"
                console.print(f"[green]Build environment {action}[/green]")
            elif stale:
                console.print("[yellow]Builder image is out of date[/yellow]")
            else:
                console.print("[green]Builder image is up to date[/green]")
    except TimeoutError as e:
        raise _fail(str(e)) from None


@cache_app.command("clean")
def cache_clean(
    board: BoardOption = None,
) -> None:
    """Delete the board's cache directory and manifest."""
    from strux_build.cache.manifest import CacheStore

    settings = get_settings()
    ctx, _ = _resolve_context(settings, board)
    store = CacheStore(ctx.project_root)
    try:
        with store.lock(ctx.target, timeout=settings.lock_timeout):
            cleared = store.clear(ctx.target)
    except TimeoutError as e:
        raise _fail(str(e)) from None

    if cleared:
        console.print(f"[green]Cleared cache for {ctx.target}[/green]")
    else:
        console.print(f"[yellow]No cache for {ctx.target}[/yellow]")


scripts_app = typer.Typer(help="Run board lifecycle scripts")
app.add_typer(scripts_app, name="scripts")


def _stage_scripts(ctx: BuildContext, stage: str):
    from strux_build.boards.io import BoardConfigError, load_board, scripts_for_stage
    from strux_build.types import ScriptStage

    try:
        script_stage = ScriptStage(stage)
    except ValueError:
        valid = ", ".join(s.value for s in ScriptStage)
        raise _fail(f"Unknown stage: {stage} (valid: {valid})") from None

    try:
        board_config = load_board(ctx.project_root, ctx.target)
    except BoardConfigError as e:
        raise _fail(str(e)) from None

    return script_stage, scripts_for_stage(board_config, script_stage)


@scripts_app.command("plan")
def scripts_plan(
    stage: Annotated[str, typer.Argument(help="Pipeline stage (e.g. before_build)")],
    board: BoardOption = None,
    clean: Annotated[
        bool,
        typer.Option("--clean", help="Treat as a clean build"),
    ] = False,
) -> None:
    """Show which scripts of a stage would run."""
    from strux_build.cache.manifest import CacheStore
    from strux_build.cache.scripts import script_cache_key, should_skip_script

    settings = get_settings()
    ctx, cache_enabled = _resolve_context(settings, board, clean=clean)
    script_stage, scripts = _stage_scripts(ctx, stage)

    if not scripts:
        console.print(f"[yellow]No scripts for {script_stage.value}[/yellow]")
        return

    manifest = CacheStore(ctx.project_root).load(ctx.target)
    for script in scripts:
        key = script_cache_key(ctx.target, script_stage, script.location)
        if cache_enabled and should_skip_script(script, key, manifest, ctx):
            console.print(f"  [green]skip[/green] {script.display_name}")
        else:
            console.print(f"  [yellow]run[/yellow]  {script.display_name}")


def _script_executor(ctx: BuildContext, settings: Settings, script_stage):
    """Return a callable running one lifecycle script of a stage."""
    from strux_build.boards.schema import LifecycleScriptSchema
    from strux_build.builds.runner import ScriptExecutionError, compose_script_env, run_script
    from strux_build.cache.scripts import resolve_script_path

    env = compose_script_env(ctx, script_stage.value, __version__)

    def execute(script: LifecycleScriptSchema) -> None:
        script_path = resolve_script_path(script.location, ctx)
        result = run_script(
            script_path,
            ctx.project_root,
            ctx.cache_dir / "logs" / f"{script_stage.value}-{script_path.stem}.log",
            settings.container_image,
            env=env,
            timeout=settings.script_timeout,
        )
        if not result.success:
            raise ScriptExecutionError(
                f"Script {script.display_name} failed for stage {script_stage.value}. "
                f"See log: {result.log_path}",
                exit_code=result.exit_code,
            )

    return execute


@scripts_app.command("run")
def scripts_run(
    stage: Annotated[str, typer.Argument(help="Pipeline stage (e.g. before_build)")],
    board: BoardOption = None,
    clean: Annotated[
        bool,
        typer.Option("--clean", help="Treat as a clean build"),
    ] = False,
) -> None:
    """Run the scripts of a stage in the builder container."""
    from strux_build.builds.pipeline import BuildPipeline
    from strux_build.builds.runner import ScriptExecutionError
    from strux_build.cache.manifest import CacheStore

    settings = get_settings()
    ctx, cache_enabled = _resolve_context(settings, board, clean=clean)
    script_stage, scripts = _stage_scripts(ctx, stage)
    execute = _script_executor(ctx, settings, script_stage)

    try:
        with CacheStore(ctx.project_root).lock(ctx.target, timeout=settings.lock_timeout):
            pipeline = BuildPipeline.open(ctx, cache_enabled=cache_enabled)
            outcomes = pipeline.run_scripts(script_stage, scripts, execute)
    except (ScriptExecutionError, TimeoutError) as e:
        raise _fail(str(e)) from None

    ran = sum(1 for o in outcomes if not o.skipped)
    console.print(
        f"[green]{script_stage.value}: ran {ran}, skipped {len(outcomes) - ran}[/green]"
    )


if __name__ == "__main__":
    app()
