# cli.py
from __future__ import annotations

import json
import shlex
import sys
from pathlib import Path

import click

from hpcbuild import settings
from hpcbuild.errors import HPCBuildError
from hpcbuild.model import Environment, Pipeline
from hpcbuild.runner import load_pipeline, plan_pipeline, resolve_exports, run_pipeline
from hpcbuild.toolchain import prepare_environment
from hpcbuild.ui.console import Console, get_console, set_console


def find_pipeline_files() -> list[Path]:
    """
    Find all pipeline files in the current directory.

    Returns:
        List of Path objects for *_pipeline.py / *_pipeline.toml files
    """
    current_dir = Path(".")
    files = list(current_dir.glob("*_pipeline.py")) + list(current_dir.glob("*_pipeline.toml"))
    return sorted(files)


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    Discover pipeline file from argument or default.

    Raises:
        SystemExit: If the pipeline cannot be found or several candidates exist
    """
    console = get_console()

    if pipeline_arg:
        path = Path(pipeline_arg)
        if not path.exists() and path.suffix not in (".py", ".toml"):
            path = Path(str(path) + ".py")
        if not path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {pipeline_arg}",
                suggestion="Create a pipeline file or specify a different path:\n  hpcbuild run --pipeline my_pipeline.py",
            )
            sys.exit(1)
        return path

    files = find_pipeline_files()

    if len(files) == 0:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline files.",
            details=["Looked for:", "  *_pipeline.py", "  *_pipeline.toml"],
            suggestion="Create a pipeline file (e.g. croco_pipeline.py) or specify one:\n  hpcbuild run --pipeline my_pipeline.py",
        )
        sys.exit(1)

    if len(files) > 1:
        file_list = "\n".join(f"  {f}" for f in files)
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple pipeline files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a pipeline explicitly:\n  hpcbuild run --pipeline croco_pipeline.py",
        )
        sys.exit(1)

    return files[0]


def _pipeline_options(fn):
    fn = click.option(
        "--jobs",
        "-j",
        envvar="HPCBUILD_JOBS",
        show_envvar=True,
        default=None,
        type=click.IntRange(min=1),
        help="Parallel make jobs (JOBS, defaults to the CPU count)",
    )(fn)
    fn = click.option("--log-dir", default=settings.LOG_DIR, help="Log directory (defaults to PREFIX/logs)")(fn)
    fn = click.option("--src-dir", default=settings.SRC_DIR, help="Source directory (defaults to PREFIX/src)")(fn)
    fn = click.option("--prefix", default=settings.PREFIX, show_default=True, help="Install prefix")(fn)
    fn = click.option(
        "--pipeline",
        "pipeline_path",
        default=None,
        help="Pipeline file (.py or .toml; defaults to the single *_pipeline file present)",
    )(fn)
    return fn


def _load(ctx, pipeline_path, prefix, src_dir, log_dir, jobs, *, check_compilers: bool) -> tuple[Pipeline, Environment]:
    console = get_console()
    path = discover_pipeline(pipeline_path)
    try:
        pipeline = load_pipeline(path)
        env = prepare_environment(
            pipeline,
            prefix=prefix,
            src_dir=src_dir,
            log_dir=log_dir,
            jobs=jobs,
            console=console,
            check_compilers=check_compilers,
        )
    except HPCBuildError as e:
        console.print_error("Environment setup failed", e.message, details=[f"{k}={v}" for k, v in e.details.items()])
        sys.exit(e.exit_code)
    except Exception as e:
        console.print_error(
            "Failed to load pipeline",
            f"Could not load pipeline from {path}",
            details=[str(e)],
        )
        if ctx.obj.get("debug", False):
            import traceback
            traceback.print_exc()
        sys.exit(1)
    return pipeline, env


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and command output tails)",
)
@click.pass_context
def cli(ctx, debug):
    """hpcbuild: idempotent, fail-fast dependency build pipeline."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@_pipeline_options
@click.option("--force", is_flag=True, default=False, help="Rebuild every stage and allow destructive cleans")
@click.option("--interactive", is_flag=True, default=False, help="Ask before destructive cleans instead of declining")
@click.pass_context
def run(ctx, pipeline_path, prefix, src_dir, log_dir, jobs, force, interactive):
    """Run a build pipeline."""
    console = get_console()
    pipeline, env = _load(ctx, pipeline_path, prefix, src_dir, log_dir, jobs, check_compilers=True)

    confirm = (lambda prompt: click.confirm(prompt, default=False)) if interactive else None

    try:
        console.print_run_started(
            pipeline=pipeline.name,
            stage_count=len(pipeline.stages),
            prefix=env["PREFIX"],
        )
        result = run_pipeline(pipeline.stages, env, force=force, confirm=confirm, console=console)
        console.print_results(result)
        if not result.ok:
            sys.exit(result.exit_code)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except HPCBuildError as e:
        console.print_exception(e)
        sys.exit(e.exit_code)
    except ValueError as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@_pipeline_options
@click.pass_context
def plan(ctx, pipeline_path, prefix, src_dir, log_dir, jobs):
    """Show which stages would be skipped or built."""
    console = get_console()
    pipeline, env = _load(ctx, pipeline_path, prefix, src_dir, log_dir, jobs, check_compilers=False)
    try:
        console.print_plan(plan_pipeline(pipeline.stages, env))
    except (HPCBuildError, ValueError) as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command("env")
@_pipeline_options
@click.option("--format", "fmt", type=click.Choice(["sh", "json"]), default="sh", show_default=True)
@click.pass_context
def env_cmd(ctx, pipeline_path, prefix, src_dir, log_dir, jobs, fmt):
    """Print the installed artifact path and environment needed to run it (for job scripts)."""
    console = get_console()
    pipeline, env = _load(ctx, pipeline_path, prefix, src_dir, log_dir, jobs, check_compilers=False)
    try:
        env = resolve_exports(pipeline.stages, env)
    except HPCBuildError as e:
        console.print_exception(e)
        sys.exit(e.exit_code)

    artifact = str(Path(env["PREFIX"]) / pipeline.artifact) if pipeline.artifact else None
    if artifact and not Path(artifact).exists():
        console.print_warning(f"artifact not built yet: {artifact}")

    if fmt == "json":
        click.echo(json.dumps({"artifact": artifact, "env": env.as_dict()}, indent=2, sort_keys=True))
        return

    if artifact:
        click.echo(f"export HPCBUILD_ARTIFACT={shlex.quote(artifact)}")
    for line in env.exports():
        click.echo(line)


if __name__ == "__main__":
    cli()
