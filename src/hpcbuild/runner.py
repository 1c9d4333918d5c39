# runner.py
from __future__ import annotations

import runpy
import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from .errors import BuildError, ConfirmationDeclined, HPCBuildError, PreconditionError
from .fetch import fetch_stage
from .model import Environment, Pipeline, PipelineResult, Stage, StageResult, StageStatus, Step
from .patches import ALREADY_APPLIED, APPLIED, NOT_FOUND, apply_patch
from .state import BuildLog, StampStore
from .toolchain import check_paths, check_tools
from .ui.console import Console, get_console

ConfirmFn = Callable[[str], bool]

OUTPUT_TAIL_CHARS = 4000


# ----------------------------------------------------------------------
# Pipeline loading (local file)
# ----------------------------------------------------------------------

def load_pipeline(path: str | Path) -> Pipeline:
    """
    Load a pipeline from a .py or .toml file.

    A .py file must define one of:
      - pipeline() -> Pipeline | List[Stage]
      - PIPELINE = Pipeline(...)
      - STAGES = [Stage, ...]
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise FileNotFoundError(f"Pipeline file not found: {p}")

    if p.suffix == ".toml":
        from .config import load_toml
        return load_toml(p)

    if p.suffix != ".py":
        raise ValueError(f"Pipeline must be a .py or .toml file, got: {p.name}")

    module_name = f"hpcbuild_pipeline_{p.stem}"
    globals_dict = runpy.run_path(str(p), run_name=module_name)

    obj = None
    if "pipeline" in globals_dict and callable(globals_dict["pipeline"]):
        try:
            obj = globals_dict["pipeline"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise TypeError(
                    "Your pipeline() is being called without arguments (name collision with the helper?). "
                    "Import the helper under another name: `from hpcbuild.dsl import pipeline as make_pipeline`."
                ) from e
            raise
    elif "PIPELINE" in globals_dict:
        obj = globals_dict["PIPELINE"]
    elif "STAGES" in globals_dict:
        obj = globals_dict["STAGES"]

    if isinstance(obj, list) and obj and all(isinstance(s, Stage) for s in obj):
        obj = Pipeline(name=p.stem, stages=obj)

    if not isinstance(obj, Pipeline):
        raise TypeError(
            "Pipeline file must return/define a Pipeline or a non-empty List[Stage]. "
            "Define pipeline() -> Pipeline, PIPELINE = Pipeline(...) or STAGES = [Stage, ...]."
        )
    return obj


# ----------------------------------------------------------------------
# Path helpers
# ----------------------------------------------------------------------

def _src_dir(env: Environment, stage: str = "") -> Path:
    return Path(env.expand("${SRC_DIR}", stage=stage))


def _prefix(env: Environment, stage: str = "") -> Path:
    return Path(env.expand("${PREFIX}", stage=stage))


def _log_dir(env: Environment) -> Path:
    log_dir = env.get("LOG_DIR")
    return Path(log_dir) if log_dir else _prefix(env) / "logs"


def stage_workdir(stage: Stage, env: Environment) -> Path:
    rel = stage.workdir or stage.expected_artifact_path or "."
    return _src_dir(env, stage.name) / env.expand(rel, stage=stage.name)


def _tail(path: Path, n: int = OUTPUT_TAIL_CHARS) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace")[-n:]
    except OSError:
        return ""


# ----------------------------------------------------------------------
# Idempotency check
# ----------------------------------------------------------------------

def _marker_satisfied(path: Path) -> bool:
    if path.is_file():
        return path.stat().st_size > 0
    return path.is_dir()


def check_built(stage: Stage, env: Environment, stamps: StampStore) -> Tuple[bool, str]:
    """Return (already_built, reason)."""
    if stage.install_marker:
        marker = _prefix(env, stage.name) / env.expand(stage.install_marker, stage=stage.name)
        if _marker_satisfied(marker):
            return True, f"install marker present: {stage.install_marker}"
        return False, f"install marker missing: {stage.install_marker}"

    if stage.marker_command:
        cmd = env.expand(stage.marker_command, stage=stage.name)
        proc = subprocess.run(
            cmd,
            shell=True,
            cwd=str(_prefix(env, stage.name)),
            env=env.to_process_env(),
            capture_output=True,
            text=True,
        )
        if proc.returncode == 0:
            return True, f"marker command succeeded: {cmd}"
        return False, f"marker command failed (exit={proc.returncode})"

    # fetch-only stage: the unpacked source is the whole result
    if not stage.steps and stage.expected_artifact_path:
        rel = env.expand(stage.expected_artifact_path, stage=stage.name)
        if (_src_dir(env, stage.name) / rel).exists():
            return True, f"artifact present: {rel}"
        return False, f"artifact missing: {rel}"

    if stamps.matches(stage):
        return True, "stamp up to date"
    return False, "no install marker or stamp"


def _stage_exports(stage: Stage, env: Environment) -> Environment:
    if not stage.exports:
        return env
    for name, value in stage.exports.items():
        env = env.updated({name: env.expand(value, stage=stage.name)})
    return env


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

def _run_step(stage: Stage, step: Step, workdir: Path, env: Environment, log_path: Path) -> None:
    cmd = env.expand(step.run, stage=stage.name)
    cwd = (workdir / env.expand(step.cwd, stage=stage.name)).resolve() if step.cwd else workdir
    if not cwd.exists():
        raise PreconditionError(
            stage=stage.name,
            message=f"step '{step.name}' cwd not found: {cwd}",
        )

    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("a", encoding="utf-8") as log:
        log.write(f"\n$ {cmd}\n")
        log.flush()
        proc = subprocess.run(
            cmd,
            shell=True,
            cwd=str(cwd),
            env=env.to_process_env(),
            stdout=log,
            stderr=subprocess.STDOUT,
        )

    if proc.returncode != 0:
        raise BuildError(
            stage=stage.name,
            message=f"step '{step.name}' failed (exit={proc.returncode})",
            command=cmd,
            returncode=proc.returncode,
            log_path=str(log_path),
            output=_tail(log_path),
        )


def _clean(stage: Stage, workdir: Path, force: bool, confirm: Optional[ConfirmFn], console: Console) -> None:
    targets: List[Path] = []
    for pattern in stage.clean:
        for p in sorted(workdir.glob(pattern)):
            if p not in targets:
                targets.append(p)
    if not targets:
        return

    prompt = f"Clean {len(targets)} existing build file(s) in {workdir} for stage '{stage.name}'?"
    approved = force or (confirm is not None and confirm(prompt))
    if not approved:
        raise ConfirmationDeclined(
            stage=stage.name,
            message="destructive clean of the existing build directory was not approved",
            details={"workdir": str(workdir), "hint": "re-run with --force (or --interactive) to allow it"},
        )

    console.print_info(f"  Cleaning {len(targets)} file(s) in {workdir}")
    for p in targets:
        if p.is_dir() and not p.is_symlink():
            shutil.rmtree(p)
        else:
            p.unlink(missing_ok=True)


def _build_stage(
    stage: Stage,
    env: Environment,
    *,
    force: bool,
    confirm: Optional[ConfirmFn],
    console: Console,
    build_log: BuildLog,
    ran: List[str],
) -> None:
    """Fetch, clean, patch and run steps. Appends each command issued to `ran`."""
    check_tools(stage, env)
    check_paths(stage, env)

    fetch_stage(stage, env, console)

    workdir = stage_workdir(stage, env)
    if not workdir.is_dir():
        raise PreconditionError(stage=stage.name, message=f"stage workdir not found: {workdir}")

    _clean(stage, workdir, force, confirm, console)

    for patch in stage.patches:
        outcome = apply_patch(patch, workdir, env, stage=stage.name)
        if outcome == APPLIED:
            console.print_info(f"  Patched: {patch.name}")
        elif outcome == ALREADY_APPLIED:
            console.print_info(f"  Patch already applied: {patch.name}")
        elif outcome == NOT_FOUND:
            console.print_warning(f"[{stage.name}] optional patch '{patch.name}' did not match; continuing")
        else:
            console.print_debug(f"[{stage.name}] patch '{patch.name}' not applicable")

    log_path = build_log.stage_log_path(stage.name)
    for step in stage.steps:
        console.print_step(step.name)
        ran.append(step.name)
        _run_step(stage, step, workdir, env, log_path)

    if stage.install_marker:
        marker = _prefix(env, stage.name) / env.expand(stage.install_marker, stage=stage.name)
        if not _marker_satisfied(marker):
            raise BuildError(
                stage=stage.name,
                message=f"expected install marker not found after build: {marker}",
                log_path=str(log_path),
                output=_tail(log_path),
            )


def _run_stage(
    stage: Stage,
    env: Environment,
    *,
    force: bool,
    confirm: Optional[ConfirmFn],
    console: Console,
    stamps: StampStore,
    build_log: BuildLog,
) -> Tuple[StageResult, Environment]:
    """
    Run one stage against an environment snapshot.
    Returns the result and the environment later stages should see.
    """
    start = time.monotonic()
    ran: List[str] = []

    try:
        if not force:
            built, reason = check_built(stage, env, stamps)
            if built:
                stamp = stamps.read(stage.name)
                if stamp and not stamps.matches(stage):
                    console.print_warning(
                        f"[{stage.name}] stage definition changed since it was built; use --force to rebuild"
                    )
                console.print_stage_skipped(stage.name, reason)
                return (
                    StageResult(name=stage.name, status=StageStatus.SKIPPED, reason=reason),
                    _stage_exports(stage, env),
                )

        console.print_stage_start(stage.name)
        # a rebuild that fails halfway must not leave the old stamp vouching for it
        stamps.clear(stage.name)
        _build_stage(
            stage, env, force=force, confirm=confirm, console=console, build_log=build_log, ran=ran
        )
        new_env = _stage_exports(stage, env)
        stamps.write(stage)
    except HPCBuildError as e:
        err = e
    except OSError as e:
        err = BuildError(stage=stage.name, message=str(e))
    else:
        duration = time.monotonic() - start
        console.print_success(stage.name, duration)
        return (
            StageResult(
                name=stage.name,
                status=StageStatus.SUCCEEDED,
                reason="built",
                duration=duration,
                commands_run=len(ran),
            ),
            new_env,
        )

    if not err.stage:
        err.stage = stage.name
    failed_cmd = isinstance(err, BuildError) and bool(err.command)
    console.print_failure(
        stage.name,
        str(err),
        exit_code=err.returncode if failed_cmd else None,
        hint=err.details.get("hint") or getattr(err, "log_path", None),
        output=getattr(err, "output", None),
    )
    return (
        StageResult(
            name=stage.name,
            status=StageStatus.FAILED,
            reason=err.message,
            error=err,
            duration=time.monotonic() - start,
            commands_run=len(ran),
        ),
        env,
    )


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def _validate(stages: Sequence[Stage], env: Environment) -> None:
    if not stages:
        raise ValueError("run_pipeline() needs at least one stage")
    names = [s.name for s in stages]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ValueError(f"Duplicate stage names found: {dupes}")
    missing = [k for k in ("PREFIX", "SRC_DIR") if k not in env]
    if missing:
        raise PreconditionError(stage="", message=f"environment is missing {', '.join(missing)}")


def run_pipeline(
    stages: Sequence[Stage],
    env: Environment,
    *,
    force: bool = False,
    confirm: Optional[ConfirmFn] = None,
    console: Console | None = None,
) -> PipelineResult:
    """
    Run stages strictly in declaration order.

    - already-built stages are skipped (install marker, marker command, or stamp)
    - each stage sees the environment produced by the stages before it
    - the first failing stage halts the pipeline; later stages never start
    - destructive cleans need force=True or confirm(prompt) -> True
    """
    console = console or get_console()
    _validate(stages, env)

    stamps = StampStore(_prefix(env))
    build_log = BuildLog(_log_dir(env))

    results: List[StageResult] = []
    for stage in stages:
        result, env = _run_stage(
            stage,
            env,
            force=force,
            confirm=confirm,
            console=console,
            stamps=stamps,
            build_log=build_log,
        )
        results.append(result)
        build_log.record(result)
        if result.status is StageStatus.FAILED:
            return PipelineResult(results=results, env=env, error=result.error)

    return PipelineResult(results=results, env=env)


@dataclass(frozen=True)
class PlanEntry:
    name: str
    built: bool
    reason: str


def plan_pipeline(stages: Sequence[Stage], env: Environment) -> List[PlanEntry]:
    """Report which stages would be skipped, without building anything."""
    _validate(stages, env)
    stamps = StampStore(_prefix(env))
    plan: List[PlanEntry] = []
    for stage in stages:
        built, reason = check_built(stage, env, stamps)
        plan.append(PlanEntry(name=stage.name, built=built, reason=reason))
        env = _stage_exports(stage, env)
    return plan


def resolve_exports(stages: Sequence[Stage], env: Environment) -> Environment:
    """Fold every stage's exports into env, as a full successful run would."""
    for stage in stages:
        env = _stage_exports(stage, env)
    return env
