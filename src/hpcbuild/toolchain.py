# toolchain.py
from __future__ import annotations

import os
import shlex
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Mapping, Sequence

from .errors import PreconditionError
from .model import Environment, Pipeline, Stage
from .ui.console import Console, get_console

TOOL_HINTS = {
    "make": "Install GNU make or load a build-essentials module.",
    "tar": "Install tar or fix PATH.",
    "git": "Install Git or fix PATH.",
    "icc": "Load the Intel compiler module (module load ...parallel_studio_xe...).",
    "ifort": "Load the Intel compiler module (module load ...parallel_studio_xe...).",
    "mpiicc": "Source the Intel MPI environment (mpivars.sh).",
    "mpiifort": "Source the Intel MPI environment (mpivars.sh).",
    "gcc": "Install GCC or load a compiler module.",
    "gfortran": "Install gfortran or load a compiler module.",
    "mpicc": "Load an MPI module (e.g. openmpi).",
    "mpif90": "Load an MPI module (e.g. openmpi).",
    "bash": "Install bash or fix PATH.",
}


# ---------------------------------------------------------------------
# Preconditions
# ---------------------------------------------------------------------

def check_tools(stage: Stage, env: Environment) -> None:
    path = env.lookup("PATH") or ""
    for tool in stage.requires:
        tool = env.expand(tool, stage=stage.name)
        if shutil.which(tool, path=path) is None:
            raise PreconditionError(
                stage=stage.name,
                message=f"{tool} is not available",
                details={"tool": tool, "hint": TOOL_HINTS.get(tool, f"Install {tool} or fix PATH.")},
            )


def check_paths(stage: Stage, env: Environment) -> None:
    src_dir = Path(env.expand("${SRC_DIR}", stage=stage.name))
    for raw in stage.requires_paths:
        p = src_dir / env.expand(raw, stage=stage.name)
        if not p.exists():
            raise PreconditionError(
                stage=stage.name,
                message=f"required path not found: {p}",
            )


# ---------------------------------------------------------------------
# Environment capture (module load / source script)
# ---------------------------------------------------------------------

def _parse_env0(blob: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for entry in blob.split("\0"):
        if "=" in entry:
            k, v = entry.split("=", 1)
            out[k] = v
    return out


def capture_environment(
    lines: Sequence[str],
    *,
    base: Mapping[str, str] | None = None,
    what: str = "environment setup",
) -> Dict[str, str]:
    """
    Run shell lines in bash and return the variables they set or changed.

    Used for `module load` and `source mpivars.sh`, which only work by
    mutating the calling shell.
    """
    base_env = dict(os.environ if base is None else base)
    # each line must succeed; a sourced script only reports its last status
    script = " && ".join(list(lines) + ["env -0"])
    try:
        proc = subprocess.run(
            ["bash", "-c", script],
            env=base_env,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError as e:
        raise PreconditionError(stage="", message="bash is not available", details={"hint": TOOL_HINTS["bash"]}) from e

    if proc.returncode != 0:
        raise PreconditionError(
            stage="",
            message=f"{what} failed (exit={proc.returncode})",
            details={"stderr": proc.stderr.strip()[-2000:]},
        )

    after = _parse_env0(proc.stdout)
    # bash bookkeeping that is not part of the user's environment
    for noise in ("_", "SHLVL", "PWD", "OLDPWD"):
        after.pop(noise, None)
    return {k: v for k, v in after.items() if base_env.get(k) != v}


def load_modules(modules: Sequence[str], base: Mapping[str, str] | None = None) -> Dict[str, str]:
    if not modules:
        return {}
    # `module` is a shell function defined by the login profile
    lines = ["source /etc/profile >/dev/null 2>&1 || true", "module purge"]
    lines += [f"module load {shlex.quote(m)}" for m in modules]
    return capture_environment(lines, base=base, what=f"module load {' '.join(modules)}")


def source_script(path: str | Path, base: Mapping[str, str] | None = None) -> Dict[str, str]:
    p = Path(path).expanduser()
    if not p.is_file():
        raise PreconditionError(stage="", message=f"environment file not found: {p}")
    # scripts like mpivars.sh reference unset variables; never run them under `set -u`
    return capture_environment(
        [f"source {shlex.quote(str(p))} >/dev/null"],
        base=base,
        what=f"source {p}",
    )


# ---------------------------------------------------------------------
# Compiler vendor checks (warnings only)
# ---------------------------------------------------------------------

def check_vendors(env: Environment, checks: Mapping[str, str]) -> List[str]:
    """
    For each VAR -> vendor, run `$VAR --version` and warn when the output does
    not mention the vendor. Never raises.
    """
    warnings: List[str] = []
    proc_env = env.to_process_env()
    for var, vendor in checks.items():
        tool = env.lookup(var)
        if not tool:
            warnings.append(f"{var} is not set; cannot check for a {vendor} compiler")
            continue
        try:
            proc = subprocess.run(
                [tool, "--version"],
                env=proc_env,
                capture_output=True,
                text=True,
            )
            text = (proc.stdout or "") + (proc.stderr or "")
        except OSError:
            warnings.append(f"{var} ({tool}) could not be executed")
            continue
        if vendor.lower() not in text.lower():
            warnings.append(f"{var} ({tool}) does not appear to be a {vendor} compiler")
    return warnings


# ---------------------------------------------------------------------
# Initial environment
# ---------------------------------------------------------------------

def prepare_environment(
    pipeline: Pipeline,
    *,
    prefix: str | Path,
    src_dir: str | Path | None = None,
    log_dir: str | Path | None = None,
    jobs: int | None = None,
    console: Console | None = None,
    check_compilers: bool = True,
) -> Environment:
    """
    Build the Environment the first stage sees:
      PREFIX/SRC_DIR/LOG_DIR/JOBS, captured module + script variables,
      pipeline.env (in order, each may reference earlier ones), then
      path-list prepends.
    """
    console = console or get_console()

    prefix_p = Path(prefix).expanduser().resolve()
    src_p = Path(src_dir).expanduser().resolve() if src_dir else prefix_p / "src"
    log_p = Path(log_dir).expanduser().resolve() if log_dir else prefix_p / "logs"
    n_jobs = jobs if jobs and jobs > 0 else (os.cpu_count() or 1)

    env = Environment({
        "PREFIX": str(prefix_p),
        "SRC_DIR": str(src_p),
        "LOG_DIR": str(log_p),
        "JOBS": str(n_jobs),
    })

    if pipeline.modules:
        console.print_info(f"Loading modules: {', '.join(pipeline.modules)}")
        env = env.updated(load_modules(pipeline.modules))

    for script in pipeline.env_scripts:
        script = env.expand(script)
        console.print_info(f"Sourcing: {script}")
        env = env.updated(source_script(script, base=env.to_process_env()))

    for name, value in pipeline.env.items():
        env = env.updated({name: env.expand(value)})

    for name, entries in pipeline.prepend.items():
        env = env.prepend_path(name, *[env.expand(e) for e in entries])

    for d in (prefix_p, src_p, log_p):
        d.mkdir(parents=True, exist_ok=True)

    if check_compilers and pipeline.vendor_checks:
        for warning in check_vendors(env, pipeline.vendor_checks):
            console.print_warning(warning)

    return env
