# model.py
from __future__ import annotations

import os
import re
import shlex
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Mapping, Optional

from .errors import HPCBuildError, PreconditionError


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a build stage."""
    name: str
    run: str
    cwd: str | None = None


@dataclass(frozen=True)
class Patch:
    """
    Declarative edit of a third-party file (usually a vendored build script).

    `pattern` is a multi-line regex; `replacement` is a literal template.
    `expect` is the line that must be present afterwards (defaults to the
    expanded replacement). `when` restricts the patch to matching env values
    (glob syntax), which is how compiler-specific workarounds are versioned.
    """
    name: str
    path: str
    pattern: str
    replacement: str
    expect: str | None = None
    when: Dict[str, str] = field(default_factory=dict)
    optional: bool = False


@dataclass(frozen=True)
class Stage:
    """
    One idempotent unit of the pipeline: fetch + extract + build/install for
    one dependency.

    Paths are templates:
      - expected_artifact_path is relative to ${SRC_DIR}
      - install_marker is relative to ${PREFIX}
      - workdir is relative to ${SRC_DIR} (defaults to expected_artifact_path)
    """
    name: str
    steps: List[Step] = field(default_factory=list)

    fetch_source: str | None = None
    expected_artifact_path: str | None = None
    archive: str | None = None

    install_marker: str | None = None
    marker_command: str | None = None

    workdir: str | None = None
    patches: List[Patch] = field(default_factory=list)
    exports: Dict[str, str] = field(default_factory=dict)

    # destructive: removed before building, only with explicit consent
    clean: List[str] = field(default_factory=list)

    requires: List[str] = field(default_factory=list)
    requires_paths: List[str] = field(default_factory=list)

    # convenience alias matching the build-orchestration vocabulary
    @property
    def build_commands(self) -> List[Step]:
        return self.steps


# ----------------------------------------------------------------------
# Environment
# ----------------------------------------------------------------------

_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


class Environment(Mapping[str, str]):
    """
    Immutable snapshot of the variables the orchestrator threads through
    stages. Every "mutation" returns a new Environment.
    """

    def __init__(self, values: Optional[Mapping[str, str]] = None):
        self._values: Dict[str, str] = {k: str(v) for k, v in (values or {}).items()}

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"Environment({self._values!r})"

    def updated(self, values: Mapping[str, str] | None = None, **kwargs: str) -> "Environment":
        merged = dict(self._values)
        merged.update({k: str(v) for k, v in (values or {}).items()})
        merged.update({k: str(v) for k, v in kwargs.items()})
        return Environment(merged)

    def prepend_path(self, name: str, *entries: str, sep: str = os.pathsep) -> "Environment":
        """Put entries in front of a path-list variable, dropping duplicates and empties."""
        current = self._values.get(name, os.environ.get(name, ""))
        parts: List[str] = []
        for p in list(entries) + current.split(sep):
            if p and p not in parts:
                parts.append(p)
        return self.updated({name: sep.join(parts)})

    def lookup(self, name: str) -> Optional[str]:
        if name in self._values:
            return self._values[name]
        return os.environ.get(name)

    def expand(self, template: str, *, stage: str = "") -> str:
        """
        Substitute ${NAME} and ${NAME:-default} (defaults cannot nest ${...}).
        Undefined names without a default raise PreconditionError. Other $
        forms are left for the shell.
        """
        def repl(m: re.Match) -> str:
            name, default = m.group(1), m.group(2)
            value = self.lookup(name)
            if value is None or (value == "" and default is not None):
                if default is not None:
                    return self.expand(default, stage=stage)
                raise PreconditionError(
                    stage=stage,
                    message=f"undefined variable ${{{name}}}",
                    details={"template": template},
                )
            return value

        return _VAR_RE.sub(repl, template)

    def to_process_env(self, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        env = dict(os.environ if base is None else base)
        env.update(self._values)
        return env

    def exports(self) -> List[str]:
        return [f"export {k}={shlex.quote(v)}" for k, v in self._values.items()]

    def as_dict(self) -> Dict[str, str]:
        return dict(self._values)


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------

class StageStatus(str, Enum):
    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class StageResult:
    name: str
    status: StageStatus
    reason: str = ""
    error: HPCBuildError | None = None
    duration: float = 0.0
    commands_run: int = 0

    @property
    def ok(self) -> bool:
        return self.status in (StageStatus.SKIPPED, StageStatus.SUCCEEDED)


@dataclass
class PipelineResult:
    results: List[StageResult]
    env: Environment
    error: HPCBuildError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and all(r.ok for r in self.results)

    @property
    def status(self) -> StageStatus:
        return StageStatus.SUCCEEDED if self.ok else StageStatus.FAILED

    @property
    def failed_stage(self) -> Optional[str]:
        for r in self.results:
            if r.status is StageStatus.FAILED:
                return r.name
        return None

    @property
    def exit_code(self) -> int:
        if self.ok:
            return 0
        return self.error.exit_code if self.error is not None else 1

    @property
    def commands_run(self) -> int:
        return sum(r.commands_run for r in self.results)

    def statuses(self) -> Dict[str, str]:
        return {r.name: r.status.value for r in self.results}


@dataclass
class Pipeline:
    """
    A loaded pipeline definition: stages plus what is needed to build the
    initial environment (modules, sourced scripts, base variables).
    """
    name: str
    stages: List[Stage]
    env: Dict[str, str] = field(default_factory=dict)
    prepend: Dict[str, List[str]] = field(default_factory=dict)
    modules: List[str] = field(default_factory=list)
    env_scripts: List[str] = field(default_factory=list)
    vendor_checks: Dict[str, str] = field(default_factory=dict)
    artifact: str | None = None
