# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import ClassVar, Dict, Optional


@dataclass(eq=False)
class HPCBuildError(Exception):
    """
    Structured build error with enough context for:
      - clean CLI output
      - the append-only build log
      - debugging without full tracebacks
    """
    stage: str
    message: str
    details: Dict[str, object] = field(default_factory=dict)

    kind: ClassVar[str] = "error"

    @property
    def exit_code(self) -> int:
        return 1

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.stage:
            lines.append(f"stage={self.stage}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass(eq=False)
class FetchError(HPCBuildError):
    """Download or clone of a stage source failed."""
    kind: ClassVar[str] = "fetch_failed"


@dataclass(eq=False)
class ExtractError(HPCBuildError):
    """Archive is corrupt, unrecognised, or did not produce the expected directory."""
    kind: ClassVar[str] = "extract_failed"


@dataclass(eq=False)
class BuildError(HPCBuildError):
    """A configure/compile/install command exited non-zero."""
    command: str = ""
    returncode: int = 1
    log_path: Optional[str] = None
    output: str = ""

    kind: ClassVar[str] = "build_failed"

    @property
    def exit_code(self) -> int:
        return self.returncode if self.returncode > 0 else 1

    def __str__(self) -> str:
        lines = [super().__str__()]
        if self.command:
            lines.append(f"command={self.command}")
            lines.append(f"exit={self.returncode}")
        if self.log_path:
            lines.append(f"log={self.log_path}")
        return "\n".join(lines)


@dataclass(eq=False)
class PatchError(BuildError):
    kind: ClassVar[str] = "patch_failed"


@dataclass(eq=False)
class ConfirmationDeclined(HPCBuildError):
    """Destructive action was not approved; never treated as a skip."""
    kind: ClassVar[str] = "confirmation_declined"


@dataclass(eq=False)
class PreconditionError(HPCBuildError):
    """Missing tool, module, variable or directory, raised before any side effect."""
    kind: ClassVar[str] = "precondition_failed"
