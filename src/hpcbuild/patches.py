# patches.py
from __future__ import annotations

import re
from fnmatch import fnmatchcase
from pathlib import Path

from .errors import PatchError
from .model import Environment, Patch

APPLIED = "applied"
ALREADY_APPLIED = "already-applied"
NOT_APPLICABLE = "not-applicable"
NOT_FOUND = "not-found"


def patch_applies(patch: Patch, env: Environment) -> bool:
    for name, expected in patch.when.items():
        value = env.lookup(name)
        if value is None or not fnmatchcase(value, expected):
            return False
    return True


def _has_line(text: str, line: str) -> bool:
    wanted = line.strip()
    return any(existing.strip() == wanted for existing in text.splitlines())


def apply_patch(patch: Patch, workdir: Path, env: Environment, *, stage: str = "") -> str:
    """
    Apply one declarative patch inside workdir.

    Returns one of APPLIED, ALREADY_APPLIED, NOT_APPLICABLE, or NOT_FOUND
    (optional patch whose pattern matched nothing). Raises PatchError when a
    required patch cannot be applied or verified.
    """
    if not patch_applies(patch, env):
        return NOT_APPLICABLE

    target = workdir / env.expand(patch.path, stage=stage)
    if not target.is_file():
        if patch.optional:
            return NOT_FOUND
        raise PatchError(
            stage=stage,
            message=f"patch '{patch.name}': file not found: {target}",
        )

    replacement = env.expand(patch.replacement, stage=stage)
    expect = env.expand(patch.expect, stage=stage) if patch.expect is not None else replacement

    text = target.read_text(encoding="utf-8", errors="surrogateescape")
    if _has_line(text, expect):
        return ALREADY_APPLIED

    new_text, count = re.subn(patch.pattern, lambda _m: replacement, text, flags=re.MULTILINE)
    if count == 0:
        if patch.optional:
            return NOT_FOUND
        raise PatchError(
            stage=stage,
            message=f"patch '{patch.name}': pattern not found in {target.name}",
            details={"pattern": patch.pattern},
        )

    if not _has_line(new_text, expect):
        raise PatchError(
            stage=stage,
            message=f"patch '{patch.name}': expected line missing after patching {target.name}",
            details={"expect": expect},
        )

    target.write_text(new_text, encoding="utf-8", errors="surrogateescape")
    return APPLIED
