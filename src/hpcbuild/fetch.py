# fetch.py
from __future__ import annotations

import http.client
import shutil
import subprocess
import tarfile
import tempfile
import urllib.error
import urllib.request
import zipfile
from pathlib import Path
from typing import Tuple
from urllib.parse import urlparse

from .errors import ExtractError, FetchError, PreconditionError
from .model import Environment, Stage
from .ui.console import Console, get_console

USER_AGENT = "hpcbuild"
CHUNK_SIZE = 1024 * 1024


# ---------------------------------------------------------------------
# Source classification
# ---------------------------------------------------------------------

def is_git_source(source: str) -> bool:
    return source.startswith("git+")


def split_git_source(source: str) -> tuple[str, str | None]:
    """'git+https://host/repo.git#v1.2' -> ('https://host/repo.git', 'v1.2')"""
    url = source[len("git+"):]
    ref = None
    if "#" in url:
        url, ref = url.split("#", 1)
    return url, (ref or None)


def archive_name(stage: Stage, source: str) -> str:
    if stage.archive:
        return stage.archive
    name = Path(urlparse(source).path).name
    if not name:
        raise PreconditionError(
            stage=stage.name,
            message=f"cannot derive an archive name from {source!r}",
            details={"hint": "set archive= on the stage"},
        )
    return name


# ---------------------------------------------------------------------
# Download
# ---------------------------------------------------------------------

def download(url: str, dest: Path, *, stage: str = "") -> Path:
    """
    Download url to dest. Writes to dest.part first, then renames, so an
    interrupted download never looks like a finished archive. A body shorter
    than the advertised Content-Length is a FetchError.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp = dest.with_name(dest.name + ".part")
    req = urllib.request.Request(url, headers={"User-Agent": USER_AGENT})
    try:
        with urllib.request.urlopen(req) as response, tmp.open("wb") as out:
            expected = response.headers.get("Content-Length")
            received = 0
            while True:
                chunk = response.read(CHUNK_SIZE)
                if not chunk:
                    break
                out.write(chunk)
                received += len(chunk)
        if expected and expected.isdigit() and received < int(expected):
            raise FetchError(
                stage=stage,
                message=f"download truncated: {url}",
                details={"received": received, "expected": int(expected)},
            )
        tmp.replace(dest)
    except ValueError as e:
        raise FetchError(stage=stage, message=f"invalid download URL: {url}", details={"reason": str(e)}) from e
    except http.client.HTTPException as e:
        raise FetchError(stage=stage, message=f"download failed: {url}", details={"reason": repr(e)}) from e
    except (urllib.error.URLError, OSError) as e:
        reason = getattr(e, "reason", None) or str(e)
        raise FetchError(stage=stage, message=f"download failed: {url}", details={"reason": reason}) from e
    finally:
        tmp.unlink(missing_ok=True)
    return dest


def resolve_archive(stage: Stage, source: str, src_dir: Path, console: Console) -> Tuple[Path, bool]:
    """
    Return (archive path, owned). The archive is downloaded into src_dir if
    absent; owned is True for archives living at the download location, which
    may be deleted when they turn out to be corrupt. Local archives named by
    the pipeline are never owned.
    """
    parsed = urlparse(source)
    if parsed.scheme in ("", "file") and not parsed.netloc:
        local = Path(parsed.path if parsed.scheme else source).expanduser()
        if not local.is_absolute():
            local = src_dir / local
        if local.exists():
            console.print_info(f"  Using local archive: {local}")
            return local, False
        if not parsed.scheme:
            raise FetchError(stage=stage.name, message=f"source archive not found: {local}")

    dest = src_dir / archive_name(stage, source)
    if dest.exists():
        console.print_info(f"  Using existing file: {dest.name}")
        return dest, True
    console.print_info(f"  Downloading: {source}")
    return download(source, dest, stage=stage.name), True


# ---------------------------------------------------------------------
# Extract
# ---------------------------------------------------------------------

def extract_archive(archive: Path, dest: Path, *, stage: str = "") -> None:
    dest.mkdir(parents=True, exist_ok=True)
    try:
        if tarfile.is_tarfile(archive):
            with tarfile.open(archive, errorlevel=2) as tar:
                if hasattr(tarfile, "data_filter"):
                    tar.extractall(path=dest, filter="data")
                else:
                    tar.extractall(path=dest)
        elif zipfile.is_zipfile(archive):
            with zipfile.ZipFile(archive) as zf:
                zf.extractall(path=dest)
        else:
            raise ExtractError(stage=stage, message=f"unrecognised archive format: {archive.name}")
    except (tarfile.TarError, zipfile.BadZipFile, OSError, EOFError) as e:
        raise ExtractError(
            stage=stage,
            message=f"extraction failed for file: {archive.name}",
            details={"reason": str(e)},
        ) from e


# ---------------------------------------------------------------------
# Git
# ---------------------------------------------------------------------

def _git(args: list[str], *, stage: str, cwd: Path | None = None) -> None:
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=str(cwd) if cwd else None,
            check=False,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError as e:
        raise PreconditionError(
            stage=stage,
            message="git command not found",
            details={"hint": "Install Git or fix PATH."},
        ) from e
    if result.returncode != 0:
        raise FetchError(
            stage=stage,
            message=f"git {args[0]} failed",
            details={"stderr": result.stderr.strip()[-2000:]},
        )


def clone(source: str, dest: Path, *, stage: str) -> None:
    url, ref = split_git_source(source)
    dest.parent.mkdir(parents=True, exist_ok=True)
    _git(["clone", url, str(dest)], stage=stage)
    if ref:
        _git(["checkout", ref], stage=stage, cwd=dest)


# ---------------------------------------------------------------------
# Stage entry point
# ---------------------------------------------------------------------

def fetch_stage(stage: Stage, env: Environment, console: Console | None = None) -> bool:
    """
    Make the stage's expected_artifact_path exist under ${SRC_DIR}.

    Returns False when the artifact was already present (nothing done),
    True when it was fetched/extracted by this call.
    """
    console = console or get_console()
    if not stage.fetch_source or not stage.expected_artifact_path:
        return False

    src_dir = Path(env.expand("${SRC_DIR}", stage=stage.name))
    rel = env.expand(stage.expected_artifact_path, stage=stage.name)
    artifact = src_dir / rel
    if artifact.exists():
        console.print_info(f"  Using existing folder: {artifact.name}")
        return False

    source = env.expand(stage.fetch_source, stage=stage.name)

    if is_git_source(source):
        console.print_info(f"  Cloning: {source}")
        try:
            clone(source, artifact, stage=stage.name)
        except FetchError:
            # a half-finished clone would satisfy the next idempotency check
            if artifact.exists():
                shutil.rmtree(artifact)
            raise
        return True

    archive, owned = resolve_archive(stage, source, src_dir, console)
    console.print_info(f"  Extracting file: {archive.name}")
    try:
        _extract_artifact(archive, src_dir, rel, stage=stage.name)
    except ExtractError:
        # a corrupt download would otherwise be reused by every later run
        if owned:
            archive.unlink(missing_ok=True)
        raise
    return True


def _extract_artifact(archive: Path, src_dir: Path, rel: str, *, stage: str) -> None:
    """
    Extract into a scratch directory under src_dir and move only the expected
    artifact into place, so a failed extraction never leaves it half-written.
    """
    src_dir.mkdir(parents=True, exist_ok=True)
    staging = Path(tempfile.mkdtemp(prefix=".extract-", dir=src_dir))
    try:
        extract_archive(archive, staging, stage=stage)
        staged = staging / rel
        artifact = src_dir / rel
        if not staged.exists():
            raise ExtractError(
                stage=stage,
                message=f"extracted directory not found: {artifact}",
                details={"archive": str(archive)},
            )
        artifact.parent.mkdir(parents=True, exist_ok=True)
        staged.replace(artifact)
    finally:
        shutil.rmtree(staging, ignore_errors=True)
