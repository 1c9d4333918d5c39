from __future__ import annotations

import io
import shutil
import subprocess
import tarfile
from pathlib import Path

import pytest

from hpcbuild.dsl import sh, stage
from hpcbuild.errors import ExtractError, FetchError
from hpcbuild.fetch import archive_name, download, extract_archive, fetch_stage, split_git_source
from hpcbuild.model import StageStatus
from hpcbuild.runner import run_pipeline


def test_split_git_source():
    assert split_git_source("git+https://host/croco.git#v1.3") == ("https://host/croco.git", "v1.3")
    assert split_git_source("git+https://host/croco.git") == ("https://host/croco.git", None)


def test_archive_name_from_url_or_override():
    plain = stage("zlib", fetch="https://zlib.net/zlib-1.3.1.tar.gz", artifact="zlib-1.3.1")
    named = stage("x", fetch="https://host/download?id=7", artifact="x-1", archive="x-1.tar.gz")

    assert archive_name(plain, plain.fetch_source) == "zlib-1.3.1.tar.gz"
    assert archive_name(named, named.fetch_source) == "x-1.tar.gz"


def test_download_file_url(tmp_path, make_tarball):
    archive = make_tarball("zlib-1.3.1.tar.gz", {"zlib-1.3.1/README": "zlib"})

    dest = download(f"file://{archive}", tmp_path / "dl" / "zlib-1.3.1.tar.gz")

    assert dest.read_bytes() == archive.read_bytes()
    assert not (tmp_path / "dl" / "zlib-1.3.1.tar.gz.part").exists()


def test_download_failure_leaves_no_partial_file(tmp_path):
    dest = tmp_path / "missing.tar.gz"

    with pytest.raises(FetchError):
        download(f"file://{tmp_path}/does-not-exist.tar.gz", dest, stage="zlib")

    assert not dest.exists()
    assert not (tmp_path / "missing.tar.gz.part").exists()


def test_extract_corrupt_archive(tmp_path):
    bad = tmp_path / "hdf5-1.14.0.tar.gz"
    bad.write_bytes(b"this is not an archive")

    with pytest.raises(ExtractError):
        extract_archive(bad, tmp_path / "out", stage="hdf5")


def test_fetch_stage_extracts_into_src_dir(build_env, console, make_tarball):
    archive = make_tarball("curl-7.88.1.tar.gz", {"curl-7.88.1/lib/easy.c": "int x;\n"})
    curl = stage("curl", sh("noop", "true"), fetch=f"file://{archive}", artifact="curl-7.88.1")

    assert fetch_stage(curl, build_env, console) is True
    assert (Path(build_env["SRC_DIR"]) / "curl-7.88.1" / "lib" / "easy.c").exists()


def test_fetch_stage_skips_existing_artifact(build_env, console):
    (Path(build_env["SRC_DIR"]) / "zlib-1.3.1").mkdir()
    zlib = stage("zlib", sh("noop", "true"), fetch="https://zlib.net/zlib-1.3.1.tar.gz", artifact="zlib-1.3.1")

    # no network access happens: the directory is already there
    assert fetch_stage(zlib, build_env, console) is False


def test_fetch_stage_reuses_downloaded_archive(build_env, console, make_tarball):
    make_tarball("zlib-1.3.1.tar.gz", {"zlib-1.3.1/configure": "#!/bin/sh\n"}, where=Path(build_env["SRC_DIR"]))
    zlib = stage("zlib", sh("noop", "true"), fetch="https://zlib.net/zlib-1.3.1.tar.gz", artifact="zlib-1.3.1")

    assert fetch_stage(zlib, build_env, console) is True
    assert (Path(build_env["SRC_DIR"]) / "zlib-1.3.1" / "configure").exists()


def test_fetch_stage_wrong_artifact_name(build_env, console, make_tarball):
    archive = make_tarball("netcdf-c-4.9.2.tar.gz", {"netcdf-c-v4.9.2/configure": "#!/bin/sh\n"})
    nc = stage("netcdf-c", sh("noop", "true"), fetch=f"file://{archive}", artifact="netcdf-c-4.9.2")

    with pytest.raises(ExtractError, match="extracted directory not found"):
        fetch_stage(nc, build_env, console)


def test_fetch_stage_missing_local_archive(build_env, console):
    s = stage("zlib", sh("noop", "true"), fetch="archives/zlib-1.3.1.tar.gz", artifact="zlib-1.3.1")

    with pytest.raises(FetchError):
        fetch_stage(s, build_env, console)


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_fetch_stage_clones_git_source(build_env, console, tmp_path):
    upstream = tmp_path / "upstream"
    upstream.mkdir()
    (upstream / "jobcomp").write_text("#!/bin/bash\n")
    git = ["git", "-c", "user.name=test", "-c", "user.email=test@example.com"]
    subprocess.run(git + ["init", "-q"], cwd=upstream, check=True)
    subprocess.run(git + ["add", "."], cwd=upstream, check=True)
    subprocess.run(git + ["commit", "-q", "-m", "init"], cwd=upstream, check=True)

    croco = stage("croco", sh("noop", "true"), fetch=f"git+{upstream}", artifact="CROCO")

    assert fetch_stage(croco, build_env, console) is True
    assert (Path(build_env["SRC_DIR"]) / "CROCO" / "jobcomp").exists()


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_failed_clone_leaves_nothing_behind(build_env, console, tmp_path):
    croco = stage("croco", sh("noop", "true"), fetch=f"git+{tmp_path}/no-such-repo", artifact="CROCO")

    with pytest.raises(FetchError):
        fetch_stage(croco, build_env, console)

    assert not (Path(build_env["SRC_DIR"]) / "CROCO").exists()


# ---------------------------------------------------------------------
# Re-running after a failed fetch
# ---------------------------------------------------------------------

CONFIGURE = 'mkdir -p "$1/lib" && echo ok > "$1/lib/libpkg.a"\n'


def _pkg_stage(fetch: str):
    return stage(
        "pkg",
        sh("configure", "sh configure ${PREFIX}"),
        fetch=fetch,
        artifact="pkg-1.0",
        marker="lib/libpkg.a",
    )


def _plain_tar(path: Path, files: dict) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for rel, text in files.items():
            data = text.encode("utf-8")
            info = tarfile.TarInfo(name=rel)
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    path.write_bytes(buf.getvalue())
    return buf.getvalue()


def _leftovers(src_dir: Path) -> list:
    return sorted(p.name for p in src_dir.iterdir() if p.name.startswith(".extract-") or p.suffix == ".part")


def test_truncated_download_is_fetched_again(build_env, console, make_tarball, archive_server):
    archive = make_tarball("pkg-1.0.tar.gz", {"pkg-1.0/configure": CONFIGURE})
    archive_server.files["pkg-1.0.tar.gz"] = archive.read_bytes()
    archive_server.truncate["pkg-1.0.tar.gz"] = 10
    pkg = _pkg_stage(f"{archive_server.url}/pkg-1.0.tar.gz")
    src_dir = Path(build_env["SRC_DIR"])

    first = run_pipeline([pkg], build_env, console=console)

    assert isinstance(first.error, FetchError)
    assert not (src_dir / "pkg-1.0.tar.gz").exists()
    assert not (src_dir / "pkg-1.0").exists()
    assert _leftovers(src_dir) == []

    archive_server.truncate.clear()
    second = run_pipeline([pkg], build_env, console=console)

    assert second.ok, second.error
    assert second.statuses() == {"pkg": "succeeded"}
    assert (Path(build_env["PREFIX"]) / "lib" / "libpkg.a").exists()


def test_corrupt_cached_download_is_discarded(build_env, console, make_tarball, archive_server):
    archive = make_tarball("pkg-1.0.tar.gz", {"pkg-1.0/configure": CONFIGURE})
    archive_server.files["pkg-1.0.tar.gz"] = archive.read_bytes()
    src_dir = Path(build_env["SRC_DIR"])
    # left behind by some earlier, interrupted run
    (src_dir / "pkg-1.0.tar.gz").write_bytes(archive.read_bytes()[:10])
    pkg = _pkg_stage(f"{archive_server.url}/pkg-1.0.tar.gz")

    first = run_pipeline([pkg], build_env, console=console)

    assert isinstance(first.error, ExtractError)
    assert not (src_dir / "pkg-1.0.tar.gz").exists()

    second = run_pipeline([pkg], build_env, console=console)

    assert second.ok, second.error
    assert (src_dir / "pkg-1.0" / "configure").exists()


def test_partial_extraction_is_not_reused(build_env, console, tmp_path):
    files = {
        "pkg-1.0/file0.c": "a" * 2000,
        "pkg-1.0/file1.c": "b" * 2000,
        "pkg-1.0/configure": CONFIGURE,
    }
    archive = tmp_path / "pkg-1.0.tar"
    full = _plain_tar(archive, files)
    # cut inside the data of the second member
    archive.write_bytes(full[:512 + 2048 + 512 + 1000])
    pkg = _pkg_stage(f"file://{archive}")
    src_dir = Path(build_env["SRC_DIR"])

    first = run_pipeline([pkg], build_env, console=console)

    assert first.statuses() == {"pkg": "failed"}
    assert isinstance(first.error, ExtractError)
    assert not (src_dir / "pkg-1.0").exists()
    assert _leftovers(src_dir) == []
    # archives named by the pipeline are never deleted
    assert archive.exists()

    archive.write_bytes(full)
    second = run_pipeline([pkg], build_env, console=console)

    assert second.ok, second.error
    assert second.results[0].status is StageStatus.SUCCEEDED
    assert sorted(p.name for p in (src_dir / "pkg-1.0").iterdir()) == ["configure", "file0.c", "file1.c"]
