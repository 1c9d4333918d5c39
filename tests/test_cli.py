from __future__ import annotations

import json
import textwrap
from pathlib import Path

import pytest
from click.testing import CliRunner

from hpcbuild.cli import cli

HELLO_PIPELINE = textwrap.dedent("""\
    from hpcbuild.dsl import sh, stage

    STAGES = [
        stage(
            "hello",
            sh("install", "mkdir -p ${PREFIX}/bin && echo hi > ${PREFIX}/bin/hello"),
            marker="bin/hello",
            exports={"HELLO_HOME": "${PREFIX}"},
        ),
    ]
""")

FAILING_PIPELINE = textwrap.dedent("""\
    from hpcbuild.dsl import sh, stage

    STAGES = [
        stage("ok", sh("noop", "true")),
        stage("broken", sh("make", "exit 5")),
        stage("never", sh("noop", "true")),
    ]
""")


@pytest.fixture
def workspace(tmp_path: Path):
    (tmp_path / "hello_pipeline.py").write_text(HELLO_PIPELINE)
    (tmp_path / "failing.py").write_text(FAILING_PIPELINE)
    return tmp_path


def _invoke(*args: str, env=None):
    return CliRunner().invoke(cli, list(args), env=env, catch_exceptions=False)


def test_run_succeeds_then_skips(workspace):
    prefix = str(workspace / "install")
    pipeline = str(workspace / "hello_pipeline.py")

    first = _invoke("run", "--pipeline", pipeline, "--prefix", prefix, "-j", "1")
    second = _invoke("run", "--pipeline", pipeline, "--prefix", prefix, "-j", "1")

    assert first.exit_code == 0, first.output
    assert "Build completed successfully!" in first.output
    assert (workspace / "install" / "bin" / "hello").exists()
    assert second.exit_code == 0
    assert "STATUS: skipped" in second.output


def test_run_failure_exit_code_and_stage(workspace):
    result = _invoke("run", "--pipeline", str(workspace / "failing.py"), "--prefix", str(workspace / "install"))

    assert result.exit_code == 5
    assert "Build failed at stage: broken" in result.output
    assert "never" not in result.output.split("RESULTS", 1)[1]


def test_missing_pipeline_file(workspace):
    result = _invoke("run", "--pipeline", str(workspace / "nope.py"))

    assert result.exit_code == 1


def test_plan_lists_actions(workspace):
    prefix = str(workspace / "install")
    pipeline = str(workspace / "hello_pipeline.py")

    result = _invoke("plan", "--pipeline", pipeline, "--prefix", prefix)

    assert result.exit_code == 0
    assert "hello: build" in result.output


def test_env_json(workspace):
    prefix = workspace / "install"

    result = _invoke("env", "--pipeline", str(workspace / "hello_pipeline.py"), "--prefix", str(prefix), "--format", "json")

    assert result.exit_code == 0
    data = json.loads(result.output)
    assert data["artifact"] is None
    assert data["env"]["HELLO_HOME"] == str(prefix.resolve())
    assert data["env"]["PREFIX"] == str(prefix.resolve())


def test_env_sh(workspace):
    prefix = workspace / "install"

    result = _invoke("env", "--pipeline", str(workspace / "hello_pipeline.py"), "--prefix", str(prefix))

    assert result.exit_code == 0
    assert f"export HELLO_HOME={prefix.resolve()}" in result.output.splitlines()


def test_jobs_from_environment(workspace):
    result = _invoke(
        "env", "--pipeline", str(workspace / "hello_pipeline.py"),
        "--prefix", str(workspace / "install"), "--format", "json",
        env={"HPCBUILD_JOBS": "3"},
    )

    assert result.exit_code == 0
    assert json.loads(result.output)["env"]["JOBS"] == "3"


@pytest.mark.parametrize("value", ["lots", "0"])
def test_bad_jobs_value_is_a_usage_error(workspace, value):
    result = _invoke(
        "plan", "--pipeline", str(workspace / "hello_pipeline.py"),
        "--prefix", str(workspace / "install"),
        env={"HPCBUILD_JOBS": value},
    )

    assert result.exit_code == 2
    assert "Invalid value" in result.output
