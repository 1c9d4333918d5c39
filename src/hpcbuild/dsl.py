# src/hpcbuild/dsl.py
from __future__ import annotations

from typing import Dict, List, Optional

from .model import Patch, Pipeline, Stage, Step


# ---------------------------------------------------------------------
# Step / patch helpers
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd)


def configure_make_install(
    configure_args: str = "",
    *,
    configure: str = "./configure",
    jobs: str = "${JOBS}",
) -> List[Step]:
    """The usual autotools triple: configure --prefix, make -jN, make install."""
    args = f"--prefix=${{PREFIX}} {configure_args}".strip()
    return [
        sh("configure", f"{configure} {args}"),
        sh("make", f"make -j{jobs}"),
        sh("make install", "make install"),
    ]


def patch(
    name: str,
    path: str,
    pattern: str,
    replacement: str,
    *,
    expect: str | None = None,
    when: Optional[Dict[str, str]] = None,
    optional: bool = False,
) -> Patch:
    return Patch(
        name=name,
        path=path,
        pattern=pattern,
        replacement=replacement,
        expect=expect,
        when=dict(when or {}),
        optional=optional,
    )


# ---------------------------------------------------------------------
# Functional Stage helper
# ---------------------------------------------------------------------

def stage(
    name: str,
    *steps: Step,
    steps_list: Optional[List[Step]] = None,
    fetch: str | None = None,
    artifact: str | None = None,
    archive: str | None = None,
    marker: str | None = None,
    marker_command: str | None = None,
    workdir: str | None = None,
    patches: Optional[List[Patch]] = None,
    exports: Optional[Dict[str, str]] = None,
    clean: Optional[List[str]] = None,
    requires: Optional[List[str]] = None,
    requires_paths: Optional[List[str]] = None,
) -> Stage:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(steps_list)
    steps_final.extend(steps)

    if not steps_final and not fetch:
        raise ValueError(f"stage({name!r}) must have at least one step or a fetch source")
    if fetch and not artifact:
        raise ValueError(f"stage({name!r}) has a fetch source but no artifact path to check")

    return Stage(
        name=name,
        steps=steps_final,
        fetch_source=fetch,
        expected_artifact_path=artifact,
        archive=archive,
        install_marker=marker,
        marker_command=marker_command,
        workdir=workdir,
        patches=list(patches or []),
        exports=dict(exports or {}),
        clean=list(clean or []),
        requires=list(requires or []),
        requires_paths=list(requires_paths or []),
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class StageBuilder:
    def __init__(self, name: str):
        self.name = name
        self._steps: list[Step] = []
        self._fetch: str | None = None
        self._artifact: str | None = None
        self._archive: str | None = None
        self._marker: str | None = None
        self._marker_command: str | None = None
        self._workdir: str | None = None
        self._patches: list[Patch] = []
        self._exports: dict[str, str] = {}
        self._clean: list[str] = []
        self._requires: list[str] = []
        self._requires_paths: list[str] = []

    def fetch_from(self, source: str, artifact: str, *, archive: str | None = None):
        self._fetch = source
        self._artifact = artifact
        self._archive = archive
        return self

    def in_dir(self, workdir: str):
        self._workdir = workdir
        return self

    def define_requirements(self, *tools: str):
        self._requires.extend(tools)
        return self

    def require_paths(self, *paths: str):
        self._requires_paths.extend(paths)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None):
        self._steps.append(Step(name=name, run=run, cwd=cwd))
        return self

    def autotools(self, configure_args: str = ""):
        self._steps.extend(configure_make_install(configure_args))
        return self

    def with_patch(self, p: Patch):
        self._patches.append(p)
        return self

    def export(self, **env):
        self._exports.update({k: str(v) for k, v in env.items()})
        return self

    def clean_before_build(self, *patterns: str):
        self._clean.extend(patterns)
        return self

    def installs(self, marker: str):
        self._marker = marker
        return self

    def built_when(self, command: str):
        self._marker_command = command
        return self

    def build(self) -> Stage:
        return stage(
            self.name,
            steps_list=self._steps,
            fetch=self._fetch,
            artifact=self._artifact,
            archive=self._archive,
            marker=self._marker,
            marker_command=self._marker_command,
            workdir=self._workdir,
            patches=self._patches,
            exports=self._exports,
            clean=self._clean,
            requires=self._requires,
            requires_paths=self._requires_paths,
        )


def build(name: str) -> StageBuilder:
    """Convenience: build('zlib').fetch_from(...).autotools().installs('lib/libz.a').build()"""
    return StageBuilder(name)


# ---------------------------------------------------------------------
# Pipeline helper
# ---------------------------------------------------------------------

def pipeline(
    name: str,
    *stages: Stage,
    env: Optional[Dict[str, str]] = None,
    prepend: Optional[Dict[str, List[str]]] = None,
    modules: Optional[List[str]] = None,
    env_scripts: Optional[List[str]] = None,
    vendor_checks: Optional[Dict[str, str]] = None,
    artifact: str | None = None,
) -> Pipeline:
    """
    Pipeline definition helper. Import it under another name in pipeline
    files so it does not shadow your own pipeline() function:

        from hpcbuild.dsl import pipeline as make_pipeline, stage, sh

        def pipeline():
            return make_pipeline("demo", stage(...), stage(...))
    """
    if not stages:
        raise ValueError(f"pipeline({name!r}) must have at least one stage")
    return Pipeline(
        name=name,
        stages=list(stages),
        env=dict(env or {}),
        prepend={k: list(v) for k, v in (prepend or {}).items()},
        modules=list(modules or []),
        env_scripts=list(env_scripts or []),
        vendor_checks=dict(vendor_checks or {}),
        artifact=artifact,
    )
