# config.py
from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .dsl import configure_make_install
from .model import Patch, Pipeline, Stage, Step

# -------------------- Schemas --------------------
#
# [pipeline]
# name = "croco-deps"
# modules = ["chpc/parallel_studio_xe/18.0.2/2018.2.046"]
# env_scripts = ["/apps/.../mpivars.sh"]
# artifact = "bin/croco"
#
# [pipeline.env]
# CC = "icc"
#
# [[stage]]
# name = "zlib"
# fetch = "https://zlib.net/zlib-1.3.1.tar.gz"
# artifact = "zlib-1.3.1"
# marker = "lib/libz.a"
# configure = ""            # shorthand for configure/make/install
# steps = [{ name = "extra", run = "..." }]


class StepConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    run: str
    cwd: Optional[str] = None


class PatchConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    path: str
    pattern: str
    replacement: str
    expect: Optional[str] = None
    when: Dict[str, str] = Field(default_factory=dict)
    optional: bool = False


class StageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    fetch: Optional[str] = None
    artifact: Optional[str] = None
    archive: Optional[str] = None
    marker: Optional[str] = None
    marker_command: Optional[str] = None
    workdir: Optional[str] = None
    configure: Optional[str] = None
    steps: List[StepConfig] = Field(default_factory=list)
    patches: List[PatchConfig] = Field(default_factory=list)
    exports: Dict[str, str] = Field(default_factory=dict)
    clean: List[str] = Field(default_factory=list)
    requires: List[str] = Field(default_factory=list)
    requires_paths: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check(self) -> "StageConfig":
        if self.fetch and not self.artifact:
            raise ValueError(f"stage '{self.name}': fetch requires artifact")
        if not self.steps and self.configure is None and not self.fetch:
            raise ValueError(f"stage '{self.name}': needs steps, configure, or fetch")
        return self

    def to_stage(self) -> Stage:
        steps: List[Step] = []
        if self.configure is not None:
            steps.extend(configure_make_install(self.configure))
        steps.extend(Step(name=s.name, run=s.run, cwd=s.cwd) for s in self.steps)
        return Stage(
            name=self.name,
            steps=steps,
            fetch_source=self.fetch,
            expected_artifact_path=self.artifact,
            archive=self.archive,
            install_marker=self.marker,
            marker_command=self.marker_command,
            workdir=self.workdir,
            patches=[Patch(**p.model_dump()) for p in self.patches],
            exports=dict(self.exports),
            clean=list(self.clean),
            requires=list(self.requires),
            requires_paths=list(self.requires_paths),
        )


class PipelineSection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = "pipeline"
    env: Dict[str, str] = Field(default_factory=dict)
    prepend: Dict[str, List[str]] = Field(default_factory=dict)
    modules: List[str] = Field(default_factory=list)
    env_scripts: List[str] = Field(default_factory=list)
    vendor_checks: Dict[str, str] = Field(default_factory=dict)
    artifact: Optional[str] = None


class PipelineConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    pipeline: PipelineSection = Field(default_factory=PipelineSection)
    stage: List[StageConfig] = Field(min_length=1)

    @model_validator(mode="after")
    def _unique_names(self) -> "PipelineConfig":
        names = [s.name for s in self.stage]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"Duplicate stage names found: {dupes}")
        return self

    def to_pipeline(self) -> Pipeline:
        p = self.pipeline
        return Pipeline(
            name=p.name,
            stages=[s.to_stage() for s in self.stage],
            env=dict(p.env),
            prepend={k: list(v) for k, v in p.prepend.items()},
            modules=list(p.modules),
            env_scripts=list(p.env_scripts),
            vendor_checks=dict(p.vendor_checks),
            artifact=p.artifact,
        )


def parse_config(data: Dict[str, Any], *, source: str = "<config>") -> Pipeline:
    try:
        return PipelineConfig.model_validate(data).to_pipeline()
    except ValidationError as e:
        raise ValueError(f"Invalid pipeline config {source}:\n{e}") from e


def load_toml(path: str | Path) -> Pipeline:
    p = Path(path)
    try:
        data = tomllib.loads(p.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {p}: {e}") from e
    return parse_config(data, source=str(p))
