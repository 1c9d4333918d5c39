# state.py
from __future__ import annotations

import hashlib
import json
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from .model import Stage, StageResult

# ---------------------------------------------------------------------
# Persisted state under the install prefix / log dir
# ---------------------------------------------------------------------
#   ${PREFIX}/.hpcbuild/stamps/<stage>.json   one stamp per built stage
#   ${LOG_DIR}/build_log.jsonl                append-only outcome record
#   ${LOG_DIR}/<stage>.log                    captured command output
#
# fingerprint = hash(stage definition as written: steps, fetch source,
#                    patches, exports, markers)
# ---------------------------------------------------------------------

STATE_DIRNAME = ".hpcbuild"
BUILD_LOG_NAME = "build_log.jsonl"


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def stage_fingerprint(stage: Stage) -> str:
    payload = {
        "v": 1,  # bump this if you change the fingerprint format
        "name": stage.name,
        "steps": [asdict(s) for s in stage.steps],
        "fetch_source": stage.fetch_source,
        "expected_artifact_path": stage.expected_artifact_path,
        "archive": stage.archive,
        "install_marker": stage.install_marker,
        "marker_command": stage.marker_command,
        "workdir": stage.workdir,
        "patches": [asdict(p) for p in stage.patches],
        "exports": dict(stage.exports),
    }
    return _sha256_str(_json_dumps_stable(payload))


class StampStore:
    """
    File-based stamp store:
      prefix/.hpcbuild/stamps/<stage>.json
    """

    def __init__(self, prefix: str | Path):
        self.root = Path(prefix).resolve() / STATE_DIRNAME / "stamps"

    def stamp_path(self, name: str) -> Path:
        return self.root / f"{name}.json"

    def read(self, name: str) -> Optional[Dict]:
        p = self.stamp_path(name)
        if not p.exists():
            return None
        try:
            return json.loads(p.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            # an unreadable stamp counts as no stamp
            return None

    def matches(self, stage: Stage) -> bool:
        stamp = self.read(stage.name)
        return bool(stamp) and stamp.get("fingerprint") == stage_fingerprint(stage)

    def write(self, stage: Stage) -> Dict:
        self.root.mkdir(parents=True, exist_ok=True)
        stamp = {
            "stage": stage.name,
            "fingerprint": stage_fingerprint(stage),
            "built_at": _utcnow(),
        }
        p = self.stamp_path(stage.name)
        tmp = p.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(stamp, sort_keys=True, indent=2), encoding="utf-8")
        tmp.replace(p)
        return stamp

    def clear(self, name: str) -> None:
        self.stamp_path(name).unlink(missing_ok=True)


class BuildLog:
    """Append-only JSON-lines record of stage outcomes."""

    def __init__(self, log_dir: str | Path):
        self.log_dir = Path(log_dir).resolve()
        self.path = self.log_dir / BUILD_LOG_NAME

    def stage_log_path(self, name: str) -> Path:
        return self.log_dir / f"{name}.log"

    def record(self, result: StageResult) -> Dict:
        entry: Dict[str, object] = {
            "stage": result.name,
            "status": result.status.value,
            "timestamp": _utcnow(),
            "reason": result.reason,
            "duration": round(result.duration, 3),
        }
        err = result.error
        if err is not None:
            entry["error"] = err.kind
            for attr in ("command", "returncode", "log_path"):
                value = getattr(err, attr, None)
                if value:
                    entry[attr] = value
        self.log_dir.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(_json_dumps_stable(entry) + "\n")
        return entry

    def entries(self) -> List[Dict]:
        if not self.path.exists():
            return []
        out: List[Dict] = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if line:
                out.append(json.loads(line))
        return out
