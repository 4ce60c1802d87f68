"""Shared fixtures: a fake external binary and minimal batch configs.

Also ensures the project root is on sys.path so 'import batchrunner.*' works.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from batchrunner.core.core_request import NotifyEvent
from batchrunner.superior.output_router import Notifier

# Stand-in for the search binary: ``fake_binary.py run -- --experiment <name>``.
# Logs start/end lines to $FAKE_LOG, appends its name to ./state.txt and
# exits with the rc configured in $FAKE_BEHAVIOUR.
FAKE_BINARY = """
import json, os, sys, time
args = sys.argv[1:]
assert args[:3] == ["run", "--", "--experiment"], args
name = args[3].split(",")[0]
behaviour = json.loads(os.environ.get("FAKE_BEHAVIOUR", "{}")).get(name, {})
log_path = os.environ["FAKE_LOG"]
with open(log_path, "a") as f:
    f.write("start %s %r\\n" % (name, args[3:]))
print("hello from %s" % name, flush=True)
time.sleep(behaviour.get("sleep", 0))
with open("state.txt", "a") as f:
    f.write(name + "\\n")
with open(log_path, "a") as f:
    f.write("end %s\\n" % name)
sys.exit(behaviour.get("rc", 0))
"""

PYTHON_VERSION = f"{sys.version_info.major}.{sys.version_info.minor}"


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.events: List[tuple] = []

    def notify(self, event: NotifyEvent, job_id: str, recipient: str, message: str) -> None:
        self.events.append((event, job_id, message))


@pytest.fixture
def fake_binary(tmp_path: Path) -> Path:
    path = tmp_path / "fake_binary.py"
    path.write_text(FAKE_BINARY, encoding="utf-8")
    return path


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def make_config(tmp_path: Path, fake_binary: Path, workdir: Path):
    """Write a batch config (JSON is valid YAML) and return its path."""

    def _make(
        experiments: Optional[List[Any]] = None,
        behaviour: Optional[Dict[str, Dict[str, Any]]] = None,
        **extra: Any,
    ) -> Path:
        cfg: Dict[str, Any] = {
            "batch_id": "unit_batch",
            "description": "Minimal batch for tests",
            "resources": {
                "nodes": 1,
                "cores": 4,
                "wall_clock": "0-00:10:00",
                "partition": "general",
                "qos": "public",
                "notify_events": ["ALL"],
                "notify_recipient": "someone@example.org",
                "stdout": "slurm.%j.out",
                "stderr": "slurm.%j.err",
                "export_env": "NONE",
            },
            "environment": {
                "toolchain": {
                    "name": "python",
                    "version": PYTHON_VERSION,
                    "loader": "path",
                    "probe": [sys.executable, "--version"],
                },
                "workdir": str(workdir),
                "env": {
                    "FAKE_LOG": str(tmp_path / "fake.log"),
                    "FAKE_BEHAVIOUR": json.dumps(behaviour or {}),
                },
            },
            "launcher": [sys.executable, str(fake_binary), "run"],
            "vocabulary": ["exp-a", "exp-b", "exp-c"],
            "experiments": experiments or ["exp-a", "exp-b", "exp-c"],
        }
        for key, value in extra.items():
            cfg[key] = value
        cfg_path = tmp_path / "batch.yml"
        cfg_path.write_text(json.dumps(cfg), encoding="utf-8")
        return cfg_path

    return _make


def read_fake_log(tmp_path: Path) -> List[str]:
    path = tmp_path / "fake.log"
    if not path.exists():
        return []
    return path.read_text(encoding="utf-8").splitlines()
