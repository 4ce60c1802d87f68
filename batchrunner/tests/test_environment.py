import os
import stat
import sys
from pathlib import Path

import pytest

from batchrunner.core.core_environment import (
    EnvironmentPreparer,
    ToolchainPin,
    _parse_env0,
    base_environment,
    load_toolchain_pin,
    version_matches,
)
from batchrunner.core.core_errors import ConfigError, EnvironmentFailure
from batchrunner.core.core_request import ExportEnv

from conftest import PYTHON_VERSION


def python_pin(version: str = PYTHON_VERSION) -> ToolchainPin:
    return ToolchainPin(
        name="python", version=version, loader="path", probe=(sys.executable, "--version")
    )


def test_prepare_returns_handle(workdir: Path):
    preparer = EnvironmentPreparer(python_pin(), str(workdir), extra_env={"RUST_LOG": "info"})
    handle = preparer.prepare()

    assert handle.workdir == workdir.resolve()
    assert handle.env["RUST_LOG"] == "info"
    assert handle.toolchain.version == PYTHON_VERSION


def test_prepare_is_idempotent(workdir: Path, monkeypatch: pytest.MonkeyPatch):
    preparer = EnvironmentPreparer(python_pin(), str(workdir))
    first = preparer.prepare()

    # a second call must not probe again
    monkeypatch.setattr(preparer, "_verify_pin", lambda env, wd: pytest.fail("probed twice"))
    assert preparer.prepare() is first


def test_missing_workdir_fails(tmp_path: Path):
    preparer = EnvironmentPreparer(python_pin(), str(tmp_path / "nope"))
    with pytest.raises(EnvironmentFailure, match="does not exist"):
        preparer.prepare()


def test_version_mismatch_fails(workdir: Path):
    preparer = EnvironmentPreparer(python_pin("0.0.0-missing"), str(workdir))
    with pytest.raises(EnvironmentFailure, match="mismatch"):
        preparer.prepare()


def test_missing_toolchain_executable_fails(workdir: Path, tmp_path: Path):
    pin = ToolchainPin(
        name="rust", version="1.82.0", loader="path", probe=(str(tmp_path / "no-rustc"), "--version")
    )
    with pytest.raises(EnvironmentFailure):
        EnvironmentPreparer(pin, str(workdir)).prepare()


def test_export_none_keeps_minimal_environment():
    source = {"PATH": "/bin", "HOME": "/h", "SECRET": "x", "SLURM_JOB_ID": "12"}
    assert base_environment(ExportEnv.NONE, source) == {
        "PATH": "/bin",
        "HOME": "/h",
        "SLURM_JOB_ID": "12",
    }
    assert base_environment(ExportEnv.INHERIT, source) == source


def test_load_toolchain_pin():
    pin = load_toolchain_pin({"name": "rust", "version": "1.82.0"})
    assert pin.loader == "module"
    assert pin.module_spec == "rust/1.82.0"
    assert pin.probe_argv == ["rust", "--version"]

    with pytest.raises(ConfigError):
        load_toolchain_pin({"name": "rust"})
    with pytest.raises(ConfigError):
        load_toolchain_pin({"name": "rust", "version": "1", "loader": "spack"})


@pytest.mark.parametrize(
    "version, output, expected",
    [
        ("1.82.0", "rustc 1.82.0 (f6e511eec 2024-10-15)", True),
        ("3.11", "Python 3.11.7", True),
        ("3.1", "Python 3.11.7", False),
        ("1.82", "rustc 1.82.1 (abc 2024-11-28)", True),
        ("1.82.0", "rustc 1.82.1 (abc 2024-11-28)", False),
        ("1.8", "rustc 1.82.0 (f6e511eec 2024-10-15)", False),
        ("1.82.0", "rustc 1.82.0-nightly (f6e511eec 2024-10-15)", False),
        ("1.82.0", "rustc 11.82.0", False),
    ],
)
def test_version_matches_whole_token(version, output, expected):
    assert version_matches(version, output) is expected


@pytest.mark.skipif(sys.version_info.minor < 10, reason="needs a two-digit minor version")
def test_prefix_of_running_version_is_a_mismatch(workdir: Path):
    prefix = f"{sys.version_info.major}.{str(sys.version_info.minor)[0]}"
    preparer = EnvironmentPreparer(python_pin(prefix), str(workdir))
    with pytest.raises(EnvironmentFailure, match="mismatch"):
        preparer.prepare()


def fake_bash(bin_dir: Path, body: str) -> Path:
    bin_dir.mkdir(exist_ok=True)
    path = bin_dir / "bash"
    path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return path


def test_module_loader_adopts_loaded_environment(
    workdir: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
):
    bin_dir = tmp_path / "bin"
    fake_bash(
        bin_dir,
        'echo "$2" > "$(dirname "$0")/script.txt"\n'
        "printf 'PATH=%s\\000TOOLCHAIN_HOME=/opt/python\\000garbage\\000' \"$PATH\"\n",
    )
    monkeypatch.setenv("PATH", os.pathsep.join([str(bin_dir), os.environ.get("PATH", "")]))
    pin = ToolchainPin(
        name="python", version=PYTHON_VERSION, loader="module", probe=(sys.executable, "--version")
    )

    handle = EnvironmentPreparer(pin, str(workdir)).prepare()

    assert handle.env["TOOLCHAIN_HOME"] == "/opt/python"
    assert handle.env["PATH"].startswith(str(bin_dir))
    assert "HOME" not in handle.env
    script = (bin_dir / "script.txt").read_text(encoding="utf-8")
    assert f"module load python/{PYTHON_VERSION}" in script


def test_module_loader_failure_is_fatal(
    workdir: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
):
    bin_dir = tmp_path / "bin"
    fake_bash(
        bin_dir,
        "echo \"ERROR: Unable to locate a modulefile for 'rust/1.82.0'\" >&2\nexit 1\n",
    )
    monkeypatch.setenv("PATH", os.pathsep.join([str(bin_dir), os.environ.get("PATH", "")]))
    pin = ToolchainPin(name="rust", version="1.82.0", loader="module")

    with pytest.raises(EnvironmentFailure, match=r"rc=1.*modulefile"):
        EnvironmentPreparer(pin, str(workdir)).prepare()


def test_parse_env0_skips_entries_without_value():
    assert _parse_env0(b"A=1\0broken\0B=x=y\0\0") == {"A": "1", "B": "x=y"}
