"""Shared test fixtures."""

from __future__ import annotations

import json
import os
import stat
import sys
from dataclasses import dataclass
from pathlib import Path

import pytest

_FAKE_CARGO_IMPL = """
import json
import os
import subprocess
import sys
import time
from pathlib import Path

args = sys.argv[1:]
argv_log = os.environ.get("FAKE_CARGO_ARGV_LOG")
if argv_log:
    with open(argv_log, "a", encoding="utf-8") as handle:
        handle.write(json.dumps(args) + "\\n")

if args[:2] == ["check", "--help"]:
    raise SystemExit(101 if os.environ.get("FAKE_CARGO_NO_CHECK") == "1" else 0)

script_path = os.environ.get("FAKE_CARGO_SCRIPT")
script = json.loads(Path(script_path).read_text("utf-8")) if script_path else {}

if script.get("background_sleep"):
    # Inherits both pipes, like a build script or test binary cargo started.
    subprocess.Popen(
        [
            sys.executable,
            "-c",
            "import sys, time; print('background started', flush=True); "
            "time.sleep(float(sys.argv[1]))",
            str(script["background_sleep"]),
        ],
    )
for line in script.get("stdout", []):
    sys.stdout.write(line + "\\n")
    sys.stdout.flush()
for line in script.get("stderr", []):
    sys.stderr.write(line + "\\n")
    sys.stderr.flush()
for name in script.get("echo_env", []):
    sys.stdout.write(name + "=" + os.environ.get(name, "") + "\\n")
    sys.stdout.flush()
if script.get("echo_cwd"):
    sys.stdout.write("cwd=" + os.getcwd() + "\\n")
    sys.stdout.flush()
if script.get("stdout_tail"):
    sys.stdout.write(script["stdout_tail"])
    sys.stdout.flush()
if script.get("sleep"):
    time.sleep(script["sleep"])
raise SystemExit(script.get("exit_code", 0))
"""


@dataclass(slots=True)
class FakeCargo:
    """Executable standing in for cargo, driven by a JSON script file."""

    path: Path
    workdir: Path

    def script(self, **script: object) -> dict[str, str]:
        """Write the run script and return env overrides pointing at it."""

        script_path = self.workdir / "fake_cargo_script.json"
        script_path.write_text(json.dumps(script), "utf-8")
        return {
            "FAKE_CARGO_SCRIPT": str(script_path),
            "FAKE_CARGO_ARGV_LOG": str(self.argv_log_path),
        }

    @property
    def argv_log_path(self) -> Path:
        return self.workdir / "fake_cargo_argv.jsonl"

    def invocations(self) -> list[list[str]]:
        if not self.argv_log_path.exists():
            return []
        return [
            json.loads(line)
            for line in self.argv_log_path.read_text("utf-8").splitlines()
            if line.strip()
        ]


@pytest.fixture()
def fake_cargo(tmp_path: Path) -> FakeCargo:
    """Create a fake ``cargo`` executable backed by the current interpreter."""

    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(parents=True, exist_ok=True)
    implementation = bin_dir / "cargo_impl.py"
    implementation.write_text(_FAKE_CARGO_IMPL.strip() + "\n", "utf-8")

    if os.name == "nt":
        launcher = bin_dir / "cargo.cmd"
        launcher.write_text(
            f'@echo off\r\n"{sys.executable}" "{implementation}" %*\r\n',
            "utf-8",
        )
    else:
        launcher = bin_dir / "cargo"
        launcher.write_text(
            f'#!/usr/bin/env sh\nexec "{sys.executable}" "{implementation}" "$@"\n',
            "utf-8",
        )
        launcher.chmod(launcher.stat().st_mode | stat.S_IXUSR)

    workdir = tmp_path / "fake_cargo"
    workdir.mkdir()
    return FakeCargo(path=launcher, workdir=workdir)


@pytest.fixture()
def crate_dir(tmp_path: Path) -> Path:
    """A directory that looks like a cargo project."""

    crate = tmp_path / "crate"
    (crate / "src").mkdir(parents=True)
    (crate / "Cargo.toml").write_text('[package]\nname = "b"\nversion = "0.1.0"\n', "utf-8")
    (crate / "src" / "main.rs").write_text("fn main() {}\n", "utf-8")
    return crate
