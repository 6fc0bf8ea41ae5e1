from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path

import pytest

_REPO = Path(__file__).resolve().parent.parent


@pytest.fixture
def fail_on(monkeypatch):
    """Make an os function raise for selected paths.

    fail_on("mkdir", "/tmp/x/out/conf") makes os.mkdir raise EACCES for
    that path only; every other call goes to the real function.
    """
    def _install(func_name: str, *paths, error=PermissionError(13, "Permission denied")):
        real = getattr(os, func_name)
        bad = {os.fspath(p) for p in paths}

        def _fake(path, *args, **kwargs):
            if os.fspath(path) in bad:
                raise error
            return real(path, *args, **kwargs)

        monkeypatch.setattr(os, func_name, _fake)

    return _install


@pytest.fixture(scope="session")
def run_weave():
    """Callable wrapper: run_weave("a", "b", "out") -> CompletedProcess.

    Runs tools/weave.py as a subprocess with the current interpreter.
    """
    script = str(_REPO / "tools" / "weave.py")

    def _run(*args: str, cwd=None) -> subprocess.CompletedProcess:
        return subprocess.run(
            [sys.executable, script, *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=60,
        )

    return _run
