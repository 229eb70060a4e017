from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from openbsd_builder.config import ENVIRONMENT_KEYS, VMConfig
from openbsd_builder.process import CommandResult

PUBLIC_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAITESTKEY builder@host"


def result(
    args: list[str], returncode: int = 0, stdout: str = "", stderr: str = ""
) -> CommandResult:
    return CommandResult(args=list(args), returncode=returncode, stdout=stdout, stderr=stderr)


class RecordingRunner:
    """Command runner double: records each call and answers through `respond`."""

    def __init__(self, respond: Callable[[list[str]], CommandResult | int | None] | None = None):
        self.respond = respond or (lambda args: 0)
        self.calls: list[list[str]] = []
        self.capture_flags: list[bool] = []

    async def __call__(
        self, args, *, capture: bool = True, cwd: Path | None = None
    ) -> CommandResult:
        args = [str(a) for a in args]
        self.calls.append(args)
        self.capture_flags.append(capture)
        answer = self.respond(args)
        if isinstance(answer, CommandResult):
            return answer
        return result(args, answer or 0)

    def programs(self) -> list[str]:
        return [call[0] for call in self.calls]


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch: pytest.MonkeyPatch):
    for env_var in ENVIRONMENT_KEYS.values():
        monkeypatch.delenv(env_var, raising=False)
    monkeypatch.delenv("OPENBSD_CONFIG_FILE", raising=False)


@pytest.fixture
def public_key_file(tmp_path: Path) -> Path:
    key = tmp_path / "keys" / "id_ed25519.pub"
    key.parent.mkdir()
    key.write_text(PUBLIC_KEY + "\n")
    return key


@pytest.fixture
def config(tmp_path: Path, public_key_file: Path) -> VMConfig:
    return VMConfig(
        {
            "ssh-key": str(public_key_file),
            "user": "builder",
            "image": str(tmp_path / "vms" / "openbsd77.qcow2"),
            "work-dir": str(tmp_path / "work"),
            "ssh-config": str(tmp_path / "dotssh" / "config"),
        }
    )
