import asyncio
import sys

import pytest

from conftest import RecordingRunner, result
from openbsd_builder.exceptions import ExternalCommandError
from openbsd_builder.process import check_command, run_command


def test_run_command_captures_output():
    outcome = asyncio.run(run_command([sys.executable, "-c", "print('hello')"]))

    assert outcome.ok
    assert outcome.stdout.strip() == "hello"


def test_run_command_reports_exit_status():
    outcome = asyncio.run(
        run_command([sys.executable, "-c", "import sys; sys.stderr.write('boom'); sys.exit(3)"])
    )

    assert not outcome.ok
    assert outcome.returncode == 3
    assert outcome.stderr == "boom"


def test_check_command_raises_with_detail():
    runner = RecordingRunner(lambda args: result(args, 2, stderr="no such file\n"))

    with pytest.raises(ExternalCommandError) as exc_info:
        asyncio.run(check_command(runner, "qemu-img create", ["qemu-img", "create"]))

    assert exc_info.value.returncode == 2
    assert exc_info.value.step == "qemu-img create"
    assert str(exc_info.value) == "qemu-img create failed with exit status 2: no such file"


def test_check_command_returns_result_on_success():
    runner = RecordingRunner(lambda args: result(args, 0, stdout="ok"))

    outcome = asyncio.run(check_command(runner, "probe", ["true"]))

    assert outcome.stdout == "ok"
