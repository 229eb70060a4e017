import asyncio
from pathlib import Path

import pytest

from conftest import RecordingRunner
from openbsd_builder.exceptions import ExternalCommandError, PreconditionError
from openbsd_builder.qemu import (
    build_boot_command,
    build_install_command,
    create_disk_image,
    find_missing_tool,
    require_tools,
)
from openbsd_builder.workdir import WorkDirectory


def option(cmd: list[str], flag: str) -> str:
    return cmd[cmd.index(flag) + 1]


def test_find_missing_tool():
    available = {"qemu-img": "/usr/bin/qemu-img"}

    assert find_missing_tool(["qemu-system-x86_64", "qemu-img"], available.get) == (
        "qemu-system-x86_64"
    )
    assert find_missing_tool(["qemu-img"], available.get) is None


def test_require_tools_has_install_hint():
    with pytest.raises(PreconditionError) as exc_info:
        require_tools(["qemu-img"], lambda tool: None)

    assert "qemu-img not found" in str(exc_info.value)
    assert exc_info.value.hint


def test_install_command_network_boots(config):
    work = WorkDirectory(config.work_directory, config.version, config.arch)

    cmd = build_install_command(config, work)

    assert cmd[0] == "qemu-system-x86_64"
    assert option(cmd, "-smp") == "cpus=4"
    assert option(cmd, "-m") == "4G"
    netdev = option(cmd, "-netdev").split(",")
    assert f"tftp={work.tftp_dir}" in netdev
    assert "bootfile=auto_install" in netdev
    assert "hostfwd=tcp::7722-:22" in netdev
    assert f"hostname={config.hostname}" in netdev
    assert "-nographic" in cmd
    assert "-daemonize" not in cmd


def test_boot_command_foreground_and_daemon(config):
    foreground = build_boot_command(config)
    daemon = build_boot_command(config, daemonize=True)

    assert option(foreground, "-boot") == "c"
    assert f"file={config.image_path}" in option(foreground, "-drive")
    assert option(foreground, "-serial") == "mon:stdio"
    assert "-daemonize" not in foreground

    assert option(daemon, "-serial") == "null"
    assert option(daemon, "-display") == "none"
    assert daemon[-1] == "-daemonize"
    assert "hostfwd=tcp::7722-:22" in option(daemon, "-netdev")


def test_create_disk_image(tmp_path: Path):
    image = tmp_path / "vms" / "disk.qcow2"
    runner = RecordingRunner()

    asyncio.run(create_disk_image(runner, image, "20G"))

    assert runner.calls == [["qemu-img", "create", "-f", "qcow2", str(image), "20G"]]
    assert image.parent.is_dir()


def test_failed_disk_image_is_removed(tmp_path: Path):
    image = tmp_path / "disk.qcow2"

    def respond(args):
        image.write_bytes(b"partial")
        return 1

    with pytest.raises(ExternalCommandError):
        asyncio.run(create_disk_image(RecordingRunner(respond), image, "20G"))

    assert not image.exists()
