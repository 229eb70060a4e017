from __future__ import annotations

import asyncio
import os
import signal
import tarfile
from pathlib import Path

import httpx
import pytest

from conftest import RecordingRunner
from openbsd_builder.exceptions import (
    ExternalCommandError,
    InstallInterrupted,
    OperationInterrupted,
    PreconditionError,
)
from openbsd_builder.lifecycle import Boot, Clean, Install, VMLifecycleManager
from openbsd_builder.mirror import MirrorClient
from openbsd_builder.signal_manager import SignalManager
from openbsd_builder.ssh import ReadinessOutcome

QCOW2_HEADER = b"QFI\xfb" + b"\x00" * 60


class FakeAssetServer:
    instances: list["FakeAssetServer"] = []

    def __init__(self, directory: Path, pid_file: Path, signal_manager=None):
        self.directory = directory
        self.pid_file = pid_file
        self.entered = False
        self.exited = False
        FakeAssetServer.instances.append(self)

    async def __aenter__(self):
        self.entered = True
        return self

    async def __aexit__(self, *exc_info):
        self.exited = True


class FakeHost:
    """Answers qemu-img, qemu-system and ssh probes the way a working host would."""

    def __init__(self, installer_status: int = 0, probes: list[bool] | None = None):
        self.installer_status = installer_status
        self.probes = list(probes or [])

    def __call__(self, args: list[str]):
        if args[0] == "qemu-img":
            Path(args[4]).write_bytes(QCOW2_HEADER)
            return 0
        if args[0] == "qemu-system-x86_64":
            return self.installer_status
        if args[0] == "ssh":
            return 0 if self.probes.pop(0) else 255
        raise AssertionError(f"unexpected command: {args}")


async def no_sleep(delay: float) -> None:
    pass


@pytest.fixture(autouse=True)
def reset_asset_servers():
    FakeAssetServer.instances = []


@pytest.fixture
def mirror():
    requested = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(request.url.path)
        return httpx.Response(200, content=b"set data")

    client = MirrorClient("https://mirror.example.org/pub/OpenBSD", httpx.MockTransport(handler))
    client.requested = requested
    return client


def make_manager(config, runner, mirror=None, **kwargs) -> VMLifecycleManager:
    options = {
        "runner": runner,
        "mirror": mirror,
        "asset_server_factory": FakeAssetServer,
        "port_available": lambda address, port: True,
        "which": lambda tool: f"/usr/bin/{tool}",
        "sleep": no_sleep,
    }
    options.update(kwargs)
    return VMLifecycleManager(config, **options)


def test_install_provisions_image_and_ssh_entry(config, mirror):
    host = FakeHost()
    runner = RecordingRunner(host)
    manager = make_manager(config, runner, mirror)

    asyncio.run(manager.run(Install()))

    assert config.image_path.stat().st_size > 0
    assert runner.programs() == ["qemu-img", "qemu-system-x86_64"]
    # The installer attaches to the terminal
    assert runner.capture_flags[-1] is False

    work = manager.work
    assert (work.sets_dir / "bsd.rd").read_bytes() == b"set data"
    assert (work.sets_dir / "index.txt").exists()
    assert "Setup a user = builder" in work.install_conf_path.read_text()
    assert work.disklabel_path.read_text() == "/ *\n"
    with tarfile.open(work.sets_dir / "site77.tgz") as archive:
        assert "./install.site" in archive.getnames()
    assert (work.tftp_dir / "auto_install").is_symlink()
    assert work.boot_conf_path.exists()

    [server] = FakeAssetServer.instances
    assert server.directory == work.mirror_root
    assert server.entered and server.exited

    ssh_config = config.ssh_config_path.read_text()
    assert ssh_config.count("Host openbsd-builder") == 1


def test_install_refuses_existing_image(config, mirror):
    config.image_path.parent.mkdir(parents=True)
    config.image_path.write_bytes(b"installed system")
    runner = RecordingRunner(FakeHost())

    with pytest.raises(PreconditionError) as exc_info:
        asyncio.run(make_manager(config, runner, mirror).install())

    assert "already exists" in str(exc_info.value)
    assert exc_info.value.hint
    assert config.image_path.read_bytes() == b"installed system"
    assert not config.work_directory.exists()
    assert runner.calls == []
    assert mirror.requested == []


def test_install_requires_qemu(config, mirror):
    manager = make_manager(config, RecordingRunner(FakeHost()), mirror, which=lambda tool: None)

    with pytest.raises(PreconditionError, match="qemu-system-x86_64 not found"):
        asyncio.run(manager.install())

    assert not config.image_path.exists()


def test_install_requires_public_key(config, mirror, public_key_file):
    public_key_file.unlink()

    with pytest.raises(PreconditionError, match="SSH public key not found"):
        asyncio.run(make_manager(config, RecordingRunner(FakeHost()), mirror).install())


def test_install_requires_port_80(config, mirror):
    manager = make_manager(
        config, RecordingRunner(FakeHost()), mirror, port_available=lambda address, port: False
    )

    with pytest.raises(PreconditionError) as exc_info:
        asyncio.run(manager.install())

    assert "ip_unprivileged_port_start=80" in exc_info.value.hint
    assert mirror.requested == []
    assert not config.image_path.exists()


def test_failed_installer_stops_asset_server(config, mirror):
    runner = RecordingRunner(FakeHost(installer_status=1))

    with pytest.raises(ExternalCommandError):
        asyncio.run(make_manager(config, runner, mirror).install())

    [server] = FakeAssetServer.instances
    assert server.exited
    assert not config.image_path.exists()
    assert not config.ssh_config_path.exists()


def test_signal_interrupts_installer(config, mirror):
    signal_manager = SignalManager()
    installer_started = []
    recording = RecordingRunner(FakeHost())

    async def runner(args, *, capture=True, cwd=None):
        if args[0] == "qemu-system-x86_64":
            installer_started.append(args[0])
            signal_manager.request_shutdown()
            await asyncio.Event().wait()
        return await recording(args, capture=capture, cwd=cwd)

    with pytest.raises(InstallInterrupted):
        asyncio.run(make_manager(config, runner, mirror, signal_manager=signal_manager).install())

    assert installer_started == ["qemu-system-x86_64"]
    [server] = FakeAssetServer.instances
    assert server.exited
    assert not config.image_path.exists()
    assert not config.ssh_config_path.exists()


def test_signal_during_download_stops_install(config):
    requested = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(request.url.path)
        if request.url.path.endswith("/SHA256.sig"):
            os.kill(os.getpid(), signal.SIGINT)
        return httpx.Response(200, content=b"set data")

    mirror = MirrorClient("https://mirror.example.org/pub/OpenBSD", httpx.MockTransport(handler))
    runner = RecordingRunner(FakeHost())

    with SignalManager() as signal_manager:
        manager = make_manager(config, runner, mirror, signal_manager=signal_manager)
        with pytest.raises(InstallInterrupted, match="Set download interrupted"):
            asyncio.run(manager.install())

    assert signal_manager.exit_status() == 128 + signal.SIGINT
    assert runner.calls == []
    assert FakeAssetServer.instances == []
    assert not (manager.work.sets_dir / "BUILDINFO").exists()
    assert not manager.work.install_conf_path.exists()
    assert not config.image_path.exists()
    assert not config.ssh_config_path.exists()


def test_signal_during_disk_creation_removes_image(config, mirror):
    signal_manager = SignalManager()
    host = FakeHost()

    def respond(args):
        answer = host(args)
        if args[0] == "qemu-img":
            signal_manager.request_shutdown()
        return answer

    runner = RecordingRunner(respond)

    with pytest.raises(InstallInterrupted, match="Disk image creation interrupted"):
        asyncio.run(make_manager(config, runner, mirror, signal_manager=signal_manager).install())

    assert runner.programs() == ["qemu-img"]
    assert FakeAssetServer.instances == []
    assert not config.image_path.exists()
    assert not config.ssh_config_path.exists()


def test_signal_wins_over_installer_finishing(config, mirror):
    signal_manager = SignalManager()
    host = FakeHost()

    def respond(args):
        if args[0] == "qemu-system-x86_64":
            signal_manager.request_shutdown()
        return host(args)

    runner = RecordingRunner(respond)

    with pytest.raises(InstallInterrupted):
        asyncio.run(make_manager(config, runner, mirror, signal_manager=signal_manager).install())

    assert runner.programs() == ["qemu-img", "qemu-system-x86_64"]
    [server] = FakeAssetServer.instances
    assert server.exited
    assert not config.image_path.exists()
    assert not config.ssh_config_path.exists()


def test_install_after_shutdown_request_does_nothing(config, mirror):
    signal_manager = SignalManager()
    signal_manager.request_shutdown()
    runner = RecordingRunner(FakeHost())

    with pytest.raises(InstallInterrupted):
        asyncio.run(make_manager(config, runner, mirror, signal_manager=signal_manager).install())

    assert runner.calls == []
    assert mirror.requested == []
    assert not config.work_directory.exists()


def test_boot_requires_image(config):
    runner = RecordingRunner(FakeHost())

    with pytest.raises(PreconditionError, match="disk image not found"):
        asyncio.run(make_manager(config, runner).run(Boot()))

    assert runner.calls == []


def test_foreground_boot_attaches_console(config):
    config.image_path.parent.mkdir(parents=True)
    config.image_path.write_bytes(QCOW2_HEADER)
    runner = RecordingRunner(FakeHost())

    assert asyncio.run(make_manager(config, runner).run(Boot())) is None

    assert runner.programs() == ["qemu-system-x86_64"]
    assert runner.capture_flags == [False]


def test_daemon_boot_waits_for_ssh(config):
    config.image_path.parent.mkdir(parents=True)
    config.image_path.write_bytes(QCOW2_HEADER)
    runner = RecordingRunner(FakeHost(probes=[False, False, True]))

    result = asyncio.run(make_manager(config, runner).run(Boot(daemonize=True)))

    assert result.outcome is ReadinessOutcome.READY
    assert result.attempts == 3
    assert runner.programs() == ["qemu-system-x86_64", "ssh", "ssh", "ssh"]
    assert "-daemonize" in runner.calls[0]
    ssh_call = runner.calls[1]
    assert ssh_call[ssh_call.index("-i") + 1] == str(config.identity_file)


def test_daemon_boot_timeout_is_not_an_error(config):
    config.image_path.parent.mkdir(parents=True)
    config.image_path.write_bytes(QCOW2_HEADER)
    runner = RecordingRunner(FakeHost(probes=[False] * 4))
    manager = make_manager(config, runner, readiness_attempts=4, readiness_interval=0.5)

    result = asyncio.run(manager.run(Boot(daemonize=True)))

    assert result.outcome is ReadinessOutcome.TIMED_OUT
    assert result.attempts == 4


def test_signal_stops_ssh_polling(config):
    config.image_path.parent.mkdir(parents=True)
    config.image_path.write_bytes(QCOW2_HEADER)
    recording = RecordingRunner(FakeHost(probes=[False] * 10))

    async def runner(args, *, capture=True, cwd=None):
        if args[0] == "ssh":
            os.kill(os.getpid(), signal.SIGINT)
        return await recording(args, capture=capture, cwd=cwd)

    with SignalManager() as signal_manager:
        manager = make_manager(
            config, runner, signal_manager=signal_manager, readiness_attempts=10
        )
        with pytest.raises(OperationInterrupted, match="Waiting for SSH interrupted"):
            asyncio.run(manager.run(Boot(daemonize=True)))

    assert recording.programs() == ["qemu-system-x86_64", "ssh"]
    assert signal_manager.exit_status() == 128 + signal.SIGINT


def test_boot_after_shutdown_request_does_not_start_qemu(config):
    config.image_path.parent.mkdir(parents=True)
    config.image_path.write_bytes(QCOW2_HEADER)
    signal_manager = SignalManager()
    signal_manager.request_shutdown()
    runner = RecordingRunner(FakeHost())

    with pytest.raises(OperationInterrupted, match="Boot interrupted"):
        asyncio.run(make_manager(config, runner, signal_manager=signal_manager).run(Boot()))

    assert runner.calls == []


def test_boot_failure_raises(config):
    config.image_path.parent.mkdir(parents=True)
    config.image_path.write_bytes(QCOW2_HEADER)
    runner = RecordingRunner(FakeHost(installer_status=1))

    with pytest.raises(ExternalCommandError, match="QEMU failed"):
        asyncio.run(make_manager(config, runner).run(Boot(daemonize=True)))


def test_clean_keeps_disk_image(config):
    config.image_path.parent.mkdir(parents=True)
    config.image_path.write_bytes(QCOW2_HEADER)
    manager = make_manager(config, RecordingRunner())
    manager.work.ensure()
    (manager.work.sets_dir / "bsd.rd").write_bytes(b"kernel")

    asyncio.run(manager.run(Clean()))
    asyncio.run(manager.run(Clean()))

    assert not config.work_directory.exists()
    assert config.image_path.read_bytes() == QCOW2_HEADER


def test_clean_after_shutdown_request_keeps_work_directory(config):
    signal_manager = SignalManager()
    signal_manager.request_shutdown()
    manager = make_manager(config, RecordingRunner(), signal_manager=signal_manager)
    manager.work.ensure()

    with pytest.raises(OperationInterrupted, match="Clean interrupted"):
        asyncio.run(manager.run(Clean()))

    assert config.work_directory.exists()


def test_unknown_mode_is_rejected(config):
    with pytest.raises(TypeError):
        asyncio.run(make_manager(config, RecordingRunner()).run("install"))
