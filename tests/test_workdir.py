from pathlib import Path

from openbsd_builder.workdir import WorkDirectory


def test_layout(tmp_path: Path):
    work = WorkDirectory(tmp_path / "work", "7.7", "amd64")

    assert work.sets_dir == tmp_path / "work" / "mirror" / "pub" / "OpenBSD" / "7.7" / "amd64"
    assert work.install_conf_path.parent == work.mirror_root
    assert work.disklabel_path.parent == work.mirror_root
    assert work.boot_conf_path == tmp_path / "work" / "tftp" / "etc" / "boot.conf"


def test_stage_network_boot_is_repeatable(tmp_path: Path):
    work = WorkDirectory(tmp_path / "work", "7.7", "amd64")
    work.ensure()

    work.stage_network_boot()
    work.stage_network_boot()

    assert (work.tftp_dir / "auto_install").readlink() == work.sets_dir / "pxeboot"
    assert (work.tftp_dir / "bsd.rd").readlink() == work.sets_dir / "bsd.rd"


def test_remove(tmp_path: Path):
    work = WorkDirectory(tmp_path / "work", "7.7", "amd64")

    assert work.remove() is False

    work.ensure()
    (work.sets_dir / "bsd.rd").write_bytes(b"kernel")
    assert work.remove() is True
    assert not work.root.exists()
