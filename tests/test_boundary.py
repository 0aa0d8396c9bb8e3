import os
import subprocess
from pathlib import Path

import pytest

import boundary.lustre
from boundary import FileLayout, LocalBoundaryControl, LustreBoundaryControl, build_boundary_control
from config import AppConfig, BoundarySettings
from moves.errors import ConfigurationError, MoveIOError


class FakeLfs:
    def __init__(self, outputs: dict[tuple[str, ...], str]) -> None:
        self.outputs = outputs
        self.calls: list[list[str]] = []

    def __call__(self, command, **kwargs):
        self.calls.append(command)
        key = tuple(command[1:3])
        if key not in self.outputs:
            return subprocess.CompletedProcess(command, 1, stdout="", stderr="unsupported")
        return subprocess.CompletedProcess(command, 0, stdout=self.outputs[key], stderr="")


def test_local_membership_uses_deepest_root(tmp_path: Path) -> None:
    outer = tmp_path / "projects"
    inner = outer / "team"
    (inner / "inbox").mkdir(parents=True)
    control = LocalBoundaryControl(
        [BoundarySettings("outer", outer), BoundarySettings("inner", inner, inherit=False)]
    )

    assert control.membership(inner / "inbox").boundary_id == "inner"
    assert control.membership(inner / "inbox").inherit is False
    assert control.membership(outer).boundary_id == "outer"
    assert control.membership(tmp_path).boundary_id is None
    with pytest.raises(ConfigurationError):
        control.assign(tmp_path, "outer")


def test_local_capacity_from_limits(tmp_path: Path) -> None:
    root = tmp_path / "quota"
    root.mkdir()
    (root / "used.bin").write_bytes(b"\x01" * 8192)
    control = LocalBoundaryControl([BoundarySettings("1001", root, bytes_limit=10**9, inodes_limit=10)])

    capacity = control.capacity("1001")

    assert capacity.free_inodes == 8
    assert 0 < capacity.free_bytes < 10**9
    with pytest.raises(ConfigurationError):
        control.capacity("missing")


def test_factory_builds_configured_backend(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        "\n".join(
            [
                "boundary_control:",
                "  backend: \"lustre\"",
                f"  mount: \"{tmp_path.as_posix()}\"",
                "  lfs_binary: \"/usr/bin/lfs\"",
                "boundaries:",
                "  - id: \"1001\"",
                "    root: \"proj\"",
            ]
        ),
        encoding="utf-8",
    )

    control = build_boundary_control(AppConfig.load(config_path))

    assert isinstance(control, LustreBoundaryControl)
    assert control.lfs_binary == "/usr/bin/lfs"
    assert control.boundary_ids() == ["1001"]


def test_lustre_membership_and_capacity(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    fake = FakeLfs(
        {
            ("project", "-d"): " 1001 P /mnt/lustre/proj/inbox\n",
            ("quota", "-q"): "/mnt/lustre 1024* 0 2048 - 3 0 100 -\n",
        }
    )
    monkeypatch.setattr(boundary.lustre.subprocess, "run", fake)
    control = LustreBoundaryControl([BoundarySettings("1001", tmp_path)], mount=tmp_path)

    membership = control.membership(tmp_path)
    capacity = control.capacity("1001")

    assert membership.boundary_id == "1001"
    assert membership.inherit is True
    assert capacity.free_bytes == (2048 - 1024) * 1024
    assert capacity.free_inodes == 97
    assert fake.calls[1][:5] == ["lfs", "quota", "-q", "-p", "1001"]


def test_lustre_unlimited_quota_and_residency(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    released = tmp_path / "released.dat"
    released.write_bytes(b"")
    fake = FakeLfs(
        {
            ("quota", "-q"): "/mnt/lustre 10 0 0 - 1 0 0 -\n",
            ("hsm_state", str(released)): f"{released}: (0x0000000d) released exists archived, archive_id:1\n",
        }
    )
    monkeypatch.setattr(boundary.lustre.subprocess, "run", fake)
    control = LustreBoundaryControl([BoundarySettings("1001", tmp_path)], mount=tmp_path)

    capacity = control.capacity("1001")

    assert capacity.free_bytes is None
    assert capacity.free_inodes is None
    assert control.is_resident(released) is False
    assert control.is_resident(tmp_path) is True


def test_lustre_staging_root_per_mdt(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    created: list[Path] = []

    def fake_run(command, **kwargs):
        if command[1] == "getdirstripe":
            return subprocess.CompletedProcess(command, 0, stdout="2\n", stderr="")
        if command[1] == "mkdir":
            path = Path(command[-1])
            path.mkdir()
            created.append(path)
        return subprocess.CompletedProcess(command, 0, stdout="", stderr="")

    monkeypatch.setattr(boundary.lustre.subprocess, "run", fake_run)
    control = LustreBoundaryControl([BoundarySettings("1001", tmp_path)], mount=tmp_path)

    root = control.staging_root("1001", tmp_path)

    assert root == tmp_path / ".quota_mover_staging" / "mdt2"
    assert created == [tmp_path / ".quota_mover_staging", root]
    assert control.staging_roots("1001") == [root]
    assert control.placement_domain(root) == "mdt:2"


def test_lustre_layout_is_applied_before_write(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[list[str]] = []

    def fake_run(command, **kwargs):
        calls.append(command)
        if command[1] == "setstripe":
            Path(command[-1]).touch()
        return subprocess.CompletedProcess(command, 0, stdout="", stderr="")

    monkeypatch.setattr(boundary.lustre.subprocess, "run", fake_run)
    control = LustreBoundaryControl([BoundarySettings("1001", tmp_path)], mount=tmp_path)
    target = tmp_path / "striped.dat"

    fd = control.create_file(target, FileLayout(stripe_count=4, stripe_size=1048576, pool="flash"), 0o600)
    try:
        assert target.exists()
    finally:
        os.close(fd)
    assert calls[0] == ["lfs", "setstripe", "-c", "4", "-S", "1048576", "-p", "flash", str(target)]


def test_lustre_command_failure_is_io_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(boundary.lustre.subprocess, "run", FakeLfs({}))
    control = LustreBoundaryControl([BoundarySettings("1001", tmp_path)], mount=tmp_path)

    with pytest.raises(MoveIOError):
        control.membership(tmp_path)
