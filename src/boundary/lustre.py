"""
Boundary control bound to Lustre project quotas through the ``lfs`` tool.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
from pathlib import Path
from typing import Optional

from config import BoundarySettings
from moves.errors import MoveIOError

from .control import BoundaryControl, Capacity, FileLayout, Membership

_INT_RE = re.compile(r"-?\d+")


class LustreBoundaryControl(BoundaryControl):
    """Project-quota boundaries on a Lustre mount.

    Boundary IDs are Lustre project IDs. The placement domain is the MDT that
    holds a directory, so staging roots are created per MDT with
    ``lfs mkdir -i`` to keep the final rename MDT-local.
    """

    def __init__(
        self,
        boundaries: list[BoundarySettings],
        mount: Path,
        staging_dir_name: str = ".quota_mover_staging",
        lfs_binary: str = "lfs",
        command_timeout_seconds: float = 60.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        super().__init__(boundaries, staging_dir_name)
        self.mount = mount
        self.lfs_binary = lfs_binary
        self.command_timeout_seconds = command_timeout_seconds
        self.logger = logger or logging.getLogger("quota_mover")

    def membership(self, path: Path) -> Membership:
        # Output: " 1001 P /mnt/lustre/projects/a"
        output = self._run("project", "-d", str(path))
        fields = output.split()
        if len(fields) < 2:
            raise MoveIOError(f"Unexpected 'lfs project' output: {output!r}", path=str(path))
        project_id = fields[0]
        return Membership(
            boundary_id=None if project_id == "0" else project_id,
            inherit=fields[1] == "P",
        )

    def assign(self, path: Path, boundary_id: str, inherit: bool = True) -> None:
        args = ["project", "-p", str(boundary_id)]
        if inherit and path.is_dir() and not path.is_symlink():
            args.append("-s")
        args.append(str(path))
        self._run(*args)

    def capacity(self, boundary_id: str) -> Capacity:
        output = self._run("quota", "-q", "-p", str(boundary_id), str(self.mount))
        values = [token.rstrip("*") for token in output.split()]
        # filesystem, kbytes, quota, limit, grace, files, quota, limit, grace
        numbers = [value for value in values[1:] if _INT_RE.fullmatch(value)]
        if len(numbers) < 6:
            raise MoveIOError(f"Unexpected 'lfs quota' output: {output!r}")
        used_kb, soft_kb, hard_kb, used_files, soft_files, hard_files = (int(n) for n in numbers[:6])
        return Capacity(
            free_bytes=_remaining(used_kb, soft_kb, hard_kb, scale=1024),
            free_inodes=_remaining(used_files, soft_files, hard_files, scale=1),
        )

    def is_resident(self, path: Path) -> bool:
        if path.is_symlink() or not path.is_file():
            return True
        # Output: "/path: (0x0000000d) released exists archived, archive_id:1"
        output = self._run("hsm_state", str(path))
        _, _, flags = output.partition(")")
        return "released" not in flags.split(",")[0].split()

    def placement_domain(self, path: Path) -> str:
        directory = path if path.is_dir() and not path.is_symlink() else path.parent
        return f"mdt:{self._mdt_index(directory)}"

    def staging_root(self, boundary_id: str, destination_parent: Path) -> Path:
        mdt_index = self._mdt_index(destination_parent)
        base = self.boundary_root(boundary_id) / self.staging_dir_name
        root = base / f"mdt{mdt_index}"
        if root.is_dir():
            return root
        if not base.exists():
            self._run("mkdir", "-i", str(mdt_index), str(base))
            self.assign(base, boundary_id, inherit=True)
        self._run("mkdir", "-i", str(mdt_index), str(root))
        self.assign(root, boundary_id, inherit=True)
        self.logger.info("Created staging root %s on MDT %s", root, mdt_index)
        return root

    def staging_roots(self, boundary_id: str) -> list[Path]:
        base = self.boundary_root(boundary_id) / self.staging_dir_name
        if not base.is_dir():
            return []
        return sorted(child for child in base.iterdir() if child.is_dir() and child.name.startswith("mdt"))

    def get_layout(self, path: Path) -> Optional[FileLayout]:
        stripe_count = self._first_int(self._run("getstripe", "--stripe-count", str(path)))
        stripe_size = self._first_int(self._run("getstripe", "--stripe-size", str(path)))
        pool = self._run("getstripe", "--pool", str(path)).strip() or None
        if stripe_count is None or stripe_size is None:
            return None
        return FileLayout(stripe_count=stripe_count, stripe_size=stripe_size, pool=pool)

    def create_file(self, path: Path, layout: Optional[FileLayout], mode: int = 0o600) -> int:
        if layout is None:
            return super().create_file(path, layout, mode)
        args = ["setstripe", "-c", str(layout.stripe_count), "-S", str(layout.stripe_size)]
        if layout.pool:
            args.extend(["-p", layout.pool])
        args.append(str(path))
        self._run(*args)
        os.chmod(path, mode)
        return os.open(path, os.O_WRONLY)

    def _mdt_index(self, directory: Path) -> int:
        index = self._first_int(self._run("getdirstripe", "-m", str(directory)))
        if index is None:
            raise MoveIOError("Could not determine MDT index", path=str(directory))
        return index

    def _first_int(self, output: str) -> Optional[int]:
        match = _INT_RE.search(output)
        return int(match.group(0)) if match else None

    def _run(self, *args: str) -> str:
        command = [self.lfs_binary, *args]
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.command_timeout_seconds,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise MoveIOError(f"{' '.join(command)} failed: {exc}") from exc
        if result.returncode != 0:
            raise MoveIOError(
                f"{' '.join(command)} exited {result.returncode}: {result.stderr.strip()}"
            )
        return result.stdout


def _remaining(used: int, soft: int, hard: int, scale: int) -> Optional[int]:
    limit = hard or soft
    if limit <= 0:
        return None
    return max(limit - used, 0) * scale
