"""
Confirm a staged copy matches the live source before it is committed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from moves.errors import SourceMutatedError, VerificationError
from moves.models import FileRecord
from moves.tree import build_record, iter_tree
from utils.cancellation import CancelToken

DEFAULT_BLOCK_TOLERANCE = 8


@dataclass(frozen=True)
class VerificationReport:
    """Summary of a successful verification pass."""

    entries: int
    logical_bytes: int
    allocated_blocks: int


class Verifier:
    """Compare source and staged trees entry by entry.

    ``block_tolerance`` is expressed in 512-byte allocation units and absorbs
    block-size rounding between the two locations. Anything beyond it is a
    real difference, e.g. a sparse file that was staged densely.
    """

    def __init__(
        self,
        block_tolerance: int = DEFAULT_BLOCK_TOLERANCE,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.block_tolerance = max(int(block_tolerance), 0)
        self.logger = logger or logging.getLogger("quota_mover")

    def verify(
        self,
        source_root: Path,
        staged_root: Path,
        snapshot: dict[str, FileRecord],
        cancel: Optional[CancelToken] = None,
    ) -> VerificationReport:
        live = self._scan_source(source_root, cancel)
        staged = self._scan(staged_root, cancel)
        self._check_unchanged(snapshot, live)

        missing = sorted(set(live) - set(staged))
        extra = sorted(set(staged) - set(live))
        if missing:
            raise VerificationError(
                f"{len(missing)} entries missing from staged copy", path=missing[0] or "."
            )
        if extra:
            raise VerificationError(
                f"{len(extra)} unexpected entries in staged copy", path=extra[0] or "."
            )

        logical_bytes = 0
        allocated_blocks = 0
        for relative in sorted(live):
            if cancel is not None:
                cancel.check(relative)
            source = live[relative]
            copy = staged[relative]
            label = relative or "."
            if source.kind != copy.kind:
                raise VerificationError(f"Kind mismatch: {source.kind} vs {copy.kind}", path=label)
            if source.kind == "symlink" and source.link_target != copy.link_target:
                raise VerificationError(
                    f"Link target mismatch: {source.link_target!r} vs {copy.link_target!r}", path=label
                )
            if source.kind != "file":
                continue
            if source.size != copy.size:
                raise VerificationError(f"Size mismatch: {source.size} vs {copy.size}", path=label)
            if abs(source.blocks - copy.blocks) > self.block_tolerance:
                raise VerificationError(
                    f"Allocation mismatch: {source.blocks} vs {copy.blocks} blocks", path=label
                )
            logical_bytes += source.size
            allocated_blocks += copy.blocks

        self.logger.info(
            "Verified %s against %s (%s entries, %s bytes)",
            staged_root,
            source_root,
            len(live),
            logical_bytes,
        )
        return VerificationReport(
            entries=len(live), logical_bytes=logical_bytes, allocated_blocks=allocated_blocks
        )

    def _scan_source(self, root: Path, cancel: Optional[CancelToken]) -> dict[str, FileRecord]:
        try:
            return self._scan(root, cancel)
        except FileNotFoundError as exc:
            raise SourceMutatedError(
                "Source entry vanished during verification", path=exc.filename or str(root)
            ) from exc

    def _scan(self, root: Path, cancel: Optional[CancelToken]) -> dict[str, FileRecord]:
        return {
            relative: build_record(relative, path, entry_stat)
            for relative, path, entry_stat in iter_tree(root, cancel)
        }

    def _check_unchanged(self, snapshot: dict[str, FileRecord], live: dict[str, FileRecord]) -> None:
        """Fail if the source changed since the snapshot taken when staging began."""
        for relative, recorded in snapshot.items():
            label = relative or "."
            current = live.get(relative)
            if current is None:
                raise SourceMutatedError("Source entry removed during move", path=label)
            if current.kind != recorded.kind:
                raise SourceMutatedError("Source entry replaced during move", path=label)
            if recorded.kind == "file" and current.mtime_ns != recorded.mtime_ns:
                raise SourceMutatedError("Source file modified during move", path=label)
        added = sorted(set(live) - set(snapshot))
        if added:
            raise SourceMutatedError("Source entry added during move", path=added[0])
