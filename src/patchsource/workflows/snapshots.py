"""Best-effort JSON snapshots on disk (patch chains, merged version lists)."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from ..core.keys import (
    K_ARCH,
    K_BRANCH_FETCHED_AT,
    K_BRANCH_SOURCES,
    K_BRANCHES,
    K_FETCHED_AT_UTC,
    K_MIRROR_ID,
    K_MIRRORS,
    K_OFFICIAL,
    K_OS,
    K_PATCHES,
)
from .sources import PatchStep, VersionEntry
from .source_utils import isoformat_utc, parse_utc, utc_now

logger = logging.getLogger(__name__)

_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


def load_json(path: Path) -> Optional[Dict[str, Any]]:
    """Read a JSON object from disk; None when missing or unreadable."""

    try:
        if not path.exists():
            return None
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("Ignoring unreadable snapshot %s: %s", path, exc)
        return None
    return payload if isinstance(payload, dict) else None


def save_json(path: Path, payload: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")


def update_patch_snapshot(
    path: Path,
    os_name: str,
    arch: str,
    branch: str,
    steps: Iterable[PatchStep],
) -> Dict[str, Any]:
    """Overwrite one branch of the patch snapshot, keeping the other branches.

    The whole file is replaced when it belongs to a different os/arch.
    """

    existing = load_json(path) or {}
    if existing.get(K_OS) != os_name or existing.get(K_ARCH) != arch:
        existing = {}
    patches = existing.get(K_PATCHES)
    if not isinstance(patches, dict):
        patches = {}
    patches[branch] = [step.to_dict() for step in sorted(steps, key=lambda s: (s.to_version, s.from_version))]
    snapshot = {
        K_FETCHED_AT_UTC: isoformat_utc(utc_now()),
        K_OS: os_name,
        K_ARCH: arch,
        K_PATCHES: patches,
    }
    save_json(path, snapshot)
    return snapshot


@dataclass
class SourceBranches:
    """Per-source cached data: version entries and patch steps keyed by branch."""

    branches: Dict[str, List[VersionEntry]] = field(default_factory=dict)
    patches: Dict[str, List[PatchStep]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            K_BRANCHES: {b: [e.to_dict() for e in entries] for b, entries in self.branches.items()},
            K_PATCHES: {b: [s.to_dict() for s in steps] for b, steps in self.patches.items()},
        }

    @classmethod
    def from_dict(cls, data: Any) -> "SourceBranches":
        if not isinstance(data, dict):
            return cls()
        branches: Dict[str, List[VersionEntry]] = {}
        raw_branches = data.get(K_BRANCHES)
        if isinstance(raw_branches, dict):
            for branch, items in raw_branches.items():
                if isinstance(items, list):
                    entries = [VersionEntry.from_dict(i) for i in items if isinstance(i, dict)]
                    branches[str(branch)] = [e for e in entries if e is not None]
        patches: Dict[str, List[PatchStep]] = {}
        raw_patches = data.get(K_PATCHES)
        if isinstance(raw_patches, dict):
            for branch, items in raw_patches.items():
                if isinstance(items, list):
                    steps = [PatchStep.from_dict(i) for i in items if isinstance(i, dict)]
                    patches[str(branch)] = [s for s in steps if s is not None]
        return cls(branches=branches, patches=patches)


@dataclass
class VersionsSnapshot:
    """Merged view of everything the aggregator fetched for one os/arch."""

    os: str
    arch: str
    fetched_at: datetime = field(default_factory=utc_now)
    branch_fetched_at: Dict[str, datetime] = field(default_factory=dict)
    branch_sources: Dict[str, str] = field(default_factory=dict)
    official: SourceBranches = field(default_factory=SourceBranches)
    mirrors: Dict[str, SourceBranches] = field(default_factory=dict)

    def has_branch(self, branch: str) -> bool:
        if self.official.branches.get(branch):
            return True
        return any(m.branches.get(branch) for m in self.mirrors.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            K_FETCHED_AT_UTC: isoformat_utc(self.fetched_at),
            K_OS: self.os,
            K_ARCH: self.arch,
            K_BRANCH_FETCHED_AT: {b: isoformat_utc(t) for b, t in self.branch_fetched_at.items()},
            K_BRANCH_SOURCES: dict(self.branch_sources),
            K_OFFICIAL: self.official.to_dict(),
            K_MIRRORS: [{K_MIRROR_ID: mirror_id, **data.to_dict()} for mirror_id, data in self.mirrors.items()],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["VersionsSnapshot"]:
        os_name = data.get(K_OS)
        arch = data.get(K_ARCH)
        if not isinstance(os_name, str) or not isinstance(arch, str):
            return None
        branch_fetched_at: Dict[str, datetime] = {}
        raw_times = data.get(K_BRANCH_FETCHED_AT)
        if isinstance(raw_times, dict):
            for branch, value in raw_times.items():
                moment = parse_utc(value)
                if moment is not None:
                    branch_fetched_at[str(branch)] = moment
        raw_sources = data.get(K_BRANCH_SOURCES)
        branch_sources = {str(k): str(v) for k, v in raw_sources.items()} if isinstance(raw_sources, dict) else {}
        # Mirror entries without an id are dropped; a repeated id keeps the first entry.
        mirrors: Dict[str, SourceBranches] = {}
        raw_mirrors = data.get(K_MIRRORS)
        if isinstance(raw_mirrors, list):
            for item in raw_mirrors:
                if not isinstance(item, dict):
                    continue
                mirror_id = item.get(K_MIRROR_ID)
                if not isinstance(mirror_id, str) or not mirror_id.strip() or mirror_id in mirrors:
                    continue
                mirrors[mirror_id] = SourceBranches.from_dict(item)
        return cls(
            os=os_name,
            arch=arch,
            fetched_at=parse_utc(data.get(K_FETCHED_AT_UTC)) or _EPOCH,
            branch_fetched_at=branch_fetched_at,
            branch_sources=branch_sources,
            official=SourceBranches.from_dict(data.get(K_OFFICIAL)),
            mirrors=mirrors,
        )


__all__ = [
    "SourceBranches",
    "VersionsSnapshot",
    "load_json",
    "save_json",
    "update_patch_snapshot",
]
