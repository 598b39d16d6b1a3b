"""Descriptor persistence: one ``<id>.mirror.json`` file per mirror.

Loading never raises: unreadable or invalid files are logged and skipped.
Files are read in lexicographic order so that, when two files claim the same
id, the first one wins deterministically; saving refuses to create a second
file for an id another file already claims.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import aiohttp

from .descriptor import MirrorDescriptor
from .mirror_source import MirrorSource
from .source_config import MIRROR_FILE_SUFFIX, MIRRORS_DIR_NAME
from .source_utils import is_safe_id

logger = logging.getLogger(__name__)


def default_descriptors() -> List[MirrorDescriptor]:
    """Built-in mirror set written on first run (currently none ship)."""

    return []


class DescriptorStore:
    def __init__(self, app_dir: Path) -> None:
        self.app_dir = Path(app_dir)

    @property
    def mirrors_dir(self) -> Path:
        return self.app_dir / MIRRORS_DIR_NAME

    def path_for(self, mirror_id: str) -> Path:
        return self.mirrors_dir / f"{mirror_id}{MIRROR_FILE_SUFFIX}"

    def files(self) -> List[Path]:
        if not self.mirrors_dir.is_dir():
            return []
        return sorted(p for p in self.mirrors_dir.glob(f"*{MIRROR_FILE_SUFFIX}") if p.is_file())

    def _read(self, path: Path) -> Optional[MirrorDescriptor]:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            return MirrorDescriptor.from_dict(payload)
        except (OSError, ValueError) as exc:
            logger.warning("Invalid mirror file %s: %s", path.name, exc)
            return None

    def _read_all(self) -> List[Tuple[Path, MirrorDescriptor]]:
        loaded = []
        for path in self.files():
            descriptor = self._read(path)
            if descriptor is not None:
                loaded.append((path, descriptor))
        return loaded

    def ensure_defaults(self) -> None:
        """Create the directory and default descriptors when none exist yet."""

        if self.files():
            return
        logger.info("No mirror definitions found in %s, generating defaults", self.mirrors_dir)
        self.mirrors_dir.mkdir(parents=True, exist_ok=True)
        for descriptor in default_descriptors():
            try:
                self._write(descriptor)
            except OSError as exc:
                logger.warning("Failed to generate default mirror %s: %s", descriptor.id, exc)

    def load_descriptors(self) -> List[MirrorDescriptor]:
        """Valid, enabled, uniquely-identified descriptors sorted by priority."""

        self.ensure_defaults()
        seen: Dict[str, Path] = {}
        valid: List[MirrorDescriptor] = []
        for path, descriptor in self._read_all():
            error = descriptor.validation_error()
            if error is not None:
                logger.warning("Skipping mirror file %s: %s", path.name, error)
                continue
            if not descriptor.enabled:
                logger.info("Mirror '%s' is disabled, skipping", descriptor.id)
                continue
            if descriptor.id in seen:
                logger.warning(
                    "Skipping mirror file %s: id '%s' already loaded from %s",
                    path.name,
                    descriptor.id,
                    seen[descriptor.id].name,
                )
                continue
            seen[descriptor.id] = path
            valid.append(descriptor)
        valid.sort(key=lambda d: d.priority)
        return valid

    def load_all(self, session: Optional[aiohttp.ClientSession] = None, **source_kwargs) -> List[MirrorSource]:
        """Materialize mirror sources from the descriptor files, sorted by priority."""

        sources = []
        for descriptor in self.load_descriptors():
            sources.append(MirrorSource(descriptor, session, **source_kwargs))
            logger.info(
                "Loaded mirror: %s (%s) [priority=%d, type=%s]",
                descriptor.name,
                descriptor.id,
                descriptor.priority,
                descriptor.source_type,
            )
        logger.info("Loaded %d mirror source(s) from %s", len(sources), self.mirrors_dir)
        return sources

    def list_descriptors(self) -> List[MirrorDescriptor]:
        """Every readable descriptor with an id, disabled ones included, sorted by priority."""

        descriptors = [d for _, d in self._read_all() if d.id]
        descriptors.sort(key=lambda d: d.priority)
        return descriptors

    def get(self, mirror_id: str) -> Optional[MirrorDescriptor]:
        for _, descriptor in self._read_all():
            if descriptor.id == mirror_id:
                return descriptor
        return None

    def _write(self, descriptor: MirrorDescriptor) -> Path:
        path = self.path_for(descriptor.id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(descriptor.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
        return path

    def save(self, descriptor: MirrorDescriptor) -> Path:
        if descriptor is None or not descriptor.id or not descriptor.id.strip():
            raise ValueError("Mirror must have a valid id")
        if not is_safe_id(descriptor.id):
            raise ValueError(f"Mirror id '{descriptor.id}' is not filesystem-safe")
        target = self.path_for(descriptor.id)
        for path, existing in self._read_all():
            if existing.id == descriptor.id and path != target:
                raise ValueError(f"Mirror id '{descriptor.id}' is already defined in {path.name}")
        path = self._write(descriptor)
        logger.info("Saved mirror: %s", path.name)
        return path

    def delete(self, mirror_id: str) -> bool:
        if not is_safe_id(mirror_id):
            return False
        path = self.path_for(mirror_id)
        if not path.exists():
            return False
        path.unlink()
        logger.info("Deleted mirror: %s", path.name)
        return True

    def exists(self, mirror_id: str) -> bool:
        if not is_safe_id(mirror_id):
            return False
        return self.path_for(mirror_id).exists()


__all__ = ["DescriptorStore", "default_descriptors"]
