"""Runtime policy for the version sources, resolved from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from .source_config import (
    CACHE_DIR_PARTS,
    DEFAULT_APP_DIR,
    DEFAULT_VENDOR_API_BASE,
    DISCOVERY_TIMEOUT,
    VENDOR_CACHE_TTL_MINUTES,
    VERSION_CACHE_TTL_MINUTES,
)

load_dotenv(override=True)


def _env_int(name: str, default: int = 0) -> int:
    try:
        raw = os.getenv(name, "")
        return int(raw) if raw.strip() else default
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: str = "0") -> bool:
    raw = os.getenv(name, default)
    return str(raw).strip().lower() not in {"0", "false", "no", "off", ""}


def _env_path(name: str, default: Path) -> Path:
    raw = (os.getenv(name) or "").strip()
    return Path(raw).expanduser() if raw else default


@dataclass(frozen=True, slots=True)
class SourcePolicy:
    app_dir: Path
    vendor_api_base: str = DEFAULT_VENDOR_API_BASE
    vendor_cache_ttl_minutes: int = VENDOR_CACHE_TTL_MINUTES
    version_cache_ttl_minutes: int = VERSION_CACHE_TTL_MINUTES
    discovery_timeout: int = DISCOVERY_TIMEOUT
    disable_vendor: bool = False

    @property
    def cache_dir(self) -> Path:
        return self.app_dir.joinpath(*CACHE_DIR_PARTS)


def policy_from_env() -> SourcePolicy:
    """Build a policy from ``PATCHSOURCE_*`` environment variables."""

    return SourcePolicy(
        app_dir=_env_path("PATCHSOURCE_APP_DIR", DEFAULT_APP_DIR),
        vendor_api_base=(os.getenv("PATCHSOURCE_VENDOR_API_BASE") or DEFAULT_VENDOR_API_BASE).rstrip("/"),
        vendor_cache_ttl_minutes=max(1, _env_int("PATCHSOURCE_VENDOR_CACHE_MINUTES", VENDOR_CACHE_TTL_MINUTES)),
        version_cache_ttl_minutes=max(1, _env_int("PATCHSOURCE_VERSION_TTL_MINUTES", VERSION_CACHE_TTL_MINUTES)),
        discovery_timeout=max(1, _env_int("PATCHSOURCE_DISCOVERY_TIMEOUT", DISCOVERY_TIMEOUT)),
        disable_vendor=_env_bool("PATCHSOURCE_DISABLE_VENDOR", "0"),
    )


DEFAULT_POLICY = policy_from_env()

__all__ = ["DEFAULT_POLICY", "SourcePolicy", "policy_from_env"]
