"""Mirror descriptor model.

A descriptor is the persisted description of one mirror: its identity, its
priority, and exactly one protocol payload selected by ``sourceType``:

- ``pattern``: URL templates plus a pluggable version-discovery method
- ``json-index``: one API URL returning a branch/platform tree of filename -> URL

Files are camelCase JSON with an explicit ``schemaVersion``; unknown keys are
ignored and absent optional keys take their defaults, so ``from_dict(to_dict(d))``
reproduces ``d`` field for field.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from ..core.keys import (
    K_API_URL,
    K_ARCH_MAPPING,
    K_BASE_URL,
    K_BRANCH_MAPPING,
    K_CACHE,
    K_DESCRIPTION,
    K_DIFF,
    K_DIFF_BASED_BRANCHES,
    K_DIFF_PATCH_URL,
    K_ENABLED,
    K_FILE_NAME_PATTERN,
    K_FULL,
    K_FULL_BUILD_URL,
    K_HTML_PATTERN,
    K_ID,
    K_INDEX_TTL_MINUTES,
    K_JSON_INDEX,
    K_JSON_PATH,
    K_METHOD,
    K_MIN_FILE_SIZE_BYTES,
    K_NAME,
    K_OS_MAPPING,
    K_PATTERN,
    K_PING_TIMEOUT_SECONDS,
    K_PING_URL,
    K_PLATFORM_MAPPING,
    K_PRIORITY,
    K_ROOT_PATH,
    K_SCHEMA_VERSION,
    K_SIGNATURE_URL,
    K_SOURCE_TYPE,
    K_SPEED_TEST,
    K_SPEED_TEST_SIZE_BYTES,
    K_SPEED_TEST_TTL_MINUTES,
    K_STATIC_VERSIONS,
    K_STRUCTURE,
    K_URL,
    K_VERSION_DISCOVERY,
)
from .source_config import (
    DEFAULT_DIFF_FILE_PATTERN,
    DEFAULT_FULL_BUILD_URL,
    DEFAULT_FULL_FILE_PATTERN,
    DEFAULT_INDEX_ROOT,
    DEFAULT_INDEX_TTL_MINUTES,
    DEFAULT_PING_TIMEOUT,
    DEFAULT_PRIORITY,
    DEFAULT_SPEED_TTL_MINUTES,
    DESCRIPTOR_SCHEMA_VERSION,
    DISCOVERY_HTML_AUTOINDEX,
    DISCOVERY_JSON_API,
    DISCOVERY_STATIC_LIST,
    SOURCE_TYPE_JSON_INDEX,
    SOURCE_TYPE_PATTERN,
    SPEED_TEST_SIZE_BYTES,
    STRUCTURE_FLAT,
    STRUCTURE_GROUPED,
)
from .source_utils import is_safe_id


def _safe_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() not in {"0", "false", "no", "off", ""}
    return default


def _opt_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def _opt_int_list(value: Any) -> Optional[List[int]]:
    if not isinstance(value, list):
        return None
    out: List[int] = []
    for item in value:
        if isinstance(item, bool):
            continue
        try:
            out.append(int(item))
        except (TypeError, ValueError):
            continue
    return out


def _opt_mapping(value: Any) -> Optional[Dict[str, str]]:
    if not isinstance(value, dict):
        return None
    return {str(k): str(v) for k, v in value.items() if isinstance(v, str)}


def _compact(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in payload.items() if value is not None}


@dataclass
class VersionDiscoveryConfig:
    method: str = DISCOVERY_JSON_API
    url: Optional[str] = None
    json_path: Optional[str] = None
    html_pattern: Optional[str] = None
    min_file_size_bytes: int = 0
    static_versions: Optional[List[int]] = None

    def to_dict(self) -> Dict[str, Any]:
        return _compact(
            {
                K_METHOD: self.method,
                K_URL: self.url,
                K_JSON_PATH: self.json_path,
                K_HTML_PATTERN: self.html_pattern,
                K_MIN_FILE_SIZE_BYTES: self.min_file_size_bytes,
                K_STATIC_VERSIONS: list(self.static_versions) if self.static_versions is not None else None,
            }
        )

    @classmethod
    def from_dict(cls, data: Any) -> "VersionDiscoveryConfig":
        if not isinstance(data, dict):
            return cls()
        method = _opt_str(data.get(K_METHOD)) or DISCOVERY_JSON_API
        return cls(
            method=method.strip().lower(),
            url=_opt_str(data.get(K_URL)),
            json_path=_opt_str(data.get(K_JSON_PATH)),
            html_pattern=_opt_str(data.get(K_HTML_PATTERN)),
            min_file_size_bytes=max(0, _safe_int(data.get(K_MIN_FILE_SIZE_BYTES), 0)),
            static_versions=_opt_int_list(data.get(K_STATIC_VERSIONS)),
        )


@dataclass
class PatternConfig:
    base_url: str = ""
    full_build_url: str = DEFAULT_FULL_BUILD_URL
    diff_patch_url: Optional[str] = None
    signature_url: Optional[str] = None
    version_discovery: VersionDiscoveryConfig = field(default_factory=VersionDiscoveryConfig)
    os_mapping: Optional[Dict[str, str]] = None
    arch_mapping: Optional[Dict[str, str]] = None
    branch_mapping: Optional[Dict[str, str]] = None
    diff_based_branches: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return _compact(
            {
                K_FULL_BUILD_URL: self.full_build_url,
                K_DIFF_PATCH_URL: self.diff_patch_url,
                K_SIGNATURE_URL: self.signature_url,
                K_BASE_URL: self.base_url,
                K_VERSION_DISCOVERY: self.version_discovery.to_dict(),
                K_OS_MAPPING: dict(self.os_mapping) if self.os_mapping is not None else None,
                K_ARCH_MAPPING: dict(self.arch_mapping) if self.arch_mapping is not None else None,
                K_BRANCH_MAPPING: dict(self.branch_mapping) if self.branch_mapping is not None else None,
                K_DIFF_BASED_BRANCHES: list(self.diff_based_branches),
            }
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PatternConfig":
        return cls(
            base_url=(_opt_str(data.get(K_BASE_URL)) or "").rstrip("/"),
            full_build_url=_opt_str(data.get(K_FULL_BUILD_URL)) or DEFAULT_FULL_BUILD_URL,
            diff_patch_url=_opt_str(data.get(K_DIFF_PATCH_URL)),
            signature_url=_opt_str(data.get(K_SIGNATURE_URL)),
            version_discovery=VersionDiscoveryConfig.from_dict(data.get(K_VERSION_DISCOVERY)),
            os_mapping=_opt_mapping(data.get(K_OS_MAPPING)),
            arch_mapping=_opt_mapping(data.get(K_ARCH_MAPPING)),
            branch_mapping=_opt_mapping(data.get(K_BRANCH_MAPPING)),
            diff_based_branches=_str_list(data.get(K_DIFF_BASED_BRANCHES)),
        )


@dataclass
class FileNamePatternConfig:
    full: str = DEFAULT_FULL_FILE_PATTERN
    diff: str = DEFAULT_DIFF_FILE_PATTERN

    def to_dict(self) -> Dict[str, Any]:
        return {K_FULL: self.full, K_DIFF: self.diff}

    @classmethod
    def from_dict(cls, data: Any) -> "FileNamePatternConfig":
        if not isinstance(data, dict):
            return cls()
        return cls(
            full=_opt_str(data.get(K_FULL)) or DEFAULT_FULL_FILE_PATTERN,
            diff=_opt_str(data.get(K_DIFF)) or DEFAULT_DIFF_FILE_PATTERN,
        )


@dataclass
class JsonIndexConfig:
    api_url: str = ""
    root_path: str = DEFAULT_INDEX_ROOT
    structure: str = STRUCTURE_FLAT
    platform_mapping: Optional[Dict[str, str]] = None
    file_name_pattern: FileNamePatternConfig = field(default_factory=FileNamePatternConfig)
    diff_based_branches: List[str] = field(default_factory=list)

    @property
    def is_grouped(self) -> bool:
        return self.structure == STRUCTURE_GROUPED

    def to_dict(self) -> Dict[str, Any]:
        return _compact(
            {
                K_API_URL: self.api_url,
                K_ROOT_PATH: self.root_path,
                K_STRUCTURE: self.structure,
                K_PLATFORM_MAPPING: dict(self.platform_mapping) if self.platform_mapping is not None else None,
                K_FILE_NAME_PATTERN: self.file_name_pattern.to_dict(),
                K_DIFF_BASED_BRANCHES: list(self.diff_based_branches),
            }
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JsonIndexConfig":
        structure = (_opt_str(data.get(K_STRUCTURE)) or STRUCTURE_FLAT).strip().lower()
        if structure not in {STRUCTURE_FLAT, STRUCTURE_GROUPED}:
            structure = STRUCTURE_FLAT
        return cls(
            api_url=_opt_str(data.get(K_API_URL)) or "",
            root_path=_opt_str(data.get(K_ROOT_PATH)) or DEFAULT_INDEX_ROOT,
            structure=structure,
            platform_mapping=_opt_mapping(data.get(K_PLATFORM_MAPPING)),
            file_name_pattern=FileNamePatternConfig.from_dict(data.get(K_FILE_NAME_PATTERN)),
            diff_based_branches=_str_list(data.get(K_DIFF_BASED_BRANCHES)),
        )


@dataclass
class SpeedTestConfig:
    ping_url: Optional[str] = None
    ping_timeout_seconds: int = DEFAULT_PING_TIMEOUT
    speed_test_size_bytes: int = SPEED_TEST_SIZE_BYTES

    def to_dict(self) -> Dict[str, Any]:
        return _compact(
            {
                K_PING_URL: self.ping_url,
                K_PING_TIMEOUT_SECONDS: self.ping_timeout_seconds,
                K_SPEED_TEST_SIZE_BYTES: self.speed_test_size_bytes,
            }
        )

    @classmethod
    def from_dict(cls, data: Any) -> "SpeedTestConfig":
        if not isinstance(data, dict):
            return cls()
        return cls(
            ping_url=_opt_str(data.get(K_PING_URL)),
            ping_timeout_seconds=max(1, _safe_int(data.get(K_PING_TIMEOUT_SECONDS), DEFAULT_PING_TIMEOUT)),
            speed_test_size_bytes=max(1, _safe_int(data.get(K_SPEED_TEST_SIZE_BYTES), SPEED_TEST_SIZE_BYTES)),
        )


@dataclass
class CacheConfig:
    index_ttl_minutes: int = DEFAULT_INDEX_TTL_MINUTES
    speed_test_ttl_minutes: int = DEFAULT_SPEED_TTL_MINUTES

    def to_dict(self) -> Dict[str, Any]:
        return {
            K_INDEX_TTL_MINUTES: self.index_ttl_minutes,
            K_SPEED_TEST_TTL_MINUTES: self.speed_test_ttl_minutes,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "CacheConfig":
        if not isinstance(data, dict):
            return cls()
        return cls(
            index_ttl_minutes=max(0, _safe_int(data.get(K_INDEX_TTL_MINUTES), DEFAULT_INDEX_TTL_MINUTES)),
            speed_test_ttl_minutes=max(0, _safe_int(data.get(K_SPEED_TEST_TTL_MINUTES), DEFAULT_SPEED_TTL_MINUTES)),
        )


@dataclass
class MirrorDescriptor:
    id: str
    name: str = ""
    description: Optional[str] = None
    priority: int = DEFAULT_PRIORITY
    enabled: bool = True
    source_type: str = SOURCE_TYPE_PATTERN
    pattern: Optional[PatternConfig] = None
    json_index: Optional[JsonIndexConfig] = None
    speed_test: SpeedTestConfig = field(default_factory=SpeedTestConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    schema_version: int = DESCRIPTOR_SCHEMA_VERSION

    @property
    def payload(self) -> Union[PatternConfig, JsonIndexConfig, None]:
        if self.source_type == SOURCE_TYPE_PATTERN:
            return self.pattern
        if self.source_type == SOURCE_TYPE_JSON_INDEX:
            return self.json_index
        return None

    @property
    def diff_based_branches(self) -> List[str]:
        payload = self.payload
        return list(payload.diff_based_branches) if payload is not None else []

    def validation_error(self) -> Optional[str]:
        """Describe why this descriptor cannot be materialized, or None when valid."""

        if not self.id or not self.id.strip():
            return "descriptor has no id"
        if not is_safe_id(self.id):
            return f"id '{self.id}' is not filesystem-safe"
        if self.source_type == SOURCE_TYPE_PATTERN:
            if self.pattern is None:
                return "sourceType 'pattern' but no pattern config"
            if self.json_index is not None:
                return "sourceType 'pattern' but a jsonIndex config is also present"
            method = self.pattern.version_discovery.method
            if method not in {DISCOVERY_JSON_API, DISCOVERY_HTML_AUTOINDEX, DISCOVERY_STATIC_LIST}:
                return f"unknown version discovery method '{method}'"
            return None
        if self.source_type == SOURCE_TYPE_JSON_INDEX:
            if self.json_index is None:
                return "sourceType 'json-index' but no jsonIndex config"
            if self.pattern is not None:
                return "sourceType 'json-index' but a pattern config is also present"
            if not self.json_index.api_url:
                return "jsonIndex config has no apiUrl"
            return None
        return f"unknown sourceType '{self.source_type}'"

    def to_dict(self) -> Dict[str, Any]:
        return _compact(
            {
                K_SCHEMA_VERSION: self.schema_version,
                K_ID: self.id,
                K_NAME: self.name,
                K_DESCRIPTION: self.description,
                K_PRIORITY: self.priority,
                K_ENABLED: self.enabled,
                K_SOURCE_TYPE: self.source_type,
                K_PATTERN: self.pattern.to_dict() if self.pattern is not None else None,
                K_JSON_INDEX: self.json_index.to_dict() if self.json_index is not None else None,
                K_SPEED_TEST: self.speed_test.to_dict(),
                K_CACHE: self.cache.to_dict(),
            }
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MirrorDescriptor":
        """Build a descriptor from decoded JSON; raises ValueError when ``data`` is not an object."""

        if not isinstance(data, dict):
            raise ValueError("descriptor document must be a JSON object")
        pattern = data.get(K_PATTERN)
        json_index = data.get(K_JSON_INDEX)
        return cls(
            id=(_opt_str(data.get(K_ID)) or "").strip(),
            name=_opt_str(data.get(K_NAME)) or "",
            description=_opt_str(data.get(K_DESCRIPTION)),
            priority=_safe_int(data.get(K_PRIORITY), DEFAULT_PRIORITY),
            enabled=_as_bool(data.get(K_ENABLED), True),
            source_type=(_opt_str(data.get(K_SOURCE_TYPE)) or SOURCE_TYPE_PATTERN).strip().lower(),
            pattern=PatternConfig.from_dict(pattern) if isinstance(pattern, dict) else None,
            json_index=JsonIndexConfig.from_dict(json_index) if isinstance(json_index, dict) else None,
            speed_test=SpeedTestConfig.from_dict(data.get(K_SPEED_TEST)),
            cache=CacheConfig.from_dict(data.get(K_CACHE)),
            schema_version=_safe_int(data.get(K_SCHEMA_VERSION), DESCRIPTOR_SCHEMA_VERSION),
        )


__all__ = [
    "CacheConfig",
    "FileNamePatternConfig",
    "JsonIndexConfig",
    "MirrorDescriptor",
    "PatternConfig",
    "SpeedTestConfig",
    "VersionDiscoveryConfig",
]
