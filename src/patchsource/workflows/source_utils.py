"""Shared helper functions used by the version sources."""

from __future__ import annotations

import platform
import re
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Pattern, Tuple
from urllib.parse import urlparse, urlunparse

from .source_config import (
    BRANCH_ALIASES,
    BRANCH_RELEASE,
    ID_STRIP_TOKENS,
    JSON_ROOT_TOKEN,
)

_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9._-]+$")
_PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")
_UNSAFE_FILE_CHARS_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def idna_normalize(host: str) -> str:
    """Return a lowercase, IDNA-normalized host name."""

    h = (host or "").strip().rstrip(".").lower()
    if not h:
        return ""
    try:
        h = h.encode("idna").decode("ascii")
    except UnicodeError:
        pass
    return h


def host_os() -> str:
    """``windows``, ``darwin`` or ``linux`` for the running interpreter."""

    if sys.platform.startswith("win"):
        return "windows"
    if sys.platform == "darwin":
        return "darwin"
    if sys.platform.startswith("linux"):
        return "linux"
    return "unknown"


def host_arch() -> str:
    machine = platform.machine().lower()
    if machine in {"arm64", "aarch64"}:
        return "arm64"
    return "amd64"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat_utc(moment: datetime) -> str:
    """Render an aware datetime as ``YYYY-MM-DDTHH:MM:SSZ``."""

    return moment.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def parse_utc(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp written by :func:`isoformat_utc`; None when unparseable."""

    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_safe_id(value: Optional[str]) -> bool:
    """True when the id can be used verbatim as a file name stem."""

    if not value or not value.strip():
        return False
    if value in {".", ".."}:
        return False
    return bool(_SAFE_ID_RE.match(value))


def sanitize_file_name(name: str) -> str:
    """Replace characters that are invalid in file names with underscores."""

    cleaned = _UNSAFE_FILE_CHARS_RE.sub("_", (name or "").strip())
    return cleaned.rstrip(". ") or "_"


def normalize_branch(branch: Optional[str]) -> str:
    """Map branch aliases onto canonical names; unknown values become ``release``."""

    token = (branch or "").strip().lower()
    return BRANCH_ALIASES.get(token, BRANCH_RELEASE)


def map_token(mapping: Optional[Mapping[str, str]], token: str) -> str:
    if mapping and token in mapping:
        return mapping[token]
    return token


def apply_placeholders(
    template: str,
    *,
    base: str = "",
    os_name: str = "",
    arch: str = "",
    branch: str = "",
    version: int = 0,
    from_version: int = 0,
    to_version: int = 0,
) -> str:
    """Substitute ``{base,os,arch,branch,version,from,to}`` in a URL template."""

    values = {
        "base": base or "",
        "os": os_name,
        "arch": arch,
        "branch": branch,
        "version": str(version),
        "from": str(from_version),
        "to": str(to_version),
    }
    return _PLACEHOLDER_RE.sub(lambda m: values.get(m.group(1), m.group(0)), template or "")


def normalize_base_url(raw: str) -> Optional[str]:
    """Trim, default the scheme to https and strip trailing slashes.

    Returns None when the result has no host.
    """

    text = (raw or "").strip().rstrip("/")
    if not text:
        return None
    if "://" not in text:
        text = "https://" + text
    parsed = urlparse(text)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc or not parsed.hostname:
        return None
    path = parsed.path.rstrip("/")
    return urlunparse((parsed.scheme, parsed.netloc, path, "", "", ""))


def candidate_base_urls(url: str) -> List[str]:
    """Full URL, bare authority, then each parent path from longest to shortest."""

    parsed = urlparse(url)
    authority = f"{parsed.scheme}://{parsed.netloc}"
    candidates: List[str] = [url]
    if authority not in candidates:
        candidates.append(authority)
    parts = [p for p in parsed.path.split("/") if p]
    for i in range(len(parts) - 1, 0, -1):
        parent = f"{authority}/" + "/".join(parts[:i])
        if parent not in candidates:
            candidates.append(parent)
    return candidates


def join_url(base: str, path: str) -> str:
    if not path:
        return base
    return base.rstrip("/") + "/" + path.lstrip("/")


def mirror_id_from_host(host: str) -> str:
    """Derive a filesystem-safe mirror id from a host name."""

    ident = idna_normalize(host).replace(".", "-")
    for token in ID_STRIP_TOKENS:
        ident = ident.replace(token, "")
    ident = re.sub(r"[^a-z0-9._-]", "-", ident).strip("-")
    return ident or "mirror"


def mirror_name_from_host(host: str) -> str:
    """Human-readable name: the second-level label, capitalized."""

    parts = [p for p in (host or "").split(".") if p]
    if len(parts) < 2:
        return host
    name = parts[-2]
    if name.lower() == "www" and len(parts) >= 3:
        name = parts[-3]
    return name[:1].upper() + name[1:]


def compile_file_pattern(template: str, os_name: str, arch: str) -> Pattern[str]:
    """Compile a filename template into an anchored, case-insensitive regex.

    ``{version}``, ``{from}`` and ``{to}`` become named numeric groups; ``{os}`` and
    ``{arch}`` are matched literally.
    """

    pieces: List[str] = []
    pos = 0
    for match in _PLACEHOLDER_RE.finditer(template):
        pieces.append(re.escape(template[pos:match.start()]))
        name = match.group(1)
        if name == "version":
            pieces.append(r"(?P<version>\d+)")
        elif name == "from":
            pieces.append(r"(?P<from>\d+)")
        elif name == "to":
            pieces.append(r"(?P<to>\d+)")
        elif name == "os":
            pieces.append(re.escape(os_name))
        elif name == "arch":
            pieces.append(re.escape(arch))
        else:
            pieces.append(re.escape(match.group(0)))
        pos = match.end()
    pieces.append(re.escape(template[pos:]))
    return re.compile("^" + "".join(pieces) + "$", re.IGNORECASE)


def parse_full_file_name(file_name: str, template: str, os_name: str, arch: str) -> Optional[int]:
    """``v3-linux-amd64.pwr`` -> 3 for the default full-build template."""

    match = compile_file_pattern(template, os_name.lower(), arch).match(file_name or "")
    if not match or "version" not in match.groupdict():
        return None
    return int(match.group("version"))


def parse_diff_file_name(
    file_name: str, template: str, os_name: str, arch: str
) -> Optional[Tuple[int, int]]:
    """``v2~5-windows-amd64.pwr`` -> (2, 5) for the default diff template."""

    match = compile_file_pattern(template, os_name.lower(), arch).match(file_name or "")
    if not match:
        return None
    groups = match.groupdict()
    if "from" not in groups or "to" not in groups:
        return None
    return int(groups["from"]), int(groups["to"])


def _as_version(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").isdigit():
            return int(text)
    return None


def _collect_versions(values: Iterable[Any]) -> List[int]:
    found = {v for v in (_as_version(item) for item in values) if v is not None}
    return sorted(found, reverse=True)


def parse_versions_from_json(payload: Any, json_path: Optional[str]) -> List[int]:
    """Extract a distinct, descending version list from a decoded JSON document.

    Supported paths:
      - ``items[].version``: array of objects; an empty or ``$root`` prefix means the root
      - ``$root`` or None: the root is an array
      - ``a.b.c``: dotted path to a number, numeric string or array
      - ``versions``: a top-level property holding an array
    """

    if json_path and "[]." in json_path:
        array_name, field_name = json_path.split("[].", 1)
        if not array_name or array_name == JSON_ROOT_TOKEN:
            array = payload
        elif isinstance(payload, dict):
            array = payload.get(array_name)
        else:
            array = None
        if not isinstance(array, list):
            return []
        return _collect_versions(item.get(field_name) for item in array if isinstance(item, dict))

    if not json_path or json_path == JSON_ROOT_TOKEN:
        return _collect_versions(payload) if isinstance(payload, list) else []

    if "." in json_path:
        current: Any = payload
        for part in json_path.split("."):
            if not isinstance(current, dict) or part not in current:
                return []
            current = current[part]
        if isinstance(current, list):
            return _collect_versions(current)
        single = _as_version(current)
        return [single] if single is not None else []

    if not isinstance(payload, dict):
        return []
    values = payload.get(json_path)
    return _collect_versions(values) if isinstance(values, list) else []


def parse_versions_from_html(html: str, pattern: Optional[str], min_file_size: int = 0) -> List[int]:
    """Regex-extract versions from a directory listing.

    Group 1 is the version; an optional group 2 is a byte size checked against
    ``min_file_size``.
    """

    if not html or not pattern:
        return []
    try:
        regex = re.compile(pattern, re.IGNORECASE)
    except re.error:
        return []
    if regex.groups < 1:
        return []
    found = set()
    for match in regex.finditer(html):
        version = _as_version(match.group(1))
        if version is None:
            continue
        if min_file_size > 0 and regex.groups >= 2 and match.group(2) is not None:
            size = _as_version(match.group(2))
            if size is not None and size < min_file_size:
                continue
        found.add(version)
    return sorted(found, reverse=True)


def string_map(value: Any) -> Dict[str, str]:
    """Keep only string->string pairs of a JSON object."""

    if not isinstance(value, dict):
        return {}
    return {str(k): v for k, v in value.items() if isinstance(v, str) and v.strip()}


__all__ = [
    "apply_placeholders",
    "candidate_base_urls",
    "compile_file_pattern",
    "host_arch",
    "host_os",
    "idna_normalize",
    "is_safe_id",
    "isoformat_utc",
    "join_url",
    "map_token",
    "mirror_id_from_host",
    "mirror_name_from_host",
    "normalize_base_url",
    "normalize_branch",
    "parse_diff_file_name",
    "parse_full_file_name",
    "parse_utc",
    "parse_versions_from_html",
    "parse_versions_from_json",
    "sanitize_file_name",
    "string_map",
    "utc_now",
]
