from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from .descriptor_store import DescriptorStore
from .policy import SourcePolicy, policy_from_env
from .source_config import DEFAULT_VENDOR_API_BASE
from .source_utils import isoformat_utc, utc_now


def _check_writable(path: Path) -> bool:
    probe = path
    while not probe.exists():
        if probe.parent == probe:
            return False
        probe = probe.parent
    return probe.is_dir() and os.access(probe, os.W_OK)


def build_doctor_report(*, policy: Optional[SourcePolicy] = None) -> Dict[str, Any]:
    policy = policy or policy_from_env()
    report: Dict[str, Any] = {
        "generated_at": isoformat_utc(utc_now()),
        "ok": True,
        "checks": [],
    }

    def add_check(
        name: str,
        status: bool,
        *,
        detail: Optional[str] = None,
        remedy: Optional[str] = None,
        level: str = "warn",
    ) -> None:
        entry = {
            "name": name,
            "status": "ok" if status else "missing",
            "level": level,
            "detail": detail,
        }
        if remedy:
            entry["remedy"] = remedy
        report["checks"].append(entry)
        if not status and level == "warn":
            report["ok"] = False

    add_check(
        "PATCHSOURCE_APP_DIR",
        _check_writable(policy.app_dir),
        detail=str(policy.app_dir),
        remedy="Create the directory or point PATCHSOURCE_APP_DIR at a writable location.",
        level="warn",
    )

    store = DescriptorStore(policy.app_dir)
    files = store.files()
    parsed = store.list_descriptors()
    invalid = [d.id for d in parsed if d.validation_error() is not None]
    add_check(
        "mirror descriptors",
        not invalid,
        detail=f"{len(files)} file(s) in {store.mirrors_dir}; {len(parsed)} readable",
        remedy=f"Fix or delete invalid descriptor(s): {', '.join(invalid)}" if invalid else None,
        level="warn",
    )

    enabled = [d for d in parsed if d.enabled and d.validation_error() is None]
    add_check(
        "enabled mirrors",
        bool(enabled),
        detail=f"{len(enabled)}: {', '.join(d.id for d in enabled)}" if enabled else "no mirrors enabled",
        remedy=None if enabled else "Run `patchsource discover <url> --save` to add a mirror.",
        level="info",
    )

    if policy.disable_vendor:
        add_check("PATCHSOURCE_DISABLE_VENDOR", True, detail="Official source disabled", level="info")
    overridden = policy.vendor_api_base != DEFAULT_VENDOR_API_BASE
    add_check(
        "PATCHSOURCE_VENDOR_API_BASE",
        True,
        detail=f"{policy.vendor_api_base} (override)" if overridden else f"{policy.vendor_api_base} (default)",
        level="info",
    )

    return report


def format_doctor_report(report: Dict[str, Any]) -> str:
    lines: List[str] = []
    lines.append("patchsource doctor")
    lines.append(f"Generated: {report.get('generated_at')}")
    lines.append("")
    for check in report.get("checks", []):
        name = check.get("name", "check")
        status = check.get("status", "unknown")
        level = check.get("level", "info")
        detail = check.get("detail")
        lines.append(f"- [{level}] {name}: {status}")
        if detail:
            lines.append(f"  detail: {detail}")
        remedy = check.get("remedy")
        if remedy:
            lines.append(f"  remedy: {remedy}")
    return "\n".join(lines).rstrip() + "\n"
