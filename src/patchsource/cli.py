from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import aiohttp
import typer

from .workflows.aggregator import VersionAggregator
from .workflows.descriptor_store import DescriptorStore
from .workflows.discovery import MirrorDiscovery
from .workflows.doctor import build_doctor_report, format_doctor_report
from .workflows.http_utils import create_session
from .workflows.policy import SourcePolicy, policy_from_env
from .workflows.source_utils import host_arch, host_os
from .workflows.sources import VersionSource
from .workflows.vendor_source import VendorSource

T = TypeVar("T")

app = typer.Typer(add_help_option=False, no_args_is_help=False)


def _minimal_help() -> str:
    return """patchsource (version and mirror resolution)

Usage:
  patchsource discover <url> [--save] [--json]
  patchsource mirrors [--json]
  patchsource versions <branch> [--os <OS>] [--arch <ARCH>] [--json]
  patchsource speed [--json]
  patchsource delete <id>
  patchsource doctor

Common options:
  --json          Print machine-readable JSON to stdout only.
  --verbose, -v   Debug logging on stderr.

Discoverability:
  --help-full     Expanded help + env vars + files.
  --find <query>  Search commands, flags, env vars, files.
  --doctor        Run environment diagnostics and exit.
"""


def _help_full() -> str:
    return """patchsource CLI

Commands:
  discover   Probe a URL for a known mirror protocol; --save writes the descriptor.
  mirrors    List mirror descriptors (disabled ones included).
  versions   Merged version list for a branch across every available source.
  speed      Ping and throughput test for every enabled mirror.
  delete     Remove a mirror descriptor by id.
  doctor     Print environment diagnostics.

Branches:
  release, pre-release (aliases: prerelease, pre_release). Unknown names map to release.

Files (under PATCHSOURCE_APP_DIR):
  Mirrors/<id>.mirror.json   One descriptor per mirror.
  Cache/Game/versions.json   Merged per-source version cache.
  Cache/Game/patches.json    Patch chains per branch.

Important env vars:
  PATCHSOURCE_APP_DIR
  PATCHSOURCE_VENDOR_API_BASE
  PATCHSOURCE_VERSION_TTL_MINUTES
  PATCHSOURCE_VENDOR_CACHE_MINUTES
  PATCHSOURCE_DISCOVERY_TIMEOUT
  PATCHSOURCE_DISABLE_VENDOR

Troubleshooting:
  - Without an official session the vendor source is skipped; mirrors still answer.
  - Use `patchsource doctor` to find unreadable descriptors.
"""


_FIND_INDEX = [
    ("command", "discover", "Probe a URL for a mirror protocol."),
    ("command", "mirrors", "List mirror descriptors."),
    ("command", "versions", "Merged version list for a branch."),
    ("command", "speed", "Speed-test every enabled mirror."),
    ("command", "delete", "Remove a mirror descriptor by id."),
    ("command", "doctor", "Print environment diagnostics."),
    ("flag", "--save", "Persist the discovered descriptor."),
    ("flag", "--json", "Print JSON to stdout only."),
    ("flag", "--os", "Override the detected operating system."),
    ("flag", "--arch", "Override the detected architecture."),
    ("flag", "--verbose", "Debug logging."),
    ("flag", "--help-full", "Expanded help, env vars, files."),
    ("flag", "--find", "Search commands, flags, env vars, files."),
    ("flag", "--doctor", "Run environment diagnostics and exit."),
    ("env", "PATCHSOURCE_APP_DIR", "Root directory for descriptors and caches."),
    ("env", "PATCHSOURCE_VENDOR_API_BASE", "Override the official patch API base URL."),
    ("env", "PATCHSOURCE_VERSION_TTL_MINUTES", "Freshness window of the merged version cache."),
    ("env", "PATCHSOURCE_VENDOR_CACHE_MINUTES", "Freshness window of official patch steps."),
    ("env", "PATCHSOURCE_DISCOVERY_TIMEOUT", "Per-request timeout while probing mirrors."),
    ("env", "PATCHSOURCE_DISABLE_VENDOR", "Skip the official source entirely."),
    ("file", "Mirrors/<id>.mirror.json", "Mirror descriptor."),
    ("file", "Cache/Game/versions.json", "Merged version cache."),
    ("file", "Cache/Game/patches.json", "Patch chain cache."),
]


def _run_find(query: str) -> str:
    needle = (query or "").strip().lower()
    if not needle:
        return ""
    lines = []
    for category, name, desc in _FIND_INDEX:
        haystack = f"{category} {name} {desc}".lower()
        if needle in haystack:
            lines.append(f"{category} {name} - {desc}")
    return "\n".join(lines)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _emit_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, ensure_ascii=False) + "\n")


def _with_session(work: Callable[[aiohttp.ClientSession], Awaitable[T]]) -> T:
    async def runner() -> T:
        async with create_session() as session:
            return await work(session)

    return asyncio.run(runner())


def _build_sources(
    policy: SourcePolicy,
    session: aiohttp.ClientSession,
    os_name: str,
    arch: str,
) -> List[VersionSource]:
    store = DescriptorStore(policy.app_dir)
    sources: List[VersionSource] = list(store.load_all(session, os_name=os_name, arch=arch))
    if not policy.disable_vendor:
        sources.append(
            VendorSource(
                policy.app_dir,
                None,
                session=session,
                api_base=policy.vendor_api_base,
                cache_ttl_minutes=policy.vendor_cache_ttl_minutes,
                os_name=os_name,
                arch=arch,
            )
        )
    return sources


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    help: bool = typer.Option(False, "--help", "-h", is_eager=True, help="Show minimal help."),
    help_full: bool = typer.Option(False, "--help-full", is_eager=True, help="Show expanded help."),
    find: Optional[str] = typer.Option(None, "--find", is_eager=True, help="Search commands, flags, env vars, files."),
    doctor: bool = typer.Option(False, "--doctor", is_eager=True, help="Run environment diagnostics and exit."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging on stderr."),
) -> None:
    _configure_logging(verbose)
    if help_full:
        typer.echo(_help_full())
        raise typer.Exit(code=0)
    if find is not None:
        output = _run_find(find)
        if output:
            typer.echo(output)
        raise typer.Exit(code=0)
    if doctor:
        report = build_doctor_report()
        typer.echo(format_doctor_report(report))
        raise typer.Exit(code=0 if report.get("ok", True) else 2)
    if help or ctx.invoked_subcommand is None:
        typer.echo(_minimal_help())
        raise typer.Exit(code=0)


@app.command("doctor", add_help_option=True)
def doctor_cmd() -> None:
    """Print environment diagnostics."""
    report = build_doctor_report()
    typer.echo(format_doctor_report(report))
    raise typer.Exit(code=0 if report.get("ok", True) else 2)


@app.command("discover", add_help_option=True)
def discover_cmd(
    url: str = typer.Argument(..., help="Mirror URL to probe."),
    save: bool = typer.Option(False, "--save", help="Persist the discovered descriptor."),
    json_out: bool = typer.Option(False, "--json", help="Print the result JSON to stdout only."),
) -> None:
    policy = policy_from_env()

    async def work(session: aiohttp.ClientSession):
        return await MirrorDiscovery(session, timeout=policy.discovery_timeout).discover(url)

    result = _with_session(work)
    if json_out:
        _emit_json(result.to_dict())
    if not result.success or result.mirror is None:
        if not json_out:
            typer.echo(f"error: {result.error}", err=True)
        raise typer.Exit(code=2)
    if not json_out:
        typer.echo(f"Detected {result.detected_type}: {result.mirror.id} ({result.mirror.name})")
    if save:
        try:
            path = DescriptorStore(policy.app_dir).save(result.mirror)
        except (OSError, ValueError) as exc:
            typer.echo(f"error: {exc}", err=True)
            raise typer.Exit(code=3)
        if not json_out:
            typer.echo(f"Saved {path}")
    raise typer.Exit(code=0)


@app.command("mirrors", add_help_option=True)
def mirrors_cmd(
    json_out: bool = typer.Option(False, "--json", help="Print descriptors as JSON."),
) -> None:
    """List mirror descriptors, disabled ones included."""
    store = DescriptorStore(policy_from_env().app_dir)
    descriptors = store.list_descriptors()
    if json_out:
        _emit_json([d.to_dict() for d in descriptors])
        raise typer.Exit(code=0)
    if not descriptors:
        typer.echo(f"No mirrors in {store.mirrors_dir}")
        raise typer.Exit(code=0)
    for descriptor in descriptors:
        state = "enabled" if descriptor.enabled else "disabled"
        problem = descriptor.validation_error()
        suffix = f" invalid: {problem}" if problem else ""
        typer.echo(
            f"{descriptor.id}\t{descriptor.name}\tpriority={descriptor.priority}\t"
            f"{descriptor.source_type}\t{state}{suffix}"
        )
    raise typer.Exit(code=0)


@app.command("versions", add_help_option=True)
def versions_cmd(
    branch: str = typer.Argument("release", help="Branch name (release, pre-release)."),
    os_name: Optional[str] = typer.Option(None, "--os", help="Override the detected operating system."),
    arch: Optional[str] = typer.Option(None, "--arch", help="Override the detected architecture."),
    json_out: bool = typer.Option(False, "--json", help="Print the version list JSON to stdout only."),
) -> None:
    policy = policy_from_env()
    target_os = os_name or host_os()
    target_arch = arch or host_arch()

    async def work(session: aiohttp.ClientSession):
        aggregator = VersionAggregator(
            policy.app_dir,
            _build_sources(policy, session, target_os, target_arch),
            os_name=target_os,
            arch=target_arch,
            policy=policy,
        )
        return await aggregator.get_version_list_with_sources(branch)

    response = _with_session(work)
    if json_out:
        _emit_json(response.to_dict())
        raise typer.Exit(code=0 if response.versions else 2)
    if not response.versions:
        typer.echo(f"error: no versions found for {branch} ({target_os}/{target_arch})", err=True)
        raise typer.Exit(code=2)
    for info in response.versions:
        marker = " (latest)" if info.is_latest else ""
        typer.echo(f"{info.version}\t{info.source.value}{marker}")
    raise typer.Exit(code=0)


@app.command("speed", add_help_option=True)
def speed_cmd(
    json_out: bool = typer.Option(False, "--json", help="Print speed results JSON to stdout only."),
) -> None:
    """Speed-test every enabled mirror."""
    policy = policy_from_env()

    async def work(session: aiohttp.ClientSession):
        mirrors = DescriptorStore(policy.app_dir).load_all(session)
        results = await asyncio.gather(*(m.test_speed(force_refresh=True) for m in mirrors))
        return list(results)

    results = _with_session(work)
    if json_out:
        _emit_json([r.to_dict() for r in results])
        raise typer.Exit(code=0)
    if not results:
        typer.echo("No enabled mirrors to test")
        raise typer.Exit(code=0)
    for result in sorted(results, key=lambda r: (-r.speed_mbps, r.ping_ms)):
        if result.is_available:
            typer.echo(f"{result.source_id}\t{result.ping_ms} ms\t{result.speed_mbps:.2f} MB/s")
        else:
            typer.echo(f"{result.source_id}\tunavailable")
    raise typer.Exit(code=0)


@app.command("delete", add_help_option=True)
def delete_cmd(
    mirror_id: str = typer.Argument(..., help="Mirror id to remove."),
) -> None:
    store = DescriptorStore(policy_from_env().app_dir)
    if not store.delete(mirror_id):
        typer.echo(f"error: no mirror named {mirror_id!r}", err=True)
        raise typer.Exit(code=2)
    typer.echo(f"Deleted {mirror_id}")
    raise typer.Exit(code=0)
