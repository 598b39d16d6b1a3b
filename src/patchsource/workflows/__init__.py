"""High-level exports for the version-source workflows."""

from .aggregator import (
    LatestVersionStatus,
    NoSourceError,
    VersionAggregator,
    VersionInfo,
    VersionListResponse,
)
from .descriptor import MirrorDescriptor
from .descriptor_store import DescriptorStore
from .discovery import DiscoveryResult, MirrorDiscovery
from .mirror_source import MirrorSource
from .policy import DEFAULT_POLICY, SourcePolicy
from .sources import PatchStep, SourceType, SpeedTestResult, VersionEntry, VersionSource
from .vendor_source import VendorSource

__all__ = [
    "DEFAULT_POLICY",
    "DescriptorStore",
    "DiscoveryResult",
    "LatestVersionStatus",
    "MirrorDescriptor",
    "MirrorDiscovery",
    "MirrorSource",
    "NoSourceError",
    "PatchStep",
    "SourcePolicy",
    "SourceType",
    "SpeedTestResult",
    "VendorSource",
    "VersionAggregator",
    "VersionEntry",
    "VersionInfo",
    "VersionListResponse",
    "VersionSource",
]
