"""Shared JSON keys for descriptor files and cache snapshots."""

from __future__ import annotations

# Descriptor (top level)
K_SCHEMA_VERSION = "schemaVersion"
K_ID = "id"
K_NAME = "name"
K_DESCRIPTION = "description"
K_PRIORITY = "priority"
K_ENABLED = "enabled"
K_SOURCE_TYPE = "sourceType"
K_PATTERN = "pattern"
K_JSON_INDEX = "jsonIndex"
K_SPEED_TEST = "speedTest"
K_CACHE = "cache"

# Pattern payload
K_FULL_BUILD_URL = "fullBuildUrl"
K_DIFF_PATCH_URL = "diffPatchUrl"
K_SIGNATURE_URL = "signatureUrl"
K_BASE_URL = "baseUrl"
K_VERSION_DISCOVERY = "versionDiscovery"
K_OS_MAPPING = "osMapping"
K_ARCH_MAPPING = "archMapping"
K_BRANCH_MAPPING = "branchMapping"
K_DIFF_BASED_BRANCHES = "diffBasedBranches"

# Version discovery
K_METHOD = "method"
K_URL = "url"
K_JSON_PATH = "jsonPath"
K_HTML_PATTERN = "htmlPattern"
K_MIN_FILE_SIZE_BYTES = "minFileSizeBytes"
K_STATIC_VERSIONS = "staticVersions"

# Json-index payload
K_API_URL = "apiUrl"
K_ROOT_PATH = "rootPath"
K_STRUCTURE = "structure"
K_PLATFORM_MAPPING = "platformMapping"
K_FILE_NAME_PATTERN = "fileNamePattern"
K_FULL = "full"
K_DIFF = "diff"

# Speed test / cache
K_PING_URL = "pingUrl"
K_PING_TIMEOUT_SECONDS = "pingTimeoutSeconds"
K_SPEED_TEST_SIZE_BYTES = "speedTestSizeBytes"
K_INDEX_TTL_MINUTES = "indexTtlMinutes"
K_SPEED_TEST_TTL_MINUTES = "speedTestTtlMinutes"

# Vendor API steps
K_STEPS = "steps"
K_FROM = "from"
K_TO = "to"
K_PWR = "pwr"
K_PWR_HEAD = "pwrHead"
K_SIG = "sig"

# Snapshots
K_FETCHED_AT_UTC = "fetchedAtUtc"
K_OS = "os"
K_ARCH = "arch"
K_PATCHES = "patches"
K_VERSION = "version"
K_FROM_VERSION = "fromVersion"
K_ARTIFACT_URL = "artifactUrl"
K_HEAD_URL = "headUrl"
K_BRANCH_FETCHED_AT = "branchFetchedAt"
K_BRANCH_SOURCES = "branchSources"
K_OFFICIAL = "official"
K_MIRRORS = "mirrors"
K_MIRROR_ID = "mirrorId"
K_BRANCHES = "branches"
