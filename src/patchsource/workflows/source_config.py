"""patchsource defaults (endpoints, headers, timeouts, TTLs, paths, probe lists).

Centralizes static defaults so the source modules have no embedded magic
strings. These are baseline constants used to construct a SourcePolicy;
callers can inject their own policy to override the tunable ones.
"""

from __future__ import annotations

from pathlib import Path

# Vendor API
DEFAULT_VENDOR_API_BASE = "https://account-data.hytale.com"
VENDOR_PATCHES_SEGMENT = "patches"
VENDOR_SOURCE_ID = "official"
VENDOR_PRIORITY = 0
VENDOR_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
VENDOR_SESSION_FILE = "hytale_session.json"
VENDOR_MAX_ATTEMPTS = 2
VENDOR_AUTH_EXPIRED_STATUSES = {401, 403}

# Headers
HDR_AUTHORIZATION = "Authorization"
HDR_USER_AGENT = "User-Agent"
HDR_RANGE = "Range"

# Timeouts (seconds)
VENDOR_REQUEST_TIMEOUT = 30
MIRROR_REQUEST_TIMEOUT = 15
SPEED_DOWNLOAD_TIMEOUT = 30
DEFAULT_PING_TIMEOUT = 5
DISCOVERY_TIMEOUT = 10

# TTLs (minutes)
VENDOR_CACHE_TTL_MINUTES = 15
VENDOR_SPEED_TTL_MINUTES = 10
VERSION_CACHE_TTL_MINUTES = 15
DEFAULT_INDEX_TTL_MINUTES = 30
DEFAULT_SPEED_TTL_MINUTES = 60

# Speed test
SPEED_TEST_SIZE_BYTES = 10 * 1024 * 1024
SPEED_CHUNK_BYTES = 81920
HEAD_EXISTS_STATUSES = {400, 405, 422}

# On-disk layout (relative to the application directory)
DEFAULT_APP_DIR = Path.home() / ".patchsource"
MIRRORS_DIR_NAME = "Mirrors"
MIRROR_FILE_SUFFIX = ".mirror.json"
PROFILES_DIR_NAME = "Profiles"
CACHE_DIR_PARTS = ("Cache", "Game")
PATCHES_SNAPSHOT_NAME = "patches.json"
VERSIONS_SNAPSHOT_NAME = "versions.json"

# Descriptor defaults
DESCRIPTOR_SCHEMA_VERSION = 1
DEFAULT_PRIORITY = 100
SOURCE_TYPE_PATTERN = "pattern"
SOURCE_TYPE_JSON_INDEX = "json-index"
DEFAULT_FULL_BUILD_URL = "{base}/{os}/{arch}/{branch}/0/{version}.pwr"
DEFAULT_INDEX_ROOT = "hytale"
DEFAULT_FULL_FILE_PATTERN = "v{version}-{os}-{arch}.pwr"
DEFAULT_DIFF_FILE_PATTERN = "v{from}~{to}-{os}-{arch}.pwr"
STRUCTURE_FLAT = "flat"
STRUCTURE_GROUPED = "grouped"
INDEX_GROUP_BASE = "base"
INDEX_GROUP_PATCH = "patch"

# Version discovery methods
DISCOVERY_JSON_API = "json-api"
DISCOVERY_HTML_AUTOINDEX = "html-autoindex"
DISCOVERY_STATIC_LIST = "static-list"
JSON_ROOT_TOKEN = "$root"

# Branches
BRANCH_RELEASE = "release"
BRANCH_PRE_RELEASE = "pre-release"
BRANCH_ALIASES = {
    "release": BRANCH_RELEASE,
    "pre-release": BRANCH_PRE_RELEASE,
    "prerelease": BRANCH_PRE_RELEASE,
    "pre_release": BRANCH_PRE_RELEASE,
}

# Discovery probes
INFO_ENDPOINT = "/infos"
INFO_LATEST_ENDPOINT = "/latest?branch=release&version=0"
INFO_PLATFORM_KEYS = ("windows-amd64", "linux-amd64", "darwin-arm64")
INFO_BRANCH_KEYS = ("release", "pre-release")
INFO_BUILD_FIELDS = ("buildVersion", "newest")
INDEX_ENDPOINTS = ("/api.php", "/api", "/api.json", "/index.json", "/hytale.json", "/files.json")
INDEX_ROOT_KEYS = (DEFAULT_INDEX_ROOT,)
VERSION_LIST_ENDPOINTS = (
    "/launcher/patches/release/versions?os_name=linux&arch=x64",
    "/launcher/patches/prerelease/versions?os_name=linux&arch=x64",
    "/launcher/patches/release/versions",
    "/launcher/patches/pre-release/versions",
    "/versions",
    "/api/versions",
)
LAUNCHER_HEALTH_ENDPOINT = "/health"
LAUNCHER_VERSION_ENDPOINTS = (
    "/launcher/patches/release/versions?os_name=linux&arch=x64",
    "/launcher/patches/release/versions?os_name=linux&arch=amd64",
    "/launcher/patches/prerelease/versions?os_name=linux&arch=x64",
    "/launcher/patches/release/versions",
)
LAUNCHER_CONFIRM_STATUSES = {200, 400, 422}
AUTOINDEX_PATHS = (
    "/hytale/patches/linux/x64/release/0/",
    "/hytale/patches/linux/amd64/release/0/",
    "/patches/linux/x64/release/0/",
    "/patches/linux/amd64/release/0/",
    "/linux/x64/release/0/",
    "/linux/amd64/release/0/",
)
AUTOINDEX_LAYOUT_SUFFIXES = ("/linux/x64/release/0/", "/linux/amd64/release/0/")
STATIC_PATH_PREFIXES = ("/hytale/patches", "/patches", "")
STATIC_PATH_SUFFIXES = ("linux/x64/release/0/", "linux/amd64/release/0/", "windows/x64/release/0/")
OS_DIRECTORY_MARKERS = ("linux/", "windows/", "darwin/")
ARTIFACT_LINK_PATTERN = r"^(\d+)\.pwr$"
AUTOINDEX_HTML_PATTERN = r'<a\s+href="(\d+)\.pwr">\d+\.pwr</a>\s+\S+\s+\S+\s+(\d+)'
AUTOINDEX_MIN_FILE_SIZE = 1_048_576

# Discovered descriptor layouts
INFO_BUILD_TEMPLATE = "{base}/dl/{os}/{arch}/{version}.pwr"
INFO_VERSION_URL = "{base}/infos"
INFO_JSON_PATH = "{os}-{arch}.{branch}.newest"
INFO_OS_MAPPING = {"linux": "linux", "windows": "windows", "macos": "darwin"}
INFO_ARCH_MAPPING = {"x64": "amd64", "amd64": "amd64", "arm64": "arm64"}
LAUNCHER_FULL_TEMPLATE = "{base}/launcher/patches/{os}/{arch}/{branch}/0/{version}.pwr"
LAUNCHER_DIFF_TEMPLATE = "{base}/launcher/patches/{os}/{arch}/{branch}/{from}/{to}.pwr"
LAUNCHER_VERSION_URL = "{base}/launcher/patches/{branch}/versions?os_name={os}&arch={arch}"
LAUNCHER_BRANCH_MAPPING = {"pre-release": "prerelease"}
INDEX_PLATFORM_MAPPING = {"darwin": "mac"}
INDEX_DIFF_BRANCHES = ("pre-release",)
ID_STRIP_TOKENS = ("www-", "-com", "-org", "-net")
