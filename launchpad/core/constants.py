"""
Constants
Centralised storage for naming rules, archive key shapes and HTTP header sets.
"""
IMAGE_PREFIX = "launchpad-img"
CONTAINER_PREFIX = "launchpad-run"
# A run id must already be a valid name component: lowercase, no path separators
RUN_ID_PATTERN = r"^[a-z0-9][a-z0-9_.\-]{0,62}$"

META_KEY = "meta/{id}.json"
LOG_KEY = "logs/{id}.log"
ARTIFACT_KEY = "artifacts/{id}.tar.gz"

# Lockfile → package manager (ordered by priority, first match wins)
LOCKFILE_PRIORITY = [
    ("pnpm-lock.yaml", "pnpm"),
    ("yarn.lock", "yarn"),
    ("package-lock.json", "npm"),
]

BUILD_ENV_DESIGNATOR = "NODE_ENV"

HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
    "accept-encoding",
})

# Response headers that would stop the preview from rendering inside the UI frame
FRAME_BLOCKING_HEADERS = frozenset({"x-frame-options", "content-security-policy"})

LOG_TAIL_LINES = 40
