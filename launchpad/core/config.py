"""
Configuration
=============
Loads environment variables from .env file using python-dotenv.

Environment Variables:
    WORKSPACE_ROOT        — Checkout cache directory (default: /tmp/launchpad/workspaces)
    LOG_DIR               — Local append-only run log buffers (default: /tmp/launchpad/logs)
    APP_LOG_DIR           — Directory for the service's own dated log files (default: logs)
    APP_LOG_LEVEL         — Level for the service's own logging (default: INFO)
    PORT_RANGE_START      — Lowest host port handed to runs (default: 40000)
    PORT_RANGE_END        — Highest host port handed to runs, inclusive (default: 48000)
    INTERNAL_PORT         — Port the workload listens on inside its container (default: 3000)
    RUN_MEMORY            — Container memory ceiling (default: 1024m)
    RUN_CPUS              — Container CPU share (default: 0.5)
    RUNNER_MODE           — "docker" (containerized) or "native" (process) (default: docker)
    ARCHIVE_BACKEND       — "local" or "s3" (default: local)
    ARCHIVE_DIR           — Root of the local archive backend
    S3_BUCKET / AWS_REGION — Bucket and region for the s3 archive backend
    GITHUB_TOKEN          — Optional token used to clone private repositories
    GIT_REMOTE_TEMPLATE   — Clone URL template, formatted with owner/repo

Log Flush Philosophy:
    LOG_FLUSH_INTERVAL bounds how often a run's log is mirrored to the
    archive while it is still being written. Lines are appended locally
    immediately; the durable copy is refreshed at most once per interval
    and always at the end of a phase.

Readiness:
    READINESS_MAX_ATTEMPTS x READINESS_INTERVAL is the time a native
    process gets to answer HTTP on its port before the run is failed.
"""
import os
from dotenv import load_dotenv

load_dotenv()

WORKSPACE_ROOT = os.getenv("WORKSPACE_ROOT", "/tmp/launchpad/workspaces")
LOG_DIR = os.getenv("LOG_DIR", "/tmp/launchpad/logs")

# Service logging (distinct from per-run logs above)
APP_LOG_DIR = os.getenv("APP_LOG_DIR", "logs")
APP_LOG_LEVEL = os.getenv("APP_LOG_LEVEL", "INFO").upper()

# Host port range (inclusive)
PORT_RANGE_START = int(os.getenv("PORT_RANGE_START", 40000))
PORT_RANGE_END = int(os.getenv("PORT_RANGE_END", 48000))

# Containerized runs
INTERNAL_PORT = int(os.getenv("INTERNAL_PORT", 3000))
RUN_MEMORY = os.getenv("RUN_MEMORY", os.getenv("DOCKER_RUN_MEMORY", "1024m"))
RUN_CPUS = float(os.getenv("RUN_CPUS", os.getenv("DOCKER_RUN_CPUS", 0.5)))
BASE_IMAGE = os.getenv("BASE_IMAGE", "node:20-alpine")

# docker | native
RUNNER_MODE = os.getenv("RUNNER_MODE", "docker").lower()

# Archive
ARCHIVE_BACKEND = os.getenv("ARCHIVE_BACKEND", "local").lower()
ARCHIVE_DIR = os.getenv("ARCHIVE_DIR", "/tmp/launchpad/archive")
S3_BUCKET = os.getenv("S3_BUCKET", os.getenv("AWS_S3_BUILD_BUCKET", "launchpad-builds"))
AWS_REGION = os.getenv("AWS_REGION", "us-east-1")
ARCHIVE_ARTIFACTS = os.getenv("ARCHIVE_ARTIFACTS", "true").lower() == "true"

# Log pipeline
LOG_FLUSH_INTERVAL = float(os.getenv("LOG_FLUSH_INTERVAL", 2.0))
LOG_TRIM_LOCAL = os.getenv("LOG_TRIM_LOCAL", "true").lower() == "true"
STREAM_POLL_INTERVAL = float(os.getenv("STREAM_POLL_INTERVAL", 0.6))

# Readiness / liveness
READINESS_MAX_ATTEMPTS = int(os.getenv("READINESS_MAX_ATTEMPTS", 10))
READINESS_INTERVAL = float(os.getenv("READINESS_INTERVAL", 1.0))
WATCH_INTERVAL = float(os.getenv("WATCH_INTERVAL", 5.0))
STOP_GRACE_SECONDS = float(os.getenv("STOP_GRACE_SECONDS", 5.0))

# Source checkout
GITHUB_TOKEN = os.getenv("GITHUB_TOKEN", "")
GIT_REMOTE_TEMPLATE = os.getenv("GIT_REMOTE_TEMPLATE", "https://github.com/{owner}/{repo}.git")

# Reverse proxy
PROXY_PREFIX = os.getenv("PROXY_PREFIX", "/api/proxy")
PROXY_UPSTREAM_HOST = os.getenv("PROXY_UPSTREAM_HOST", "127.0.0.1")
META_CACHE_TTL = float(os.getenv("META_CACHE_TTL", 30))
