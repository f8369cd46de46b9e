"""
Project Detector
================
Reads a checked-out workspace and reports how to install, build and start it.

Detection is deterministic: the same tree always yields the same result.
Only the workspace root is inspected (no recursive search).

Package manager detection uses lockfile presence in LOCKFILE_PRIORITY
order; first match wins, npm is the default.
"""
import json
import logging
import os
from dataclasses import dataclass
from typing import Optional

from launchpad.core.constants import LOCKFILE_PRIORITY
from launchpad.core.errors import ConfigInvalid

logger = logging.getLogger(__name__)

BUILD_DESCRIPTORS = ("Dockerfile",)
NEXT_CONFIG_FILES = ("next.config.ts", "next.config.mjs", "next.config.js")


@dataclass(frozen=True)
class NodeAppInfo:
    """
    What the workspace declares about itself.

    Attributes
    ----------
    package_manager : str
        "pnpm", "yarn" or "npm".
    lockfile : str | None
        The lockfile that decided the package manager, if any.
    start_script : str | None
        Script used to start the app ("start" or "dev").
    has_build_script : bool
        True when package.json declares a "build" script.
    is_next : bool
        True when "next" is a dependency.
    has_dockerfile : bool
        True when a build descriptor is already present.
    """
    package_manager: str
    lockfile: Optional[str]
    start_script: Optional[str]
    has_build_script: bool
    is_next: bool
    has_dockerfile: bool


def detect_package_manager(workspace_path: str) -> tuple[str, Optional[str]]:
    """Return (package_manager, lockfile) for the workspace root."""
    for lockfile, manager in LOCKFILE_PRIORITY:
        if os.path.isfile(os.path.join(workspace_path, lockfile)):
            return manager, lockfile
    return "npm", None


def has_build_descriptor(workspace_path: str) -> bool:
    return any(os.path.isfile(os.path.join(workspace_path, name)) for name in BUILD_DESCRIPTORS)


def load_package_json(workspace_path: str) -> dict:
    """
    Parse package.json.

    Raises
    ------
    ConfigInvalid
        package.json is missing or is not a JSON object.
    """
    path = os.path.join(workspace_path, "package.json")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigInvalid("no package.json found in workspace root")
    except (ValueError, UnicodeDecodeError) as e:
        raise ConfigInvalid(f"package.json is not valid JSON: {e}")
    if not isinstance(data, dict):
        raise ConfigInvalid("package.json must contain a JSON object")
    return data


def detect_node_app(workspace_path: str) -> NodeAppInfo:
    """
    Detect package manager, scripts and framework for a Node workspace.

    Raises
    ------
    ConfigInvalid
        No usable package.json in the workspace root.
    """
    package_json = load_package_json(workspace_path)
    scripts = package_json.get("scripts") or {}
    if not isinstance(scripts, dict):
        scripts = {}

    deps = {}
    for section in ("dependencies", "devDependencies"):
        value = package_json.get(section) or {}
        if isinstance(value, dict):
            deps.update(value)

    manager, lockfile = detect_package_manager(workspace_path)

    start_script = None
    if scripts.get("start"):
        start_script = "start"
    elif scripts.get("dev"):
        start_script = "dev"

    info = NodeAppInfo(
        package_manager=manager,
        lockfile=lockfile,
        start_script=start_script,
        has_build_script=bool(scripts.get("build")),
        is_next="next" in deps,
        has_dockerfile=has_build_descriptor(workspace_path),
    )
    logger.info(
        "Detected node app | manager=%s | start=%s | build=%s | next=%s | dockerfile=%s",
        info.package_manager, info.start_script, info.has_build_script,
        info.is_next, info.has_dockerfile,
    )
    return info


def find_next_config(workspace_path: str) -> Optional[str]:
    for name in NEXT_CONFIG_FILES:
        path = os.path.join(workspace_path, name)
        if os.path.isfile(path):
            return path
    return None
