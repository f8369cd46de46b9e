"""
Command Resolver
================
Maps a detected Node app to its install, build and start commands.

Resolver never executes commands; it only returns strings.
Deterministic: same NodeAppInfo → same commands, always.
"""
from dataclasses import dataclass
from typing import Optional

from launchpad.executor.project_detector import NodeAppInfo


@dataclass(frozen=True)
class ResolvedCommands:
    """
    Immutable container for resolved commands.

    Fields
    ------
    install_command : str
        Dependency installation command (e.g. "pnpm install --frozen-lockfile").
    start_command : str
        Command that starts the app in the foreground.
    build_command : str | None
        Optional build step. None if package.json has no build script.
    package_manager : str
        The package manager these commands were resolved for.
    """
    install_command: str
    start_command: str
    package_manager: str
    build_command: Optional[str] = None


_INSTALL_COMMANDS: dict[str, str] = {
    "pnpm": "pnpm install --frozen-lockfile",
    "yarn": "yarn install --frozen-lockfile",
    "npm": "npm ci --no-audit --no-fund",
}

# npm ci refuses to run without a lockfile
_NPM_NO_LOCKFILE = "npm install --no-audit --no-fund"


def resolve_commands(info: NodeAppInfo) -> ResolvedCommands:
    manager = info.package_manager
    if manager == "npm" and info.lockfile is None:
        install = _NPM_NO_LOCKFILE
    else:
        install = _INSTALL_COMMANDS.get(manager, _INSTALL_COMMANDS["npm"])

    if info.start_script == "start":
        start = f"{manager} start"
    elif info.start_script == "dev":
        start = f"{manager} run dev"
    else:
        start = "npm start"

    build = f"{manager} run build" if info.has_build_script else None

    return ResolvedCommands(
        install_command=install,
        start_command=start,
        build_command=build,
        package_manager=manager,
    )
