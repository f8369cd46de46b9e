"""
Build Descriptor Synthesis
==========================
Writes a minimal multi-stage Dockerfile into a workspace that has none.

    install deps → build → copy runtime artifacts into a slim runtime stage

An existing Dockerfile is always respected as-is. Next.js apps get the
standalone output layout (and next.config is patched to emit it);
everything else gets a generic two-stage Node image that copies the
built app tree. The runtime stage always exposes INTERNAL_PORT.
"""
import logging
import os
import re
from typing import Optional

from launchpad.core.config import BASE_IMAGE, INTERNAL_PORT
from launchpad.executor.command_resolver import resolve_commands
from launchpad.executor.project_detector import (
    NodeAppInfo,
    detect_node_app,
    find_next_config,
    has_build_descriptor,
)

logger = logging.getLogger(__name__)

_STANDALONE_RE = re.compile(r"output\s*:\s*['\"]standalone['\"]")
_CONFIG_OBJECT_RES = [
    re.compile(r"(const\s+nextConfig(?:\s*:\s*NextConfig)?\s*=\s*\{)"),
    re.compile(r"(module\.exports\s*=\s*\{)"),
    re.compile(r"(export\s+default\s*\{)"),
]


def _copy_manifest_line(info: NodeAppInfo) -> str:
    files = ["package.json"]
    if info.lockfile:
        files.append(info.lockfile)
    return f"COPY {' '.join(files)} ./"


def _corepack_line(info: NodeAppInfo) -> Optional[str]:
    return "RUN corepack enable" if info.package_manager != "npm" else None


def _runtime_start(info: NodeAppInfo) -> str:
    # npm ships with every node image; it runs any package.json script
    if info.start_script:
        return f"npm run {info.start_script}"
    return "npm start"


def render_next_dockerfile(info: NodeAppInfo, workspace_path: str,
                           port: int = INTERNAL_PORT, base_image: str = BASE_IMAGE) -> str:
    commands = resolve_commands(info)
    build = commands.build_command or "npx next build"
    copy_public = None
    if os.path.isdir(os.path.join(workspace_path, "public")):
        copy_public = "COPY --from=builder /app/public ./public"
    lines = [
        "# ---- build stage ----",
        f"FROM {base_image} AS builder",
        "WORKDIR /app",
        _corepack_line(info),
        _copy_manifest_line(info),
        f"RUN {commands.install_command}",
        "COPY . .",
        "ENV NEXT_TELEMETRY_DISABLED=1",
        f"RUN {build}",
        "",
        "# ---- run stage ----",
        f"FROM {base_image}",
        "WORKDIR /app",
        "ENV NODE_ENV=production",
        f"ENV PORT={port}",
        "ENV HOSTNAME=0.0.0.0",
        "COPY --from=builder /app/.next/standalone ./",
        copy_public,
        "COPY --from=builder /app/.next/static ./.next/static",
        f"EXPOSE {port}",
        'CMD ["node", "server.js"]',
    ]
    return "\n".join(line for line in lines if line is not None) + "\n"


def render_node_dockerfile(info: NodeAppInfo, port: int = INTERNAL_PORT,
                           base_image: str = BASE_IMAGE) -> str:
    commands = resolve_commands(info)
    lines = [
        "# ---- build stage ----",
        f"FROM {base_image} AS builder",
        "WORKDIR /app",
        _corepack_line(info),
        _copy_manifest_line(info),
        f"RUN {commands.install_command}",
        "COPY . .",
        f"RUN {commands.build_command}" if commands.build_command else None,
        "",
        "# ---- run stage ----",
        f"FROM {base_image}",
        "WORKDIR /app",
        "ENV NODE_ENV=production",
        f"ENV PORT={port}",
        "ENV npm_config_cache=/tmp/.npm",
        "COPY --from=builder /app ./",
        f"EXPOSE {port}",
        f'CMD ["sh", "-c", "{_runtime_start(info)}"]',
    ]
    return "\n".join(line for line in lines if line is not None) + "\n"


def patch_next_config(workspace_path: str) -> bool:
    """
    Add ``output: 'standalone'`` to next.config when it is missing.

    Returns True if the file was rewritten.
    """
    path = find_next_config(workspace_path)
    if path is None:
        return False
    with open(path, "r", encoding="utf-8") as f:
        raw = f.read()
    if _STANDALONE_RE.search(raw):
        return False
    for pattern in _CONFIG_OBJECT_RES:
        patched, count = pattern.subn(r"\1\n  output: 'standalone',", raw, count=1)
        if count:
            with open(path, "w", encoding="utf-8") as f:
                f.write(patched)
            logger.info("Patched %s with standalone output", os.path.basename(path))
            return True
    logger.warning("Could not locate config object in %s; leaving it untouched", path)
    return False


def ensure_build_descriptor(workspace_path: str, port: int = INTERNAL_PORT,
                            base_image: str = BASE_IMAGE) -> Optional[str]:
    """
    Make sure the workspace has a Dockerfile.

    Returns
    -------
    str | None
        The synthesized Dockerfile text, or None when one already existed.

    Raises
    ------
    ConfigInvalid
        No Dockerfile and no package.json to synthesize one from.
    """
    if has_build_descriptor(workspace_path):
        return None

    info = detect_node_app(workspace_path)
    if info.is_next:
        patch_next_config(workspace_path)
        content = render_next_dockerfile(info, workspace_path, port, base_image)
    else:
        content = render_node_dockerfile(info, port, base_image)

    with open(os.path.join(workspace_path, "Dockerfile"), "w", encoding="utf-8") as f:
        f.write(content)
    logger.info("Synthesized Dockerfile (%s) in %s", "next" if info.is_next else "node", workspace_path)
    return content
