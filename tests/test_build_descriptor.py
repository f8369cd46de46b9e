"""
Unit Tests — Project Detection, Command Resolution, Descriptor Synthesis
========================================================================
All tests work on throwaway trees under tmp_path.
"""
import json

import pytest

from launchpad.core.errors import ConfigInvalid
from launchpad.executor.command_resolver import (
    ResolvedCommands,
    resolve_commands,
)
from launchpad.executor.dockerfile import (
    ensure_build_descriptor,
    patch_next_config,
    render_node_dockerfile,
)
from launchpad.executor.project_detector import (
    NodeAppInfo,
    detect_node_app,
    detect_package_manager,
)


def _package_json(path, scripts=None, deps=None):
    (path / "package.json").write_text(json.dumps({
        "name": "site",
        "scripts": scripts or {},
        "dependencies": deps or {},
    }))


# ---------------------------------------------------------------------------
# 1. Project Detection
# ---------------------------------------------------------------------------
class TestProjectDetector:

    def test_npm_is_default(self, tmp_path):
        assert detect_package_manager(str(tmp_path)) == ("npm", None)

    def test_pnpm_wins_over_yarn_and_npm(self, tmp_path):
        for name in ("pnpm-lock.yaml", "yarn.lock", "package-lock.json"):
            (tmp_path / name).write_text("")
        assert detect_package_manager(str(tmp_path)) == ("pnpm", "pnpm-lock.yaml")

    def test_yarn_wins_over_npm(self, tmp_path):
        (tmp_path / "yarn.lock").write_text("")
        (tmp_path / "package-lock.json").write_text("{}")
        assert detect_package_manager(str(tmp_path)) == ("yarn", "yarn.lock")

    def test_detects_scripts_and_next(self, tmp_path):
        _package_json(tmp_path, scripts={"build": "next build", "start": "next start", "dev": "next dev"},
                      deps={"next": "14.2.0", "react": "18.0.0"})
        info = detect_node_app(str(tmp_path))
        assert info.start_script == "start"
        assert info.has_build_script is True
        assert info.is_next is True
        assert info.has_dockerfile is False

    def test_dev_script_is_start_fallback(self, tmp_path):
        _package_json(tmp_path, scripts={"dev": "vite"})
        info = detect_node_app(str(tmp_path))
        assert info.start_script == "dev"
        assert info.has_build_script is False

    def test_missing_package_json_is_config_invalid(self, tmp_path):
        with pytest.raises(ConfigInvalid):
            detect_node_app(str(tmp_path))

    def test_malformed_package_json_is_config_invalid(self, tmp_path):
        (tmp_path / "package.json").write_text("{not json")
        with pytest.raises(ConfigInvalid):
            detect_node_app(str(tmp_path))


# ---------------------------------------------------------------------------
# 2. Command Resolution
# ---------------------------------------------------------------------------
def _info(manager="npm", lockfile="package-lock.json", start="start", build=True, next_=False):
    return NodeAppInfo(package_manager=manager, lockfile=lockfile, start_script=start,
                       has_build_script=build, is_next=next_, has_dockerfile=False)


class TestCommandResolver:

    @pytest.mark.parametrize("manager,lockfile,install", [
        ("pnpm", "pnpm-lock.yaml", "pnpm install --frozen-lockfile"),
        ("yarn", "yarn.lock", "yarn install --frozen-lockfile"),
        ("npm", "package-lock.json", "npm ci --no-audit --no-fund"),
        ("npm", None, "npm install --no-audit --no-fund"),
    ])
    def test_install_commands(self, manager, lockfile, install):
        assert resolve_commands(_info(manager, lockfile)).install_command == install

    def test_start_and_build_commands(self):
        cmds = resolve_commands(_info("pnpm", "pnpm-lock.yaml"))
        assert cmds == ResolvedCommands(
            install_command="pnpm install --frozen-lockfile",
            start_command="pnpm start",
            package_manager="pnpm",
            build_command="pnpm run build",
        )

    def test_dev_script_and_no_build(self):
        cmds = resolve_commands(_info("yarn", "yarn.lock", start="dev", build=False))
        assert cmds.start_command == "yarn run dev"
        assert cmds.build_command is None

    def test_no_scripts_falls_back_to_npm_start(self):
        assert resolve_commands(_info(start=None)).start_command == "npm start"

    def test_resolved_commands_are_frozen(self):
        cmds = resolve_commands(_info())
        with pytest.raises(AttributeError):
            cmds.install_command = "rm -rf /"


# ---------------------------------------------------------------------------
# 3. Descriptor Synthesis
# ---------------------------------------------------------------------------
class TestDescriptorSynthesis:

    def test_existing_dockerfile_is_respected(self, tmp_path):
        (tmp_path / "Dockerfile").write_text("FROM busybox\n")
        assert ensure_build_descriptor(str(tmp_path)) is None
        assert (tmp_path / "Dockerfile").read_text() == "FROM busybox\n"

    def test_no_package_json_and_no_dockerfile_is_config_invalid(self, tmp_path):
        with pytest.raises(ConfigInvalid):
            ensure_build_descriptor(str(tmp_path))

    def test_next_app_uses_standalone_layout(self, tmp_path):
        _package_json(tmp_path, scripts={"build": "next build", "start": "next start"}, deps={"next": "14"})
        (tmp_path / "package-lock.json").write_text("{}")
        (tmp_path / "public").mkdir()
        (tmp_path / "next.config.js").write_text("const nextConfig = {\n  reactStrictMode: true,\n};\nmodule.exports = nextConfig;\n")

        content = ensure_build_descriptor(str(tmp_path), port=3000, base_image="node:20-alpine")

        assert (tmp_path / "Dockerfile").read_text() == content
        assert "FROM node:20-alpine AS builder" in content
        assert "COPY package.json package-lock.json ./" in content
        assert "RUN npm ci --no-audit --no-fund" in content
        assert "RUN npm run build" in content
        assert "COPY --from=builder /app/.next/standalone ./" in content
        assert "COPY --from=builder /app/public ./public" in content
        assert "EXPOSE 3000" in content
        assert 'CMD ["node", "server.js"]' in content
        assert "output: 'standalone'" in (tmp_path / "next.config.js").read_text()

    def test_next_app_without_public_dir(self, tmp_path):
        _package_json(tmp_path, scripts={"build": "next build"}, deps={"next": "14"})
        content = ensure_build_descriptor(str(tmp_path))
        assert "/app/public" not in content

    def test_generic_node_app_with_pnpm(self, tmp_path):
        _package_json(tmp_path, scripts={"start": "node server.js"})
        (tmp_path / "pnpm-lock.yaml").write_text("")
        content = ensure_build_descriptor(str(tmp_path), port=3000)
        assert "RUN corepack enable" in content
        assert "RUN pnpm install --frozen-lockfile" in content
        assert "run build" not in content
        assert "COPY --from=builder /app ./" in content
        assert 'CMD ["sh", "-c", "npm run start"]' in content

    def test_npm_descriptor_skips_corepack(self, tmp_path):
        _package_json(tmp_path, scripts={"start": "node index.js"})
        info = detect_node_app(str(tmp_path))
        content = render_node_dockerfile(info, port=3000)
        assert "corepack" not in content
        assert "\n\n\n" not in content

    def test_patch_next_config_is_idempotent(self, tmp_path):
        (tmp_path / "next.config.mjs").write_text("export default {\n  output: 'standalone',\n};\n")
        assert patch_next_config(str(tmp_path)) is False

    def test_patch_typescript_config(self, tmp_path):
        (tmp_path / "next.config.ts").write_text(
            "import type { NextConfig } from 'next';\nconst nextConfig: NextConfig = {};\nexport default nextConfig;\n"
        )
        assert patch_next_config(str(tmp_path)) is True
        assert "output: 'standalone'" in (tmp_path / "next.config.ts").read_text()
