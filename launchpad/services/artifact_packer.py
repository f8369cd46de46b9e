"""
Artifact Packer
Packs a workspace into artifacts/<id>.tar.gz on the archive.

VCS metadata and installed dependencies are skipped; everything else in
the build context goes in. Packing is best-effort: callers get False and
a log line, never an exception.
"""
import io
import logging
import os
import tarfile
from typing import Optional

from launchpad.services.archive_store import ArchiveStore, artifact_key

logger = logging.getLogger(__name__)

EXCLUDED_DIRS = frozenset({".git", "node_modules"})


def _filter(info: tarfile.TarInfo) -> Optional[tarfile.TarInfo]:
    parts = info.name.split("/")
    if any(part in EXCLUDED_DIRS for part in parts):
        return None
    return info


def pack_workspace(workspace_path: str) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for name in sorted(os.listdir(workspace_path)):
            if name in EXCLUDED_DIRS:
                continue
            tar.add(os.path.join(workspace_path, name), arcname=name, filter=_filter)
    return buffer.getvalue()


def archive_workspace(run_id: str, workspace_path: str, archive: ArchiveStore) -> bool:
    """Pack ``workspace_path`` and put it under the run's artifact key."""
    try:
        body = pack_workspace(workspace_path)
        archive.put(artifact_key(run_id), body, "application/gzip")
    except Exception as exc:
        logger.warning("Artifact upload for %s failed: %s", run_id, exc)
        return False
    logger.info("Archived workspace for %s (%d bytes)", run_id, len(body))
    return True
