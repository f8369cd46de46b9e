"""
Naming
======
Identifier rules for everything derived from a run id.

Run ids accepted at the API already match ``RUN_ID_PATTERN`` and are used
verbatim as the slug. Anything else (ids restored from older records,
ids passed straight to the executors) is sanitised and always carries a
digest of the raw id, so two distinct ids never map onto one image tag
or container name. Image tags and container names are always
``<prefix>-<slug>``; no call site derives names on its own.
"""
import hashlib
import re

from launchpad.core.constants import CONTAINER_PREFIX, IMAGE_PREFIX, RUN_ID_PATTERN

_RUN_ID_RE = re.compile(RUN_ID_PATTERN)
_DISALLOWED = re.compile(r"[^a-z0-9_.\-]")
_MAX_SLUG = 63
_DIGEST_LEN = 12


def is_valid_run_id(run_id: str) -> bool:
    return bool(run_id) and _RUN_ID_RE.match(run_id) is not None


def validate_run_id(run_id: str) -> str:
    if not is_valid_run_id(run_id):
        raise ValueError(
            f"invalid run id {run_id!r}: use 1-63 characters from a-z, 0-9, '_', '.', '-' "
            "starting with a letter or digit"
        )
    return run_id


def run_slug(run_id: str) -> str:
    """
    Map a run id onto ``[a-z0-9_.-]{1,63}``.

    Valid ids map to themselves. Every other id is rewritten and suffixed
    with a digest of the original, which keeps the mapping injective:
    ``Build-1`` and ``build-1`` get different names.
    """
    if is_valid_run_id(run_id):
        return run_id
    digest = hashlib.sha256(run_id.encode("utf-8")).hexdigest()[:_DIGEST_LEN]
    cleaned = _DISALLOWED.sub("", run_id.lower()).lstrip("_.-")
    if not cleaned:
        return f"r{digest}"
    return f"{cleaned[:_MAX_SLUG - _DIGEST_LEN - 1]}-{digest}"


def image_name(run_id: str) -> str:
    return f"{IMAGE_PREFIX}-{run_slug(run_id)}"


def container_name(run_id: str) -> str:
    return f"{CONTAINER_PREFIX}-{run_slug(run_id)}"


def workspace_dirname(part: str) -> str:
    """
    Filesystem-safe directory component for owner/repo/branch.

    Components that had to be rewritten (e.g. ``feature/x``) carry a digest
    of the original so they cannot collide with a literal ``feature_x``.
    """
    safe = re.sub(r"[^A-Za-z0-9_.\-]", "_", part).strip(".") or "_"
    if safe != part:
        safe = f"{safe}-{hashlib.sha1(part.encode('utf-8')).hexdigest()[:8]}"
    return safe
