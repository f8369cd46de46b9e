"""
Workspace Service
=================
Manages repository checkouts and the workspace cache on the host machine.

Philosophy:
    - One workspace per (owner, repo, branch) at a deterministic path:
      WORKSPACE_ROOT/<owner>/<repo>/<branch>
    - Clone ONCE; later builds of the same branch refresh the cached tree
      (fetch + checkout + pull) instead of re-cloning.
    - Concurrent checkouts of the same coordinates are serialised by a
      per-workspace lock. Different coordinates never wait on each other.
    - Runs never build in the cache. Each run gets a private copy under
      WORKSPACE_ROOT/.runs/<run id>, removed when the run is torn down.
    - The cache is never deleted automatically.
"""
import logging
import os
import shutil
import subprocess
import threading
from typing import Callable, Dict, Optional, Tuple

from launchpad.core.config import GIT_REMOTE_TEMPLATE, GITHUB_TOKEN, WORKSPACE_ROOT
from launchpad.core.errors import SourceUnavailable
from launchpad.models.run import Workspace
from launchpad.utils.naming import run_slug, workspace_dirname

logger = logging.getLogger(__name__)

LogFn = Callable[[str], None]

_GIT_TIMEOUT = 300
_UNCOPIED_DIRS = (".git", "node_modules")


class WorkspaceService:

    def __init__(
        self,
        root: str = WORKSPACE_ROOT,
        remote_template: str = GIT_REMOTE_TEMPLATE,
        github_token: str = GITHUB_TOKEN,
    ) -> None:
        self.root = os.path.abspath(root)
        # Per-run copies; "." is stripped from owner dirs so this cannot clash with a cache path
        self.runs_root = os.path.join(self.root, ".runs")
        self.remote_template = remote_template
        self.github_token = github_token
        self._locks: Dict[Tuple[str, str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Paths / URLs
    # ------------------------------------------------------------------
    def workspace_path(self, owner: str, repo: str, branch: str) -> str:
        return os.path.join(
            self.root,
            workspace_dirname(owner),
            workspace_dirname(repo),
            workspace_dirname(branch),
        )

    def remote_url(self, owner: str, repo: str) -> str:
        url = self.remote_template.format(owner=owner, repo=repo)
        # Insert token into URL if provided
        if self.github_token and url.startswith("https://github.com/"):
            url = url.replace("https://", f"https://x-access-token:{self.github_token}@", 1)
        return url

    def _mask(self, text: str) -> str:
        if self.github_token:
            return text.replace(self.github_token, "***")
        return text

    def lock_for(self, owner: str, repo: str, branch: str) -> threading.Lock:
        key = (owner, repo, branch)
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------
    def checkout(self, owner: str, repo: str, branch: str, log: Optional[LogFn] = None) -> Workspace:
        """
        Make WORKSPACE_ROOT/<owner>/<repo>/<branch> a clean checkout of the branch.

        Raises
        ------
        SourceUnavailable
            The remote or the branch could not be fetched.
        """
        emit = log or (lambda _line: None)
        dest_path = self.workspace_path(owner, repo, branch)

        with self.lock_for(owner, repo, branch):
            self._sync(owner, repo, branch, dest_path, emit)

        return Workspace(owner=owner, repo=repo, branch=branch, path=dest_path)

    def prepare(self, run_id: str, owner: str, repo: str, branch: str,
                log: Optional[LogFn] = None) -> Workspace:
        """
        Refresh the cached checkout and hand the run a private copy of it.

        The copy is taken while the coordinate lock is still held, so a
        later refresh for another run never rewrites a tree that is being
        built or served. ``release()`` removes the copy.

        Raises
        ------
        SourceUnavailable
            The remote or the branch could not be fetched, or the copy
            could not be written.
        """
        emit = log or (lambda _line: None)
        cache_path = self.workspace_path(owner, repo, branch)
        build_path = self.build_path(run_id)

        with self.lock_for(owner, repo, branch):
            self._sync(owner, repo, branch, cache_path, emit)
            try:
                if os.path.exists(build_path):
                    shutil.rmtree(build_path)
                shutil.copytree(
                    cache_path, build_path,
                    symlinks=True,
                    ignore=shutil.ignore_patterns(*_UNCOPIED_DIRS),
                )
            except OSError as e:
                shutil.rmtree(build_path, ignore_errors=True)
                raise SourceUnavailable(f"could not prepare build directory: {e}")

        emit(f"==> Build directory {build_path}")
        logger.info("Prepared %s for run %s from %s", build_path, run_id, cache_path)
        return Workspace(owner=owner, repo=repo, branch=branch, path=build_path, cache_path=cache_path)

    def build_path(self, run_id: str) -> str:
        return os.path.join(self.runs_root, run_slug(run_id))

    def release(self, workspace: Workspace) -> None:
        """Remove a run's private copy. The cached checkout is never touched."""
        path = os.path.abspath(workspace.path)
        if os.path.dirname(path) != self.runs_root:
            return
        if os.path.isdir(path):
            shutil.rmtree(path, ignore_errors=True)
            logger.info("Removed build directory %s", path)

    def _sync(self, owner: str, repo: str, branch: str, dest_path: str, emit: LogFn) -> None:
        if os.path.isdir(os.path.join(dest_path, ".git")):
            emit(f"==> Using cached repo at {dest_path}")
            logger.info("Refreshing cached workspace %s", dest_path)
            self._refresh(dest_path, branch)
        else:
            emit(f"==> Cloning {owner}/{repo}#{branch}")
            logger.info("Cloning %s/%s#%s into %s", owner, repo, branch, dest_path)
            self._clone(owner, repo, branch, dest_path)

    def _clone(self, owner: str, repo: str, branch: str, dest_path: str) -> None:
        if os.path.exists(dest_path):
            # Leftover from an interrupted clone
            shutil.rmtree(dest_path, ignore_errors=True)
        os.makedirs(os.path.dirname(dest_path), exist_ok=True)
        try:
            self._git(
                ["clone", "--branch", branch, self.remote_url(owner, repo), dest_path],
                cwd=os.path.dirname(dest_path),
            )
        except SourceUnavailable:
            shutil.rmtree(dest_path, ignore_errors=True)
            raise

    def _refresh(self, dest_path: str, branch: str) -> None:
        self._git(["fetch", "origin", branch], cwd=dest_path)
        # Drop files a previous build wrote into the tree (synthesized descriptors, patched configs)
        self._git(["reset", "--hard"], cwd=dest_path)
        self._git(["clean", "-fd"], cwd=dest_path)
        self._git(["checkout", "-B", branch, f"origin/{branch}"], cwd=dest_path)
        self._git(["pull", "--ff-only", "origin", branch], cwd=dest_path)

    def _git(self, args: list[str], cwd: str) -> str:
        env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=cwd,
                env=env,
                check=True,
                capture_output=True,
                text=True,
                timeout=_GIT_TIMEOUT,
            )
        except subprocess.CalledProcessError as e:
            detail = self._mask((e.stderr or e.stdout or "").strip())
            logger.error("git %s failed: %s", args[0], detail)
            raise SourceUnavailable(f"git {args[0]} failed: {detail}", log_tail=detail)
        except subprocess.TimeoutExpired:
            logger.error("git %s timed out after %ds", args[0], _GIT_TIMEOUT)
            raise SourceUnavailable(f"git {args[0]} timed out")
        except FileNotFoundError:
            raise SourceUnavailable("git executable not found")
        return result.stdout
