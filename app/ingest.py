# app/ingest.py
import os
import re
import shutil
import hashlib
import logging
from typing import Dict, List

from git import GitCommandError, InvalidGitRepositoryError, Repo

import config

logger = logging.getLogger(__name__)

SKIP_DIRS = {"node_modules", ".git"}
UNQUERYABLE_EXTENSIONS = re.compile(
    r"\.(jpg|jpeg|png|gif|mp3|mp4|wav|zip|tar|gz|rar|bin|exe|dll|so|dylib)$",
    re.IGNORECASE,
)


# ------------------------
# Repo management
# ------------------------
def normalize_repo_url(repo_url: str) -> str:
    """``https://host/a/b/``, ``https://host/a/b.git`` and ``https://host/a/b`` are one repo."""
    url = (repo_url or "").strip().rstrip("/")
    if url.endswith(".git"):
        url = url[:-4].rstrip("/")
    if not url:
        raise ValueError("Repository link must not be empty")
    return url


def repo_slug(repo_url: str) -> str:
    """Directory name for a clone: repo name plus a short hash of the normalized URL."""
    url = normalize_repo_url(repo_url)
    name = url.split("/")[-1]
    name = re.sub(r"[^A-Za-z0-9._-]", "_", name) or "repo"
    digest = hashlib.sha1(url.encode("utf-8")).hexdigest()[:10]
    return f"{name}-{digest}"


def get_repo_path(repo_url: str, base_dir: str = None) -> str:
    """
    Ensure repo is cloned locally. If not, clone it.
    If already cloned, pull latest changes.
    Returns the local repo path.
    """
    base_dir = base_dir or config.REPOS_DIR
    os.makedirs(base_dir, exist_ok=True)
    repo_path = os.path.join(base_dir, repo_slug(repo_url))

    if not os.path.exists(repo_path):
        logger.info("Cloning %s into %s", repo_url, repo_path)
        try:
            Repo.clone_from(repo_url.strip(), repo_path, depth=1)
        except GitCommandError:
            # never leave a partial checkout behind
            shutil.rmtree(repo_path, ignore_errors=True)
            raise
        logger.info("Repository cloned successfully")
    else:
        logger.info("Repo already exists at %s, pulling latest changes...", repo_path)
        try:
            Repo(repo_path).remotes.origin.pull()
        except (GitCommandError, InvalidGitRepositoryError, AttributeError, ValueError) as e:
            logger.warning("Could not pull latest changes for %s: %s", repo_url, e)

    return repo_path


# ------------------------
# File discovery
# ------------------------
def is_queryable(path: str, size: int) -> bool:
    if UNQUERYABLE_EXTENSIONS.search(os.path.basename(path)):
        return False
    return size <= config.MAX_FILE_BYTES


def _inside(path: str, real_root: str) -> bool:
    real = os.path.realpath(path)
    return real == real_root or real.startswith(real_root + os.sep)


def read_files_recursively(root: str) -> List[str]:
    """
    Walk ``root`` and return the files worth indexing, sorted.

    Symlinks are never followed: a cloned repository may link to files
    anywhere on the server.
    """
    real_root = os.path.realpath(root)
    results = []
    for dirpath, dirnames, filenames in os.walk(root):
        # prune in place so os.walk never descends into skipped dirs
        dirnames[:] = [
            d for d in dirnames
            if d not in SKIP_DIRS and not d.startswith(".")
            and not os.path.islink(os.path.join(dirpath, d))
        ]
        for fname in filenames:
            if fname.startswith("."):
                continue
            path = os.path.join(dirpath, fname)
            if os.path.islink(path) or not _inside(path, real_root):
                logger.debug("Skipping link %s", path)
                continue
            try:
                size = os.lstat(path).st_size
            except OSError as e:
                logger.warning("Could not stat %s: %s", path, e)
                continue
            if is_queryable(path, size):
                results.append(os.path.abspath(path))
    return sorted(results)


def load_documents(root: str) -> Dict[str, str]:
    """Read every queryable file under ``root`` as UTF-8, keyed by relative path."""
    found = {}
    for path in read_files_recursively(root):
        rel = os.path.relpath(path, root).replace(os.sep, "/")
        try:
            with open(path, "r", encoding="utf-8") as fh:
                content = fh.read()
        except (UnicodeDecodeError, OSError) as e:
            logger.warning("Failed to process file %s: %s", rel, e)
            continue
        if not content.strip():
            continue
        found[rel] = content

    logger.debug("Loaded %d documents from %s", len(found), root)
    return found
