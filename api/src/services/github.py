"""
GitHub service for webhook validation and repo operations.
"""

import hmac
import hashlib
import logging
import tempfile
import shutil
import subprocess
import os
from typing import Optional, Dict, Any

import yaml

from api.src.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

CONFIG_FILES = [".releasex.yml", ".releasex.yaml", "releasex.yml", "releasex.yaml"]

class RepositoryError(Exception):
    """Raised when the repository cannot be cloned or read."""
    pass

def verify_signature(payload: bytes, signature: str) -> bool:
    """Verify GitHub webhook signature."""
    if not settings.github_webhook_secret:
        # Skip verification if no secret configured (development)
        return True

    expected = "sha256=" + hmac.new(
        settings.github_webhook_secret.encode(),
        payload,
        hashlib.sha256
    ).hexdigest()
    return hmac.compare_digest(expected, signature)

async def clone_repository(clone_url: str, commit_sha: str) -> str:
    """
    Clone repository to temporary directory.
    Returns path to cloned repo.
    """
    temp_dir = tempfile.mkdtemp(prefix="releasex_")
    repo_path = os.path.join(temp_dir, "repo")

    try:
        # Clone the repository
        subprocess.run(
            ["git", "clone", "--depth", "1", clone_url, repo_path],
            check=True,
            capture_output=True,
            timeout=120
        )

        # Checkout specific commit if provided
        if commit_sha:
            subprocess.run(
                ["git", "fetch", "--depth", "1", "origin", commit_sha],
                cwd=repo_path,
                capture_output=True,
                timeout=60
            )
            subprocess.run(
                ["git", "checkout", commit_sha],
                cwd=repo_path,
                check=True,
                capture_output=True,
                timeout=30
            )

        return repo_path
    except subprocess.TimeoutExpired:
        cleanup_repo(repo_path)
        raise RepositoryError("Repository clone timed out")
    except subprocess.CalledProcessError as e:
        cleanup_repo(repo_path)
        raise RepositoryError(f"Failed to clone repository: {e.stderr.decode()}")

def _read_yaml(path: str) -> Any:
    with open(path, "r") as f:
        try:
            return yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise RepositoryError(f"Invalid YAML in {os.path.basename(path)}: {e}")

async def fetch_pipeline_config(repo_path: str) -> Optional[Dict[str, Any]]:
    """
    Read .releasex.yml from repository.
    Returns parsed config or None if not found.
    """
    for name in CONFIG_FILES:
        config_path = os.path.join(repo_path, name)
        if os.path.exists(config_path):
            return _read_yaml(config_path)

    return None

async def fetch_resource_set(repo_path: str, relative_path: str) -> Dict[str, Any]:
    """Read the resource-set file named by the pipeline's target section."""
    root = os.path.realpath(repo_path)
    path = os.path.realpath(os.path.join(root, relative_path))
    if not path.startswith(root + os.sep):
        raise RepositoryError(f"Resource set path '{relative_path}' escapes the repository")
    if not os.path.exists(path):
        raise RepositoryError(f"Resource set '{relative_path}' not found")
    return _read_yaml(path)

def parse_webhook_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Extract relevant info from GitHub webhook payload."""
    repo = payload.get("repository", {})
    head_commit = payload.get("head_commit") or {}

    # Get branch from ref (refs/heads/main -> main)
    ref = payload.get("ref", "")
    branch = ref.replace("refs/heads/", "") if ref.startswith("refs/heads/") else ref

    return {
        "repo_name": repo.get("name", ""),
        "repo_full_name": repo.get("full_name", ""),
        "clone_url": repo.get("clone_url", ""),
        "commit_sha": head_commit.get("id", payload.get("after", "")),
        "branch": branch,
        "commit_message": head_commit.get("message", ""),
        "pusher": payload.get("pusher", {}).get("name", ""),
        "deleted": bool(payload.get("deleted", False)),
    }

def cleanup_repo(repo_path: str):
    """Clean up cloned repository."""
    if not repo_path:
        return
    # Remove the parent temp directory
    parent = os.path.dirname(repo_path)
    try:
        if os.path.exists(parent):
            shutil.rmtree(parent)
    except OSError as e:
        logger.warning(f"Failed to clean up {parent}: {e}")
