"""
GitHub service for webhook validation and repo operations.
"""

import hmac
import hashlib
import logging
import shutil
import tempfile
import os
from pathlib import Path
from typing import Optional, Dict, Any

from api.src.config import get_settings
from runner.src.services.pipeline_parser import find_definition_file
from runner.src.services.workspace import checkout_repository

logger = logging.getLogger(__name__)

def verify_signature(payload: bytes, signature: str, secret: Optional[str] = None) -> bool:
    """Verify GitHub webhook signature."""
    if secret is None:
        secret = get_settings().github_webhook_secret
    if not secret:
        # Skip verification if no secret configured (development)
        return True

    expected = "sha256=" + hmac.new(
        secret.encode(),
        payload,
        hashlib.sha256
    ).hexdigest()
    return hmac.compare_digest(expected, signature or "")

def clone_repository(clone_url: str, commit_sha: Optional[str]) -> str:
    """
    Clone repository to temporary directory.
    Returns path to cloned repo. Raises EngineFault if git fails.
    """
    temp_dir = tempfile.mkdtemp(prefix="stageline_")
    repo_path = os.path.join(temp_dir, "repo")

    try:
        checkout_repository(clone_url, commit_sha, Path(repo_path))
    except Exception:
        shutil.rmtree(temp_dir, ignore_errors=True)
        raise
    return repo_path

def fetch_pipeline_config(repo_path: str) -> Optional[str]:
    """
    Read the pipeline definition from a checkout.
    Returns the YAML text or None if the repository has none.
    """
    path = find_definition_file(repo_path)
    if path is None:
        return None
    return path.read_text()

def parse_webhook_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Extract relevant info from GitHub webhook payload."""
    repo = payload.get("repository") or {}
    head_commit = payload.get("head_commit") or {}

    # refs/heads/main -> main
    ref = payload.get("ref", "")
    branch = ref.replace("refs/heads/", "") if ref.startswith("refs/heads/") else ref

    return {
        "repo_name": repo.get("name", ""),
        "repo_full_name": repo.get("full_name", ""),
        "clone_url": repo.get("clone_url", ""),
        "commit_sha": head_commit.get("id", payload.get("after", "")),
        "branch": branch,
        "commit_message": head_commit.get("message", ""),
        "pusher": (payload.get("pusher") or {}).get("name", ""),
    }

def cleanup_repo(repo_path: Optional[str]):
    """Remove a checkout made by clone_repository."""
    if repo_path and os.path.exists(repo_path):
        parent = os.path.dirname(repo_path)
        try:
            shutil.rmtree(parent)
        except OSError as e:
            logger.warning(f"Failed to remove {parent}: {e}")
