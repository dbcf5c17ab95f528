"""
Per-run workspaces: an empty directory, or a checkout of the triggering commit.
"""

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Any, Dict, Optional

from runner.src.errors import EngineFault

logger = logging.getLogger(__name__)

def prepare_workspace(root: Path, run_id: str, repo_info: Optional[Dict[str, Any]] = None) -> Path:
    """
    Create the workspace for a run. When ``repo_info`` names a clone URL the
    repository is checked out at ``commit_sha``.
    """
    workspace = Path(root) / run_id
    workspace.mkdir(parents=True, exist_ok=True)

    clone_url = (repo_info or {}).get("clone_url")
    if clone_url:
        checkout_repository(clone_url, repo_info.get("commit_sha"), workspace)

    return workspace

def checkout_repository(clone_url: str, commit_sha: Optional[str], workspace: Path) -> None:
    """Clone into ``workspace`` and check out ``commit_sha`` if given."""
    logger.info(f"Checking out {clone_url} at {commit_sha or 'HEAD'}")
    try:
        subprocess.run(
            ["git", "clone", "--depth", "1", clone_url, str(workspace)],
            check=True,
            capture_output=True,
            timeout=120
        )

        if commit_sha:
            subprocess.run(
                ["git", "fetch", "--depth", "1", "origin", commit_sha],
                cwd=workspace,
                capture_output=True,
                timeout=60
            )
            subprocess.run(
                ["git", "checkout", commit_sha],
                cwd=workspace,
                check=True,
                capture_output=True,
                timeout=30
            )
    except subprocess.TimeoutExpired:
        raise EngineFault("Repository checkout timed out")
    except subprocess.CalledProcessError as e:
        raise EngineFault(f"Failed to check out repository: {e.stderr.decode(errors='replace')}")
    except OSError as e:
        raise EngineFault(f"Failed to run git: {e}")

def cleanup_workspace(workspace: Optional[Path]) -> None:
    if workspace and workspace.exists():
        shutil.rmtree(workspace, ignore_errors=True)
        logger.debug(f"Removed workspace {workspace}")
