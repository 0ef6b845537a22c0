import logging
from pathlib import Path
from typing import Dict, Optional

import requests

from ciphervault.core.models import StorageTarget

from .base import Storage
from .github import GitHubClient, GitHubStorage
from .local import LocalStorage

logger = logging.getLogger(__name__)


def build_storages(storage_config, local_path: Path,
                   session: Optional[requests.Session] = None) -> Dict[StorageTarget, Storage]:
    """Instantiate every configured backend. Enablement is the manager's concern."""
    storages: Dict[StorageTarget, Storage] = {
        StorageTarget.LOCAL: LocalStorage(local_path),
    }

    remote = storage_config.remote
    if remote.enabled or remote.is_configured:
        token = remote.token.get_secret_value() if remote.token else ""
        client = GitHubClient(
            owner=remote.owner,
            repo=remote.repo,
            token=token,
            branch=remote.branch,
            api_url=remote.api_url,
            timeout=remote.timeout,
            session=session,
        )
        storages[StorageTarget.REMOTE] = GitHubStorage(client, remote.file_path)

    logger.debug("Configured backends: %s", ", ".join(str(t) for t in storages))
    return storages
