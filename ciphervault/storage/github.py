import base64
import binascii
import logging
import threading
from typing import Any, Dict, Optional

import requests

from ciphervault.core.errors import ConflictError, StorageUnavailableError
from ciphervault.core.models import StorageSnapshot, StorageTarget

from .base import Storage, dump_snapshot, parse_snapshot

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"


class GitHubClient:
    """Minimal client for the repository contents API."""

    def __init__(self, owner: str, repo: str, token: str, branch: str = "main",
                 api_url: str = GITHUB_API_URL, timeout: float = 15,
                 session: Optional[requests.Session] = None):
        self.owner = owner
        self.repo = repo
        self.token = token
        self.branch = branch
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": "ciphervault",
        })

    @property
    def repo_url(self) -> str:
        return f"{self.api_url}/repos/{self.owner}/{self.repo}"

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        headers = {"Authorization": f"Bearer {self.token}"}
        try:
            resp = self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise StorageUnavailableError(f"GitHub request failed: {e}", StorageTarget.REMOTE) from e
        if resp.status_code in (401, 403):
            raise StorageUnavailableError(
                f"GitHub authentication failed ({resp.status_code})", StorageTarget.REMOTE
            )
        return resp

    @staticmethod
    def _fail(resp: requests.Response) -> StorageUnavailableError:
        return StorageUnavailableError(
            f"GitHub API error ({resp.status_code}): {resp.text}", StorageTarget.REMOTE
        )

    def get_repo(self) -> Dict[str, Any]:
        resp = self._request("GET", self.repo_url)
        if resp.status_code != 200:
            raise self._fail(resp)
        return resp.json()

    def get_file(self, path: str) -> Optional[Dict[str, Any]]:
        """File metadata and content, or None if it does not exist yet."""
        resp = self._request("GET", f"{self.repo_url}/contents/{path}", params={"ref": self.branch})
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise self._fail(resp)
        return resp.json()

    def put_file(self, path: str, content: str, message: str, sha: Optional[str] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": self.branch,
        }
        if sha:
            body["sha"] = sha
        resp = self._request("PUT", f"{self.repo_url}/contents/{path}", json=body)
        if resp.status_code in (409, 422):
            raise ConflictError(
                f"Remote file changed since it was last loaded ({resp.status_code})", StorageTarget.REMOTE
            )
        if resp.status_code not in (200, 201):
            raise self._fail(resp)
        return resp.json()

    @staticmethod
    def decode_file_content(file_content: Dict[str, Any]) -> str:
        try:
            return base64.b64decode(file_content.get("content", "")).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise StorageUnavailableError(f"Cannot decode remote file: {e}", StorageTarget.REMOTE) from e


class GitHubStorage(Storage):
    """Snapshot kept as a JSON file in a GitHub repository branch.

    Every save is a single commit carrying the blob sha seen by the last
    load, so a concurrent writer turns into a ConflictError instead of a
    lost update.
    """

    target = StorageTarget.REMOTE

    def __init__(self, client: GitHubClient, file_path: str = "passwords.json"):
        self.client = client
        self.file_path = file_path
        self._sha: Optional[str] = None
        self._loaded = False
        self._lock = threading.Lock()

    def load(self) -> StorageSnapshot:
        file_content = self.client.get_file(self.file_path)
        if file_content is None:
            snapshot = StorageSnapshot()
            sha = None
        else:
            snapshot = parse_snapshot(self.client.decode_file_content(file_content), self.target)
            sha = file_content.get("sha")
        with self._lock:
            self._sha = sha
            self._loaded = True
        return snapshot

    def save(self, snapshot: StorageSnapshot) -> None:
        with self._lock:
            loaded, sha = self._loaded, self._sha
        if not loaded:
            current = self.client.get_file(self.file_path)
            sha = current.get("sha") if current else None

        snapshot.touch()
        message = f"Update passwords - {snapshot.metadata.entry_count} items"
        resp = self.client.put_file(self.file_path, dump_snapshot(snapshot), message, sha)
        with self._lock:
            self._sha = (resp.get("content") or {}).get("sha")
            self._loaded = True
        logger.info("Committed %d entries to %s/%s:%s", snapshot.metadata.entry_count,
                    self.client.owner, self.client.repo, self.file_path)

    def test_connection(self) -> None:
        self.client.get_repo()

    def __repr__(self) -> str:
        return f"GitHubStorage({self.client.owner}/{self.client.repo}:{self.file_path})"
