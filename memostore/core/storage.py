"""
Durable document backend. GitHub contents API OR local filesystem.
Controlled by FF_USE_GITHUB flag.

A backend knows how to find/create a user's container (repository) and how
to read and write one file in it with optimistic concurrency: every read
returns a version token and every write must present the token it read.
"""

import base64
import hashlib
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx

from .config import get_settings
from .errors import (
    MemoryStoreError,
    NotFound,
    Unauthorized,
    UpstreamUnavailable,
    VersionConflict,
)
from .flags import get_flags

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoreCredentials:
    """Everything needed to address one user's durable document."""
    user_id: str
    token: str
    owner: str
    repo: str


@dataclass(frozen=True)
class DocumentSnapshot:
    content: str
    version: str


@dataclass(frozen=True)
class ContainerRef:
    owner: str
    repo: str


class DocumentBackend(ABC):
    @abstractmethod
    async def get_login(self, token: str) -> str:
        """Return the account name the token belongs to."""
        ...

    @abstractmethod
    async def get_container(self, token: str, owner: str, repo: str) -> Optional[ContainerRef]:
        """Return the container, or None if it does not exist."""
        ...

    @abstractmethod
    async def create_container(self, token: str, owner: str, repo: str, description: str) -> ContainerRef:
        ...

    @abstractmethod
    async def get_document(self, creds: StoreCredentials, path: str) -> Optional[DocumentSnapshot]:
        """Return the file and its version token, or None if absent."""
        ...

    @abstractmethod
    async def put_document(
        self,
        creds: StoreCredentials,
        path: str,
        content: str,
        message: str,
        expected_version: Optional[str] = None,
    ) -> str:
        """
        Write the file. `expected_version` must equal the current version
        (None when creating). Raises VersionConflict otherwise.
        Returns the new version token.
        """
        ...

    async def close(self) -> None:
        return None


class GitHubBackend(DocumentBackend):
    """Private repository per user, one JSON file per repository."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        settings = get_settings()
        self.base_url = (base_url or settings.github_api_url).rstrip("/")
        self._timeout = timeout or settings.durable_timeout
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self._timeout, connect=10),
                limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, url: str, token: str, **kwargs) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        try:
            return await self._get_client().request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise UpstreamUnavailable(f"GitHub {method} {url} timed out") from e
        except httpx.TransportError as e:
            raise UpstreamUnavailable(f"GitHub {method} {url} failed: {e}") from e

    @staticmethod
    def _raise_for_status(resp: httpx.Response, what: str) -> None:
        code = resp.status_code
        if code < 400:
            return
        body = resp.text[:300]
        if code == 401:
            raise Unauthorized(f"{what}: credential rejected")
        if code == 403:
            if resp.headers.get("x-ratelimit-remaining") == "0":
                raise UpstreamUnavailable(f"{what}: rate limited")
            raise Unauthorized(f"{what}: forbidden")
        if code == 404:
            raise NotFound(f"{what}: not found")
        if code == 409:
            raise VersionConflict(f"{what}: version token is stale")
        if code == 422 and "sha" in body:
            # File exists but the write did not present its sha
            raise VersionConflict(f"{what}: version token missing or stale")
        if code == 429 or code >= 500:
            raise UpstreamUnavailable(f"{what}: upstream returned {code}")
        logger.error("GitHub %s failed %d: %s", what, code, body)
        raise MemoryStoreError(f"{what}: unexpected status {code}")

    async def get_login(self, token: str) -> str:
        resp = await self._request("GET", "/user", token)
        self._raise_for_status(resp, "get user")
        return resp.json()["login"]

    async def get_container(self, token: str, owner: str, repo: str) -> Optional[ContainerRef]:
        resp = await self._request("GET", f"/repos/{owner}/{repo}", token)
        if resp.status_code == 404:
            return None
        self._raise_for_status(resp, f"get repo {owner}/{repo}")
        data = resp.json()
        return ContainerRef(owner=data["owner"]["login"], repo=data["name"])

    async def create_container(self, token: str, owner: str, repo: str, description: str) -> ContainerRef:
        resp = await self._request(
            "POST",
            "/user/repos",
            token,
            json={
                "name": repo,
                "description": description,
                "private": True,
                "auto_init": True,
            },
        )
        if resp.status_code == 422 and "already exists" in resp.text:
            logger.info("Repository %s/%s already exists", owner, repo)
            return ContainerRef(owner=owner, repo=repo)
        self._raise_for_status(resp, f"create repo {owner}/{repo}")
        data = resp.json()
        logger.info("Created repository %s", data.get("full_name", f"{owner}/{repo}"))
        return ContainerRef(owner=data["owner"]["login"], repo=data["name"])

    async def get_document(self, creds: StoreCredentials, path: str) -> Optional[DocumentSnapshot]:
        url = f"/repos/{creds.owner}/{creds.repo}/contents/{path}"
        resp = await self._request("GET", url, creds.token)
        if resp.status_code == 404:
            return None
        self._raise_for_status(resp, f"get {path}")
        data = resp.json()
        raw = base64.b64decode(data.get("content") or "").decode("utf-8")
        return DocumentSnapshot(content=raw, version=data["sha"])

    async def put_document(
        self,
        creds: StoreCredentials,
        path: str,
        content: str,
        message: str,
        expected_version: Optional[str] = None,
    ) -> str:
        url = f"/repos/{creds.owner}/{creds.repo}/contents/{path}"
        payload = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
        }
        if expected_version:
            payload["sha"] = expected_version

        resp = await self._request("PUT", url, creds.token, json=payload)
        self._raise_for_status(resp, f"put {path}")
        return resp.json()["content"]["sha"]


class LocalBackend(DocumentBackend):
    """Filesystem layout: {base}/{owner}/{repo}/{path}. Version = sha1 of bytes."""

    LOCAL_LOGIN = "local"

    def __init__(self, base_path: Optional[str] = None):
        self.base_path = Path(base_path or get_settings().local_storage_path)

    @staticmethod
    def _version(data: bytes) -> str:
        return hashlib.sha1(data).hexdigest()

    def _file(self, creds: StoreCredentials, path: str) -> Path:
        return self.base_path / creds.owner / creds.repo / path

    async def get_login(self, token: str) -> str:
        return self.LOCAL_LOGIN

    async def get_container(self, token: str, owner: str, repo: str) -> Optional[ContainerRef]:
        if (self.base_path / owner / repo).is_dir():
            return ContainerRef(owner=owner, repo=repo)
        return None

    async def create_container(self, token: str, owner: str, repo: str, description: str) -> ContainerRef:
        (self.base_path / owner / repo).mkdir(parents=True, exist_ok=True)
        logger.info("Created local container %s/%s", owner, repo)
        return ContainerRef(owner=owner, repo=repo)

    async def get_document(self, creds: StoreCredentials, path: str) -> Optional[DocumentSnapshot]:
        file_path = self._file(creds, path)
        if not file_path.exists():
            return None
        data = file_path.read_bytes()
        return DocumentSnapshot(content=data.decode("utf-8"), version=self._version(data))

    async def put_document(
        self,
        creds: StoreCredentials,
        path: str,
        content: str,
        message: str,
        expected_version: Optional[str] = None,
    ) -> str:
        file_path = self._file(creds, path)
        if not file_path.parent.is_dir():
            raise NotFound(f"container {creds.owner}/{creds.repo} does not exist")

        current = self._version(file_path.read_bytes()) if file_path.exists() else None
        if current != expected_version:
            raise VersionConflict(
                f"{path}: expected version {expected_version}, found {current}"
            )

        data = content.encode("utf-8")
        tmp_path = file_path.with_suffix(file_path.suffix + ".tmp")
        tmp_path.write_bytes(data)
        os.replace(tmp_path, file_path)
        logger.debug("Local write %s (%s)", file_path, message)
        return self._version(data)


def get_backend() -> DocumentBackend:
    """Return the active durable backend based on feature flags."""
    flags = get_flags()
    if flags.use_github:
        return GitHubBackend()
    return LocalBackend()
