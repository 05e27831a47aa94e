"""
Resolve a user id into durable-store credentials, provisioning the
user's container on first use and caching its coordinates on the user row.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import Settings, get_settings
from ..core.database import get_session_factory
from ..core.errors import NotFound, Unauthorized, VersionConflict, bounded
from ..core.locks import KeyedLock
from ..core.storage import DocumentBackend, StoreCredentials
from ..models.user import User
from ..schemas import DurableDocument

logger = logging.getLogger(__name__)

README_TEMPLATE = """# memostore memories

This is your private repository for storing AI conversation memories.

## Structure

- All memories live in a single `{path}` file
- Each entry holds the full memory content, its embedding and metadata

## Security

This repository is private and only accessible to you. memostore uses your
token to read and write the memories file on your behalf.

## Backup

Since this is a Git repository, you have the full version history of every
memory. Clone it locally for an additional backup.

Created on {created}
"""


class CredentialResolver:
    def __init__(
        self,
        backend: DocumentBackend,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
    ):
        self.backend = backend
        self._sessions = session_factory or get_session_factory()
        self.settings = settings or get_settings()
        self._provisioning = KeyedLock()

    async def _load_user(self, user_id: str) -> User:
        async with self._sessions() as db:
            user = await db.get(User, user_id)
        if user is None:
            raise NotFound(f"user {user_id} not found")
        if not user.access_token:
            raise Unauthorized(f"user {user_id} has no access token; re-authenticate")
        return user

    @staticmethod
    def _cached(user: User) -> Optional[StoreCredentials]:
        if user.memory_repo_owner and user.memory_repo_name:
            return StoreCredentials(
                user_id=user.id,
                token=user.access_token,
                owner=user.memory_repo_owner,
                repo=user.memory_repo_name,
            )
        return None

    async def resolve(self, user_id: str, create: bool = True) -> Optional[StoreCredentials]:
        """
        Return credentials for the user's durable store.

        With create=False a missing container yields None instead of being
        provisioned, so read paths never create repositories.
        """
        user = await self._load_user(user_id)
        creds = self._cached(user)
        if creds:
            return creds

        async with self._provisioning.hold(user_id):
            # Another task may have provisioned while we waited
            user = await self._load_user(user_id)
            creds = self._cached(user)
            if creds:
                return creds
            return await self._provision(user, create)

    async def _provision(self, user: User, create: bool) -> Optional[StoreCredentials]:
        timeout = self.settings.durable_timeout
        token = user.access_token
        repo = self.settings.memory_repo_name

        owner = user.login or await bounded(
            self.backend.get_login(token), timeout, "resolve login"
        )
        container = await bounded(
            self.backend.get_container(token, owner, repo), timeout, "get container"
        )
        if container is None:
            if not create:
                return None
            container = await bounded(
                self.backend.create_container(
                    token, owner, repo, self.settings.memory_repo_description
                ),
                timeout,
                "create container",
            )
            creds = StoreCredentials(user.id, token, container.owner, container.repo)
            await self._seed(creds)
        else:
            creds = StoreCredentials(user.id, token, container.owner, container.repo)

        async with self._sessions() as db:
            row = await db.get(User, user.id)
            row.login = row.login or owner
            row.memory_repo_owner = creds.owner
            row.memory_repo_name = creds.repo
            await db.commit()

        logger.info("Store location for user %s: %s/%s", user.id, creds.owner, creds.repo)
        return creds

    async def _seed(self, creds: StoreCredentials) -> None:
        """Write README and an empty memories document into a fresh container."""
        timeout = self.settings.durable_timeout
        path = self.settings.memories_path
        created = datetime.now(timezone.utc).isoformat()

        seeds = [
            ("README.md", README_TEMPLATE.format(path=path, created=created), "Initial memostore setup"),
            (path, DurableDocument().to_json(), "Initialize memories storage"),
        ]
        for file_path, content, message in seeds:
            try:
                await bounded(
                    self.backend.put_document(creds, file_path, content, message),
                    timeout,
                    f"seed {file_path}",
                )
            except VersionConflict:
                # auto_init already created it
                logger.debug("Seed file %s already present in %s/%s", file_path, creds.owner, creds.repo)

    async def setup_store(self, user_id: str) -> StoreCredentials:
        """Explicitly provision (or verify) the user's container."""
        return await self.resolve(user_id, create=True)
