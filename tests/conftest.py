import asyncio
import itertools
import json
from pathlib import Path
from typing import Callable, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from memostore.core.config import Settings, get_settings
from memostore.core.database import create_tables
from memostore.core.dependencies import build_orchestrator
from memostore.core.errors import NotFound, VersionConflict
from memostore.core.storage import ContainerRef, DocumentBackend, DocumentSnapshot, StoreCredentials
from memostore.models.user import User
from memostore.services.categorizer import StaticCategorizer
from memostore.services.embeddings import HashingEmbedder
from memostore.services.orchestrator import StorageOrchestrator


class FakeGitBackend(DocumentBackend):
    """
    In-memory stand-in for the contents API. Version tokens behave like
    blob shas: every write must present the token of the file it replaces.
    A token of the form "token-<login>" belongs to <login>.
    """

    def __init__(self):
        self.containers: set[tuple[str, str]] = set()
        self.files: dict[tuple[str, str, str], DocumentSnapshot] = {}
        self.commits: list[tuple[str, str]] = []
        self.created: list[tuple[str, str]] = []
        self.fail_next_puts: list[Exception] = []
        self.before_put: Optional[Callable[[StoreCredentials, str], None]] = None
        self.put_delay = 0.0
        self._shas = itertools.count(1)

    def _next_sha(self) -> str:
        return f"sha{next(self._shas)}"

    async def get_login(self, token: str) -> str:
        return token.removeprefix("token-")

    async def get_container(self, token: str, owner: str, repo: str) -> Optional[ContainerRef]:
        if (owner, repo) in self.containers:
            return ContainerRef(owner=owner, repo=repo)
        return None

    async def create_container(self, token: str, owner: str, repo: str, description: str) -> ContainerRef:
        self.containers.add((owner, repo))
        self.created.append((owner, repo))
        return ContainerRef(owner=owner, repo=repo)

    async def get_document(self, creds: StoreCredentials, path: str) -> Optional[DocumentSnapshot]:
        return self.files.get((creds.owner, creds.repo, path))

    async def put_document(
        self,
        creds: StoreCredentials,
        path: str,
        content: str,
        message: str,
        expected_version: Optional[str] = None,
    ) -> str:
        if self.before_put is not None:
            hook, self.before_put = self.before_put, None
            hook(creds, path)
        if self.put_delay:
            await asyncio.sleep(self.put_delay)
        if self.fail_next_puts:
            raise self.fail_next_puts.pop(0)
        if (creds.owner, creds.repo) not in self.containers:
            raise NotFound(f"{creds.owner}/{creds.repo}")

        key = (creds.owner, creds.repo, path)
        current = self.files.get(key)
        if (current.version if current else None) != expected_version:
            raise VersionConflict(f"{path} does not match {expected_version}")

        snapshot = DocumentSnapshot(content=content, version=self._next_sha())
        self.files[key] = snapshot
        self.commits.append((path, message))
        return snapshot.version

    # ── Test helpers ─────────────────────────────────────────────────

    def document(self, owner: str, path: str = "memories.json") -> Optional[dict]:
        snapshot = self.files.get((owner, get_settings().memory_repo_name, path))
        return json.loads(snapshot.content) if snapshot else None

    def external_write(self, owner: str, path: str = "memories.json", edit=None) -> None:
        """Another client rewrites the file, moving its version on."""
        key = (owner, get_settings().memory_repo_name, path)
        doc = json.loads(self.files[key].content)
        if edit is not None:
            edit(doc)
        self.files[key] = DocumentSnapshot(content=json.dumps(doc), version=self._next_sha())

    def commits_for(self, path: str = "memories.json", prefix: str = "") -> list[str]:
        return [m for p, m in self.commits if p == path and m.startswith(prefix)]


@pytest.fixture
def settings() -> Settings:
    return get_settings().model_copy(update={
        "durable_timeout": 5.0,
        "embedding_timeout": 5.0,
        "categorize_timeout": 5.0,
    })


@pytest_asyncio.fixture
async def session_factory(tmp_path: Path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'memostore-test.db'}")
    await create_tables(engine)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def backend() -> FakeGitBackend:
    return FakeGitBackend()


@pytest.fixture
def embedder() -> HashingEmbedder:
    return HashingEmbedder(dimensions=256)


@pytest_asyncio.fixture
async def make_user(session_factory):
    async def _make(user_id: str, token: Optional[str] = "default") -> str:
        if token == "default":
            token = f"token-{user_id}"
        async with session_factory() as db:
            db.add(User(id=user_id, access_token=token))
            await db.commit()
        return user_id
    return _make


@pytest_asyncio.fixture
async def alice(make_user) -> str:
    return await make_user("alice")


@pytest_asyncio.fixture
async def bob(make_user) -> str:
    return await make_user("bob")


@pytest.fixture
def orchestrator(backend, session_factory, embedder, settings) -> StorageOrchestrator:
    return build_orchestrator(
        backend=backend,
        session_factory=session_factory,
        embedder=embedder,
        categorizer=StaticCategorizer("General"),
        settings=settings,
    )
