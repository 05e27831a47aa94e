"""
FastAPI dependencies. Injected into route handlers.
"""

from fastapi import Header, HTTPException, status

from ..services.categorizer import get_categorizer
from ..services.credentials import CredentialResolver
from ..services.document_store import DurableDocumentStore
from ..services.embeddings import get_embedder
from ..services.metadata_index import MetadataIndex
from ..services.orchestrator import StorageOrchestrator
from ..services.vector_index import VectorIndex
from .config import get_settings
from .database import get_session_factory
from .storage import get_backend

_orchestrator = None


def build_orchestrator(
    backend=None,
    session_factory=None,
    embedder=None,
    categorizer=None,
    settings=None,
) -> StorageOrchestrator:
    """Wire the engine. Anything not passed comes from settings and flags."""
    settings = settings or get_settings()
    backend = backend or get_backend()
    sessions = session_factory or get_session_factory()

    resolver = CredentialResolver(backend, sessions, settings)
    return StorageOrchestrator(
        store=DurableDocumentStore(backend, resolver, settings),
        metadata=MetadataIndex(sessions),
        vectors=VectorIndex(sessions),
        embedder=embedder or get_embedder(),
        categorizer=categorizer or get_categorizer(),
        settings=settings,
    )


def get_orchestrator() -> StorageOrchestrator:
    """Process-wide engine. The per-user write lock only works if this is shared."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator()
    return _orchestrator


async def close_orchestrator() -> None:
    global _orchestrator
    if _orchestrator is not None:
        await _orchestrator.store.backend.close()
        _orchestrator = None


async def get_user_id(x_user_id: str = Header(default="")) -> str:
    """
    Caller identity. Set by the gateway after it has authenticated the
    request; this service does not issue or verify tokens.
    """
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )
    return x_user_id
