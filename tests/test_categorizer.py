import httpx
import pytest

from memostore.core.dependencies import build_orchestrator
from memostore.core.errors import UpstreamUnavailable
from memostore.schemas import NewMemory
from memostore.services import categorizer as categorizer_module
from memostore.services import llm as llm_module
from memostore.services.categorizer import DEFAULT_CATEGORIES, LLMCategorizer, StaticCategorizer, clean_tags
from memostore.services.embeddings import HashingEmbedder, RemoteEmbedder
from memostore.services.llm import chat_json, parse_json_response


def test_parse_json_response_strips_fences_and_prose() -> None:
    fenced = '```json\n{"category": "Technology", "confidence": 0.8}\n```'
    chatty = 'Sure! Here you go: {"tags": ["a", "b"]} Hope that helps.'

    assert parse_json_response(fenced) == {"category": "Technology", "confidence": 0.8}
    assert parse_json_response(chatty) == {"tags": ["a", "b"]}


@pytest.mark.parametrize("text", ["", "   ", "no json here", "{not: valid}", "[1, 2]"])
def test_parse_json_response_rejects_garbage(text: str) -> None:
    with pytest.raises(ValueError):
        parse_json_response(text)


def test_clean_tags_normalizes_and_caps() -> None:
    raw = [" Berlin ", "", 7, "x" * 31, "Home", "City", "Travel", "Food", "Extra"]

    assert clean_tags(raw) == ["berlin", "home", "city", "travel", "food"]
    assert clean_tags("not a list") == []


@pytest.mark.asyncio
async def test_llm_categorizer_reads_model_answer(monkeypatch: pytest.MonkeyPatch) -> None:
    prompts: list[str] = []

    async def fake_chat_json(prompt: str, **kwargs) -> dict:
        prompts.append(prompt)
        if "search tags" in prompt:
            return {"tags": ["Berlin", "home"]}
        return {"category": "Travel & Places", "confidence": 0.92, "reasoning": "a city"}

    monkeypatch.setattr(categorizer_module, "chat_json", fake_chat_json)
    llm = LLMCategorizer()

    result = await llm.categorize("I live in Berlin", DEFAULT_CATEGORIES)
    tags = await llm.generate_tags("I live in Berlin")

    assert result.category == "Travel & Places"
    assert result.confidence == pytest.approx(0.92)
    assert tags == ["berlin", "home"]
    assert "- Travel & Places" in prompts[0]


@pytest.mark.asyncio
async def test_static_categorizer_uses_fallback() -> None:
    static = StaticCategorizer("Misc")

    assert (await static.categorize("anything", DEFAULT_CATEGORIES)).category == "Misc"
    assert await static.generate_tags("anything") == []


@pytest.mark.asyncio
async def test_hashing_embedder_is_deterministic_and_normalized() -> None:
    embedder = HashingEmbedder(dimensions=32)

    first = await embedder.generate("Berlin apartment rent")
    second = await embedder.generate("Berlin apartment rent")

    assert first == second
    assert len(first) == 32
    assert sum(v * v for v in first) == pytest.approx(1.0)
    assert embedder.model == "hashing-bow-32"
    with pytest.raises(ValueError):
        await embedder.generate("   ")


def _answering(monkeypatch: pytest.MonkeyPatch, settings, body) -> httpx.AsyncClient:
    """Route the shared model client to a transport that always replies with `body`."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json=body)))
    keyed = settings.model_copy(update={"llm_api_key": "test-key"})
    monkeypatch.setattr(llm_module, "get_settings", lambda: keyed)
    monkeypatch.setattr(llm_module, "_client", client)
    return client


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [
    {"choices": []},
    {"choices": [{}]},
    {"choices": [{"message": {"content": 42}}]},
    ["not", "an", "object"],
])
async def test_chat_json_rejects_malformed_replies(monkeypatch: pytest.MonkeyPatch, settings, body) -> None:
    client = _answering(monkeypatch, settings, body)
    try:
        with pytest.raises(UpstreamUnavailable):
            await chat_json("Categorize this")
    finally:
        await client.aclose()


@pytest.mark.asyncio
async def test_create_survives_a_model_reply_without_choices(
    monkeypatch: pytest.MonkeyPatch, settings, backend, session_factory, alice
) -> None:
    client = _answering(monkeypatch, settings, {"choices": []})
    engine = build_orchestrator(
        backend=backend,
        session_factory=session_factory,
        embedder=HashingEmbedder(dimensions=64),
        categorizer=LLMCategorizer(),
        settings=settings,
    )
    try:
        memory = await engine.create_memory(alice, NewMemory(content="I live in Berlin"))
    finally:
        await client.aclose()

    assert memory.category == settings.fallback_category
    assert memory.tags == ""
    assert backend.document("alice")["memories"][memory.id]["content"] == "I live in Berlin"


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [
    {"data": []},
    {"data": [{"embedding": []}]},
    {"object": "list"},
])
async def test_remote_embedder_rejects_malformed_replies(monkeypatch: pytest.MonkeyPatch, settings, body) -> None:
    client = _answering(monkeypatch, settings, body)
    embedder = RemoteEmbedder(model="test-embedding", api_key="k")
    try:
        with pytest.raises(UpstreamUnavailable):
            await embedder.generate("I live in Berlin")
    finally:
        await client.aclose()
