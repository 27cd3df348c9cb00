"""
Tests for the answer orchestrator.

Tests verify:
- Context assembly order and character budget
- End-to-end turn: token frames, done frame, transcript and memory persisted
- Retrieval failures abort the turn before any token
- Mid-stream model errors stop the stream without a done frame
- Persistence failures never reach the caller
- Memories from other users or conversations never reach the prompt
- Client disconnect mid-generation persists nothing
- Run tree recorded for each turn
"""

from unittest.mock import MagicMock

import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel

from api.observability.tracing import ROOT_RUN_NAME, RunTracker
from api.orchestrators.answer_orchestrator import AnswerOrchestrator, assemble_context
from libs.memory.distiller import MemoryDistiller
from libs.vectors.milvus import SearchHit

QUESTION = "Học phí ngành CNTT là bao nhiêu?"
TUITION_CHUNK = "Học phí ngành Công nghệ Thông tin năm học 2024-2025 là 30 triệu đồng/năm."
ANSWER = "Theo tài liệu của trường, học phí ngành CNTT năm 2024-2025 là 30 triệu đồng mỗi năm."


class RecordingLLM:
    """Wraps a chat model and remembers the prompts it was given."""

    def __init__(self, inner):
        self.inner = inner
        self.prompts = []

    def astream(self, messages):
        self.prompts.append(messages)
        return self.inner.astream(messages)


def hit(content, score=0.9):
    return SearchHit(content=content, score=score)


def make_orchestrator(
    embedding_client,
    vector_store,
    conversation_store,
    answer=ANSWER,
    llm=None,
    tracker=None,
    summary="Người dùng hỏi học phí CNTT và được trả lời 30 triệu đồng/năm.",
):
    distiller = MemoryDistiller(
        embedding_client,
        vector_store,
        llm=FakeListChatModel(responses=[summary]),
        min_answer_chars=50,
    )
    return AnswerOrchestrator(
        embedding_client=embedding_client,
        vector_store=vector_store,
        conversation_store=conversation_store,
        distiller=distiller,
        tracker=tracker,
        llm=llm or RecordingLLM(FakeListChatModel(responses=[answer])),
    )


async def collect(stream):
    frames = []
    async for frame in stream:
        frames.append(frame)
    return frames


def test_assemble_context_memories_first():
    context = assemble_context([hit("memory 1"), hit("memory 2")], [hit("doc 1"), hit("doc 2")], budget=1500)
    assert context == "memory 1\nmemory 2\ndoc 1\ndoc 2"


def test_assemble_context_single_document_is_verbatim():
    assert assemble_context([], [hit(TUITION_CHUNK)]) == TUITION_CHUNK


def test_assemble_context_respects_budget():
    context = assemble_context([hit("m" * 1000)], [hit("d" * 1000)], budget=1500)
    assert len(context) == 1500
    assert context.startswith("m" * 1000 + "\n")


def test_assemble_context_empty():
    assert assemble_context([], []) == ""


@pytest.mark.asyncio
async def test_end_to_end_turn(embedding_client, make_vector_store, conversation_store):
    vector_store = make_vector_store(documents=[hit(TUITION_CHUNK)])
    orchestrator = make_orchestrator(embedding_client, vector_store, conversation_store)

    frames = await collect(orchestrator.stream_answer(QUESTION, "u1", "c1"))

    token_frames = [f for f in frames if "token" in f]
    assert len(token_frames) == len(ANSWER)
    assert len(frames) == len(ANSWER) + 1
    assert frames[-1] == {"done": True}
    assert "".join(f["token"] for f in token_frames) == ANSWER

    # Embedded once, reused for both searches
    assert embedding_client.calls[0] == QUESTION
    assert vector_store.memory_queries == [("u1", "c1")]

    human = orchestrator._llm.prompts[0][-1].content
    assert human == f"Câu hỏi: {QUESTION}\n\nContext: {TUITION_CHUNK}"

    assert conversation_store.turns == [("u1", "c1", QUESTION, ANSWER)]

    memories = vector_store.inserted["chatbot_memories"]
    assert len(memories) == 1
    assert memories[0]["user_id"] == "u1"
    assert memories[0]["conversation_id"] == "c1"
    assert memories[0]["content"] == "Người dùng hỏi học phí CNTT và được trả lời 30 triệu đồng/năm."


@pytest.mark.asyncio
async def test_short_answer_is_saved_but_not_distilled(embedding_client, vector_store, conversation_store):
    orchestrator = make_orchestrator(embedding_client, vector_store, conversation_store, answer="Dạ, chào bạn!")

    frames = await collect(orchestrator.stream_answer("Xin chào", "u1", "c1"))

    assert frames[-1] == {"done": True}
    assert conversation_store.turns == [("u1", "c1", "Xin chào", "Dạ, chào bạn!")]
    assert "chatbot_memories" not in vector_store.inserted


@pytest.mark.asyncio
async def test_memory_search_failure_aborts_before_tokens(embedding_client, make_vector_store, conversation_store):
    from libs.vectors.milvus import VectorStoreError

    vector_store = make_vector_store(documents=[hit(TUITION_CHUNK)])
    vector_store.fail_memories = True
    orchestrator = make_orchestrator(embedding_client, vector_store, conversation_store)

    frames = []
    with pytest.raises(VectorStoreError):
        async for frame in orchestrator.stream_answer(QUESTION, "u1", "c1"):
            frames.append(frame)

    assert frames == []
    assert orchestrator._llm.prompts == []
    assert conversation_store.turns == []


@pytest.mark.asyncio
async def test_document_search_failure_aborts_before_tokens(embedding_client, vector_store, conversation_store):
    from libs.vectors.milvus import VectorStoreError

    vector_store.fail_documents = True
    orchestrator = make_orchestrator(embedding_client, vector_store, conversation_store)

    with pytest.raises(VectorStoreError):
        await collect(orchestrator.stream_answer(QUESTION, "u1", "c1"))
    assert conversation_store.turns == []


@pytest.mark.asyncio
async def test_embedding_failure_aborts_before_tokens(make_embedding_client, vector_store, conversation_store):
    from libs.vectors.embeddings import EmbeddingError

    orchestrator = make_orchestrator(make_embedding_client(fail=True), vector_store, conversation_store)

    with pytest.raises(EmbeddingError):
        await collect(orchestrator.stream_answer(QUESTION, "u1", "c1"))
    assert conversation_store.turns == []


@pytest.mark.asyncio
async def test_mid_stream_error_stops_without_done(embedding_client, vector_store, conversation_store):
    llm = FakeListChatModel(responses=[ANSWER], error_on_chunk_number=3)
    orchestrator = make_orchestrator(embedding_client, vector_store, conversation_store, llm=llm)

    frames = []
    with pytest.raises(Exception):
        async for frame in orchestrator.stream_answer(QUESTION, "u1", "c1"):
            frames.append(frame)

    assert frames == [{"token": c} for c in ANSWER[:3]]
    assert conversation_store.turns == []
    assert "chatbot_memories" not in vector_store.inserted


@pytest.mark.asyncio
async def test_persistence_failure_is_tolerated(embedding_client, vector_store, failing_conversation_store):
    orchestrator = make_orchestrator(embedding_client, vector_store, failing_conversation_store)

    frames = await collect(orchestrator.stream_answer(QUESTION, "u1", "c1"))

    assert frames[-1] == {"done": True}
    assert "".join(f.get("token", "") for f in frames) == ANSWER
    # Memory distillation still runs after a transcript failure
    assert len(vector_store.inserted["chatbot_memories"]) == 1


@pytest.mark.asyncio
async def test_memories_are_isolated_per_conversation(embedding_client, make_vector_store, conversation_store):
    vector_store = make_vector_store(
        documents=[hit(TUITION_CHUNK)],
        memories=[
            {"user_id": "u1", "conversation_id": "c1", "content": "Người dùng học ngành CNTT."},
            {"user_id": "u1", "conversation_id": "c2", "content": "Người dùng hỏi về ký túc xá."},
            {"user_id": "u2", "conversation_id": "c1", "content": "Người dùng khác hỏi học bổng."},
        ],
    )
    orchestrator = make_orchestrator(embedding_client, vector_store, conversation_store)

    await collect(orchestrator.stream_answer(QUESTION, "u1", "c1"))

    human = orchestrator._llm.prompts[0][-1].content
    assert "Người dùng học ngành CNTT." in human
    assert "ký túc xá" not in human
    assert "học bổng" not in human
    assert human.index("Người dùng học ngành CNTT.") < human.index(TUITION_CHUNK)


@pytest.mark.asyncio
async def test_answer_returns_full_text(embedding_client, vector_store, conversation_store):
    orchestrator = make_orchestrator(embedding_client, vector_store, conversation_store)

    assert await orchestrator.answer(QUESTION, "u1", "c1") == ANSWER


@pytest.mark.asyncio
async def test_search_documents(embedding_client, make_vector_store, conversation_store):
    vector_store = make_vector_store(documents=[hit(TUITION_CHUNK, 0.91), hit("Điểm chuẩn CNTT là 26", 0.7)])
    orchestrator = make_orchestrator(embedding_client, vector_store, conversation_store)

    hits = await orchestrator.search_documents(QUESTION)

    assert [h.content for h in hits] == [TUITION_CHUNK, "Điểm chuẩn CNTT là 26"]


@pytest.mark.asyncio
async def test_disconnect_mid_generation_persists_nothing(embedding_client, vector_store, conversation_store):
    client = MagicMock()
    tracker = RunTracker(client=client, project_name="test")
    orchestrator = make_orchestrator(embedding_client, vector_store, conversation_store, tracker=tracker)

    stream = orchestrator.stream_answer(QUESTION, "u1", "c1")
    first = await stream.__anext__()
    assert "token" in first
    await stream.aclose()
    await orchestrator.drain()

    assert conversation_store.turns == []
    root_id = next(
        call.kwargs["id"] for call in client.create_run.call_args_list if call.kwargs["name"] == ROOT_RUN_NAME
    )
    root_updates = [call for call in client.update_run.call_args_list if call.args[0] == root_id]
    assert len(root_updates) == 1
    assert root_updates[0].kwargs["error"] == "client disconnected"

    # Every run opened for the turn is closed, including the interrupted model call
    created = {call.kwargs["id"]: call.kwargs["name"] for call in client.create_run.call_args_list}
    updated = {call.args[0]: call.kwargs for call in client.update_run.call_args_list}
    assert set(created) == set(updated)
    model_run = next(run_id for run_id, name in created.items() if name == "model_response")
    assert updated[model_run]["error"] == "cancelled"


@pytest.mark.asyncio
async def test_turn_records_run_tree(embedding_client, make_vector_store, conversation_store):
    client = MagicMock()
    tracker = RunTracker(client=client, project_name="test")
    vector_store = make_vector_store(documents=[hit(TUITION_CHUNK)])
    orchestrator = make_orchestrator(embedding_client, vector_store, conversation_store, tracker=tracker)

    await collect(orchestrator.stream_answer(QUESTION, "u1", "c1", correlation_id="req_1"))

    created = {call.kwargs["name"]: call.kwargs for call in client.create_run.call_args_list}
    assert set(created) == {
        ROOT_RUN_NAME,
        "document_search",
        "memory_search",
        "model_response",
        "save_conversation",
    }
    root = created[ROOT_RUN_NAME]
    assert "user_u1" in root["tags"]
    assert "conversation_c1" in root["tags"]
    assert root["extra"]["metadata"]["correlation_id"] == "req_1"
    for name in ("document_search", "memory_search", "model_response", "save_conversation"):
        assert created[name]["parent_run_id"] == root["id"]

    root_updates = [call for call in client.update_run.call_args_list if call.args[0] == root["id"]]
    assert len(root_updates) == 1
    assert root_updates[0].kwargs["error"] is None
    assert root_updates[0].kwargs["outputs"]["answer"] == ANSWER
    assert root_updates[0].kwargs["outputs"]["transcript_saved"] is True


@pytest.mark.asyncio
async def test_tracker_failures_do_not_affect_turn(embedding_client, vector_store, conversation_store):
    client = MagicMock()
    client.create_run.side_effect = RuntimeError("langsmith down")
    client.update_run.side_effect = RuntimeError("langsmith down")
    tracker = RunTracker(client=client, project_name="test")
    orchestrator = make_orchestrator(embedding_client, vector_store, conversation_store, tracker=tracker)

    frames = await collect(orchestrator.stream_answer(QUESTION, "u1", "c1"))

    assert frames[-1] == {"done": True}
    assert conversation_store.turns == [("u1", "c1", QUESTION, ANSWER)]


@pytest.mark.asyncio
async def test_run_marked_errored_on_failure(embedding_client, vector_store, conversation_store):
    client = MagicMock()
    tracker = RunTracker(client=client, project_name="test")
    vector_store.fail_documents = True
    orchestrator = make_orchestrator(embedding_client, vector_store, conversation_store, tracker=tracker)

    with pytest.raises(Exception):
        await collect(orchestrator.stream_answer(QUESTION, "u1", "c1"))

    root_id = next(
        call.kwargs["id"] for call in client.create_run.call_args_list if call.kwargs["name"] == ROOT_RUN_NAME
    )
    root_updates = [call for call in client.update_run.call_args_list if call.args[0] == root_id]
    assert len(root_updates) == 1
    assert "document search failed" in root_updates[0].kwargs["error"]
