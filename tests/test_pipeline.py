"""End-to-end tests: provider stream → pipeline → framed events → stores."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from conftest import ChunkedStream, FakeProvider, content_deltas, sse_body, sse_line
from nexus_stream.config import StreamSpec
from nexus_stream.core import ChatPipeline, RoadmapPipeline, SessionFinalizer, StreamSession
from nexus_stream.events import EventBus, EventName
from nexus_stream.stores import InMemoryAggregateStore, InMemoryRecordStore, InMemoryTurnStore
from nexus_stream.types import NotificationType, Turn


@pytest.fixture
def turns():
    return InMemoryTurnStore()


@pytest.fixture
def records():
    return InMemoryRecordStore()


@pytest.fixture
def aggregates():
    return InMemoryAggregateStore()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def published(bus):
    received = []
    bus.subscribe(received.append)
    return received


@pytest.fixture
def finalizer(turns, aggregates, bus):
    return SessionFinalizer(turns, aggregates, bus)


async def drain(events) -> list:
    return [e async for e in events]


def names(events) -> list[str]:
    return [e.name.value for e in events]


def text_of(events, name: EventName) -> str:
    return "".join(e.data["content"] for e in events if e.name is name)


def streaming(stream: httpx.AsyncByteStream) -> httpx.Response:
    return httpx.Response(200, stream=stream, headers={"content-type": "text/event-stream"})


class StallingTurnStore(InMemoryTurnStore):
    """Never returns from writing an assistant turn."""

    def __init__(self):
        super().__init__()
        self.stalled = asyncio.Event()

    async def save(self, turn):
        if turn.role == "assistant":
            self.stalled.set()
            await asyncio.Event().wait()
        return super().save(turn)


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------

class TestChatPipeline:
    async def test_thinking_and_content(self, make_client, finalizer, turns, aggregates):
        fake = FakeProvider(sse_body(
            {"reasoning_content": "The user greets. "},
            {"content": "<thi"},
            {"content": "nk>be polite</think>"},
            {"content": "Hello!"},
        ))
        session = StreamSession.chat("conv-1", model="test-model")
        async with make_client(fake) as client:
            pipeline = ChatPipeline(client, finalizer, turns, system_prompt="Be helpful.")
            events = await drain(pipeline.run(session, "Hi"))

        assert events[0].name is EventName.SESSION
        assert events[0].data == {
            "sessionId": session.session_id, "conversationId": "conv-1", "isNew": False,
        }
        assert events[-1].name is EventName.DONE
        assert text_of(events, EventName.THINKING) == "The user greets. be polite"
        assert text_of(events, EventName.CONTENT) == "Hello!"

        history = turns.find_history("conv-1")
        assert [(t.role, t.content) for t in history] == [("user", "Hi"), ("assistant", "Hello!")]
        assert history[1].reasoning == "The user greets. be polite"
        assert aggregates.aggregates["conv-1"]["total"] == 2

        body = fake.body()
        assert body["messages"][0] == {"role": "system", "content": "Be helpful."}
        assert body["messages"][-1] == {"role": "user", "content": "Hi"}
        assert body["model"] == "test-model"

    async def test_one_event_per_fragment(self, make_client, finalizer, turns):
        fake = FakeProvider(sse_body(*content_deltas("<think>", "x", "</think>", "y")))
        async with make_client(fake) as client:
            events = await drain(ChatPipeline(client, finalizer, turns).run(
                StreamSession.chat(model="m"), "q",
            ))
        # session + one per fragment + done
        assert names(events) == ["session", "content", "thinking", "content", "content", "done"]

    async def test_new_conversation(self, make_client, finalizer, turns):
        fake = FakeProvider(sse_body(*content_deltas("ok")))
        session = StreamSession.chat(model="m")
        async with make_client(fake) as client:
            events = await drain(ChatPipeline(client, finalizer, turns).run(session, "q"))
        assert events[0].data["isNew"] is True
        assert len(turns.find_history(session.conversation_id)) == 2

    async def test_history_sent_without_reasoning(self, make_client, finalizer, turns):
        turns.save(Turn("conv-1", "user", "first", created_at=1.0))
        turns.save(Turn("conv-1", "assistant", "<think>hidden</think>visible", created_at=2.0))
        turns.save(Turn("conv-1", "assistant", "<think>only thoughts</think>", created_at=3.0))
        fake = FakeProvider(sse_body(*content_deltas("ok")))
        async with make_client(fake) as client:
            await drain(ChatPipeline(client, finalizer, turns).run(
                StreamSession.chat("conv-1", model="m"), "second",
            ))
        assert fake.body()["messages"] == [
            {"role": "user", "content": "first"},
            {"role": "assistant", "content": "visible"},
            {"role": "user", "content": "second"},
        ]

    async def test_thinking_disabled(self, make_client, finalizer, turns):
        fake = FakeProvider(sse_body({"reasoning_content": "secret"}, {"content": "answer"}))
        session = StreamSession.chat("c", model="m", thinking_enabled=False)
        async with make_client(fake) as client:
            events = await drain(ChatPipeline(client, finalizer, turns).run(session, "q"))
        assert text_of(events, EventName.THINKING) == ""
        assert text_of(events, EventName.CONTENT) == "answer"

    async def test_retry_before_first_fragment_is_invisible(self, make_client, finalizer, turns):
        fake = FakeProvider(httpx.ConnectError("connection reset"), sse_body(*content_deltas("ok")))
        async with make_client(fake) as client:
            events = await drain(ChatPipeline(client, finalizer, turns).run(
                StreamSession.chat("c", model="m"), "q",
            ))
        assert fake.calls == 2
        assert "error" not in names(events)
        assert events[-1].name is EventName.DONE

    async def test_mid_stream_failure(self, make_client, finalizer, turns):
        stream = ChunkedStream(
            [sse_line({"content": c}) for c in ("a", "b", "c")],
            error=httpx.ReadError("connection reset"),
        )
        fake = FakeProvider(streaming(stream), sse_body(*content_deltas("never")))
        async with make_client(fake) as client:
            events = await drain(ChatPipeline(client, finalizer, turns).run(
                StreamSession.chat("c", model="m"), "q",
            ))

        assert names(events) == ["session", "content", "content", "content", "error"]
        assert events[-1].data["kind"] == "transport"
        assert fake.calls == 1
        assistant = [t for t in turns.find_history("c") if t.role == "assistant"]
        assert len(assistant) == 1
        assert assistant[0].content == "abc"
        assert assistant[0].truncated

    async def test_partial_tag_flushed_on_failure(self, make_client, finalizer, turns):
        stream = ChunkedStream(
            [sse_line({"content": "x <thi"})], error=httpx.ReadError("reset"),
        )
        fake = FakeProvider(streaming(stream))
        async with make_client(fake) as client:
            events = await drain(ChatPipeline(client, finalizer, turns).run(
                StreamSession.chat("c", model="m"), "q",
            ))
        assert text_of(events, EventName.CONTENT) == "x <thi"
        assert events[-1].name is EventName.ERROR

    async def test_auth_failure(self, make_client, finalizer, turns):
        fake = FakeProvider(httpx.Response(403, text="forbidden"))
        async with make_client(fake) as client:
            events = await drain(ChatPipeline(client, finalizer, turns).run(
                StreamSession.chat("c", model="m"), "q",
            ))
        assert names(events) == ["session", "error"]
        assert events[-1].data["kind"] == "auth"
        assert fake.calls == 1
        assert [t.role for t in turns.find_history("c")] == ["user"]

    async def test_timeout_keeps_partial(self, make_client, finalizer, turns):
        stream = ChunkedStream([sse_line({"content": "partial"})], stall=5)
        fake = FakeProvider(streaming(stream))
        client = make_client(fake, StreamSpec(timeout=0.1, backoff_base=0))
        events = await drain(ChatPipeline(client, finalizer, turns).run(
            StreamSession.chat("c", model="m"), "q",
        ))
        await client.close()
        assert events[-1].data["kind"] == "timeout"
        assistant = turns.find_history("c")[-1]
        assert (assistant.content, assistant.truncated) == ("partial", True)

    async def test_history_store_failure(self, make_client, finalizer):
        class Unavailable(InMemoryTurnStore):
            def find_history(self, conversation_id):
                raise ConnectionError("db offline")

        fake = FakeProvider(sse_body(*content_deltas("never")))
        async with make_client(fake) as client:
            events = await drain(ChatPipeline(client, finalizer, Unavailable()).run(
                StreamSession.chat("c", model="m"), "q",
            ))
        assert names(events) == ["session", "error"]
        assert events[-1].data["kind"] == "persistence"
        assert fake.calls == 0

    async def test_malformed_delta_does_not_end_session(self, make_client, finalizer, turns):
        body = (
            sse_line({"content": "a"})
            + b'data: {"choices":[{"delta":"oops"}]}\n\n'
            + sse_line({"content": "b"})
            + b"data: [DONE]\n\n"
        )
        fake = FakeProvider(body)
        async with make_client(fake) as client:
            events = await drain(ChatPipeline(client, finalizer, turns).run(
                StreamSession.chat("c", model="m"), "q",
            ))
        assert names(events)[-1] == "done"
        assert text_of(events, EventName.CONTENT) == "ab"
        assert turns.find_history("c")[-1].content == "ab"


class TestChatCancellation:
    async def test_aclose_finalizes_as_cancelled(self, make_client, finalizer, turns, published):
        stream = ChunkedStream(
            [sse_line({"content": c}) for c in ("a", "b", "c")] + [b"data: [DONE]\n\n"],
        )
        fake = FakeProvider(streaming(stream))
        session = StreamSession.chat("c", model="m")
        async with make_client(fake) as client:
            gen = ChatPipeline(client, finalizer, turns).run(session, "q")
            assert (await gen.__anext__()).name is EventName.SESSION
            assert (await gen.__anext__()).data["content"] == "a"
            await gen.aclose()

        assert stream.closed
        assert finalizer.is_finalized(session.session_id)
        assert [n.type for n in published] == [
            NotificationType.SESSION_STARTED,
            NotificationType.SESSION_CANCELLED,
        ]
        assert [t.role for t in turns.find_history("c")] == ["user"]

    async def test_task_cancellation(self, make_client, finalizer, turns, published):
        stream = ChunkedStream([sse_line({"content": "first"})], stall=30)
        fake = FakeProvider(streaming(stream))
        session = StreamSession.chat("c", model="m")
        got_content = asyncio.Event()

        async def consume(pipeline):
            async for event in pipeline.run(session, "q"):
                if event.name is EventName.CONTENT and event.data["content"]:
                    got_content.set()

        async with make_client(fake) as client:
            task = asyncio.create_task(consume(ChatPipeline(client, finalizer, turns)))
            await asyncio.wait_for(got_content.wait(), timeout=5)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert stream.closed
        assert finalizer.is_finalized(session.session_id)
        assert published[-1].type is NotificationType.SESSION_CANCELLED

    async def test_aclose_right_after_session_event(self, make_client, finalizer, turns, published):
        fake = FakeProvider(sse_body(*content_deltas("never")))
        session = StreamSession.chat("c", model="m")
        async with make_client(fake) as client:
            gen = ChatPipeline(client, finalizer, turns).run(session, "q")
            assert (await gen.__anext__()).name is EventName.SESSION
            await gen.aclose()

        assert finalizer.is_finalized(session.session_id)
        assert [n.type for n in published] == [NotificationType.SESSION_CANCELLED]
        assert fake.calls == 0
        assert turns.find_history("c") == []

    async def test_cancelled_while_finalizing(self, make_client, aggregates, bus, published):
        store = StallingTurnStore()
        finalizer = SessionFinalizer(store, aggregates, bus)
        fake = FakeProvider(sse_body(*content_deltas("almost done")))
        session = StreamSession.chat("c", model="m")

        async with make_client(fake) as client:
            pipeline = ChatPipeline(client, finalizer, store)
            task = asyncio.create_task(drain(pipeline.run(session, "q")))
            await asyncio.wait_for(store.stalled.wait(), timeout=5)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert finalizer.is_finalized(session.session_id)
        assert published[-1].type is NotificationType.SESSION_CANCELLED
        assert [t.role for t in store.find_history("c")] == ["user"]


# ---------------------------------------------------------------------------
# Structured generation
# ---------------------------------------------------------------------------

ROADMAP_PARTS = [
    "THINKING:\nbecause X",
    ' is true\nTOPIC:\n{"title":"A"}\nTOPIC:\n{"title":"B"}',
]


class TestRoadmapPipeline:
    @pytest.fixture
    def structured_finalizer(self, aggregates, bus):
        return SessionFinalizer(aggregate_store=aggregates, event_bus=bus)

    async def test_narrative_and_topics(self, make_client, structured_finalizer, records, aggregates):
        fake = FakeProvider(sse_body(*content_deltas(*ROADMAP_PARTS)))
        session = StreamSession.structured(owner_id="user-1", model="m", attributes={"goal": "G"})
        async with make_client(fake) as client:
            pipeline = RoadmapPipeline(client, structured_finalizer, records, aggregates)
            events = await drain(pipeline.run(session, "GOAL: G"))

        assert names(events) == ["session", "thinking", "thinking", "topic", "topic", "done"]
        assert text_of(events, EventName.THINKING) == "because X is true"

        topics = [e.data for e in events if e.name is EventName.TOPIC]
        roadmap_id = session.aggregate_id
        assert topics == [
            {"title": "A", "id": f"{roadmap_id}-1", "sequenceOrder": 1},
            {"title": "B", "id": f"{roadmap_id}-2", "sequenceOrder": 2},
        ]
        assert events[-1].data == {"roadmapId": roadmap_id, "totalTopics": 2}

        assert list(aggregates.aggregates) == [roadmap_id]
        agg = aggregates.aggregates[roadmap_id]
        assert (agg["ownerId"], agg["goal"], agg["status"], agg["total"]) == ("user-1", "G", "ready", 2)
        assert [r["payload"]["title"] for r in records.records_for(roadmap_id)] == ["A", "B"]

    async def test_malformed_topic_does_not_abort(self, make_client, structured_finalizer, records, aggregates):
        fake = FakeProvider(sse_body(*content_deltas(
            'THINKING: plan TOPIC: {"title": "A"} ',
            "TOPIC: {oops ",
            'TOPIC: {"title": "C"}',
        )))
        session = StreamSession.structured(model="m")
        async with make_client(fake) as client:
            events = await drain(RoadmapPipeline(
                client, structured_finalizer, records, aggregates,
            ).run(session, "p"))

        topics = [e.data for e in events if e.name is EventName.TOPIC]
        assert [(t["title"], t["sequenceOrder"]) for t in topics] == [("A", 1), ("C", 3)]
        assert events[-1].data["totalTopics"] == 2

    async def test_draft_created_once(self, make_client, structured_finalizer, records):
        created = []

        class TrackingAggregates(InMemoryAggregateStore):
            def create_draft(self, owner_id, attributes):
                created.append(owner_id)
                return super().create_draft(owner_id, attributes)

        body = "THINKING: x " + "".join(f'TOPIC: {{"title": "T{i}"}} ' for i in range(5))
        fake = FakeProvider(sse_body(*content_deltas(*[body[i:i + 3] for i in range(0, len(body), 3)])))
        async with make_client(fake) as client:
            events = await drain(RoadmapPipeline(
                client, structured_finalizer, records, TrackingAggregates(),
            ).run(StreamSession.structured(owner_id="u", model="m"), "p"))

        assert created == ["u"]
        assert events[-1].data["totalTopics"] == 5

    async def test_no_topics_creates_no_draft(self, make_client, structured_finalizer, records, aggregates):
        fake = FakeProvider(sse_body(*content_deltas("THINKING: I could not decide.")))
        async with make_client(fake) as client:
            events = await drain(RoadmapPipeline(
                client, structured_finalizer, records, aggregates,
            ).run(StreamSession.structured(model="m"), "p"))
        assert events[-1].data == {"roadmapId": None, "totalTopics": 0}
        assert aggregates.aggregates == {}

    async def test_record_store_failure(self, make_client, structured_finalizer, aggregates):
        class FullRecords(InMemoryRecordStore):
            def save(self, parent_id, record):
                raise OSError("no space left")

        fake = FakeProvider(sse_body(*content_deltas('THINKING: x TOPIC: {"title": "A"} TOPIC: {')))
        async with make_client(fake) as client:
            events = await drain(RoadmapPipeline(
                client, structured_finalizer, FullRecords(), aggregates,
            ).run(StreamSession.structured(model="m"), "p"))
        assert events[-1].name is EventName.ERROR
        assert events[-1].data["kind"] == "persistence"
        assert "topic" not in names(events)

    async def test_async_stores(self, make_client, bus):
        class AsyncRecords(InMemoryRecordStore):
            async def save(self, parent_id, record):
                await asyncio.sleep(0)
                return InMemoryRecordStore.save(self, parent_id, record)

        class AsyncAggregates(InMemoryAggregateStore):
            async def create_draft(self, owner_id, attributes):
                return InMemoryAggregateStore.create_draft(self, owner_id, attributes)

            async def finalize_counts(self, aggregate_id, total):
                InMemoryAggregateStore.finalize_counts(self, aggregate_id, total)

        aggregates = AsyncAggregates()
        finalizer = SessionFinalizer(aggregate_store=aggregates, event_bus=bus)
        fake = FakeProvider(sse_body(*content_deltas(*ROADMAP_PARTS)))
        session = StreamSession.structured(model="m")
        async with make_client(fake) as client:
            events = await drain(RoadmapPipeline(
                client, finalizer, AsyncRecords(), aggregates,
            ).run(session, "p"))
        assert events[-1].data == {"roadmapId": session.aggregate_id, "totalTopics": 2}
        assert aggregates.aggregates[session.aggregate_id]["total"] == 2

    async def test_wire_frames(self, make_client, structured_finalizer, records, aggregates):
        fake = FakeProvider(sse_body(*content_deltas('THINKING: "quoted"\nline TOPIC: {"title": "A\\nB"}')))
        async with make_client(fake) as client:
            events = await drain(RoadmapPipeline(
                client, structured_finalizer, records, aggregates,
            ).run(StreamSession.structured(model="m"), "p"))
        frames = [e.to_sse() for e in events]
        assert frames[1] == 'event: thinking\ndata: {"content":"\\"quoted\\"\\nline"}\n\n'
        for frame in frames:
            assert frame.count("\n") == 3
