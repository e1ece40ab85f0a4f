import pytest

from realtime_chat.errors import FetchError
from realtime_chat.schemas.events import ConnectionStatus, broadcast_channel, changes_channel
from realtime_chat.services.chat_service import ChatService
from realtime_chat.services.sessions import _Session
from tests.conftest import ALICE, BOB
from tests.fakes import FlakyBus, MemoryBackend, drain, eventually


def _kinds(events):
    return [event.kind for event in events]


@pytest.mark.asyncio
async def test_message_flows_to_peer_inbox_and_is_read_on_open(alice, bob):
    conversation = await alice.get_or_create_conversation(BOB)

    async with alice.open_conversation(conversation.id) as chat, bob.open_inbox() as inbox:
        assert inbox.total_unread == 0
        assert chat.peer.display_name == "Bob Roe"

        sent = await chat.send("hi")
        await eventually(lambda: [m.id for m in chat.messages] == [sent.id])
        await eventually(lambda: inbox.total_unread == 1)
        assert inbox.conversations[0].last_message.content == "hi"

        async with bob.open_conversation(conversation.id) as bob_chat:
            assert [m.content for m in bob_chat.messages] == ["hi"]
            await eventually(lambda: inbox.total_unread == 0)
            assert bob_chat.unread_count == 0


@pytest.mark.asyncio
async def test_incoming_message_is_marked_read_while_open(alice, bob, backend):
    conversation = await alice.get_or_create_conversation(BOB)

    async with bob.open_conversation(conversation.id) as bob_chat:
        async with alice.open_conversation(conversation.id) as chat:
            sent = await chat.send("are you there")
            await eventually(lambda: sent.id in bob_chat.store)
            await eventually(lambda: any(row["message_id"] == sent.id for row in backend.rows("message_read_status")))
        assert bob_chat.unread_count == 0
        assert "message" in _kinds(await drain(bob_chat.events))


@pytest.mark.asyncio
async def test_typing_reaches_peer_and_expires(alice, bob):
    conversation = await alice.get_or_create_conversation(BOB)

    async with alice.open_conversation(conversation.id) as chat, bob.open_conversation(conversation.id) as bob_chat:
        await drain(bob_chat.events)
        assert await chat.notify_typing()
        await eventually(lambda: bob_chat.presence_label() == "typing...")
        await eventually(lambda: bob_chat.presence_label() == "Offline", timeout=1.0)

        typing = [event.data for event in await drain(bob_chat.events) if event.kind == "typing"]
        assert typing == [True, False]


@pytest.mark.asyncio
async def test_call_handshake_between_sessions(alice, bob):
    conversation = await alice.get_or_create_conversation(BOB)

    async with alice.open_conversation(conversation.id) as chat, bob.open_conversation(conversation.id) as bob_chat:
        call = await chat.start_call("video")
        await eventually(lambda: bob_chat.calls.get(call.id) is not None)
        incoming = [event.data for event in await drain(bob_chat.events) if event.kind == "incoming_call"]
        assert [c.id for c in incoming] == [call.id]

        await bob_chat.accept_call(call.id)
        await eventually(lambda: chat.calls.get(call.id).status == "accepted")
        ended = await chat.end_call(call.id, 42)
        assert ended.status == "ended"
        await eventually(lambda: bob_chat.calls.get(call.id).status == "ended")

    history = await alice.call_history(conversation.id)
    assert [(c.id, c.duration_seconds) for c in history] == [(call.id, 42)]


@pytest.mark.asyncio
async def test_optimistic_send_is_reconciled(alice):
    conversation = await alice.get_or_create_conversation(BOB)

    async with alice.open_conversation(conversation.id) as chat:
        sent = await chat.send("fast", optimistic=True)
        await eventually(lambda: [m.id for m in chat.messages] == [sent.id])
        assert not chat.messages[0].pending


@pytest.mark.asyncio
async def test_load_failure_is_reported_not_raised(alice, backend):
    conversation = await alice.get_or_create_conversation(BOB)
    backend.fail_reads.add("messages")

    async with alice.open_conversation(conversation.id) as chat:
        assert isinstance(chat.error, FetchError)
        assert chat.messages == []


@pytest.mark.asyncio
async def test_close_releases_every_subscription(alice, bus):
    conversation = await alice.get_or_create_conversation(BOB)
    chat = alice.open_conversation(conversation.id)
    await chat.open()
    await chat.close()
    await chat.close()

    for table in ("messages", "message_read_status", "calls"):
        assert bus.subscriber_count(changes_channel(table)) == 0
    assert chat.subscriptions.handles == []
    assert chat.status == ConnectionStatus.CLOSED
    assert _kinds(await drain(chat.events))[-1] == "closed"


@pytest.mark.asyncio
async def test_reconnect_marks_stale_then_catches_up(settings, clock):
    bus = FlakyBus()
    backend = MemoryBackend(bus)
    alice = ChatService(backend, bus, ALICE, settings=settings, clock=clock)
    bob = ChatService(backend, bus, BOB, settings=settings, clock=clock)
    conversation = await alice.get_or_create_conversation(BOB)

    async with alice.open_conversation(conversation.id) as chat:
        bus.fail_subscribes = 10_000
        bus.drop_all()
        await eventually(lambda: chat.stale)

        missed = await bob.message_repo.save_message(conversation.id, BOB, "while you were away")
        assert missed["id"] not in chat.store

        bus.fail_subscribes = 0
        await eventually(lambda: not chat.stale, timeout=2.0)
        assert missed["id"] in chat.store
        kinds = _kinds(await drain(chat.events))
        assert "fresh" in kinds
        assert kinds.index("fresh") > kinds.index("status")


@pytest.mark.asyncio
async def test_service_rules(alice, bob):
    with pytest.raises(ValueError):
        await alice.get_or_create_conversation(ALICE)

    first = await alice.get_or_create_conversation(BOB)
    again = await bob.get_or_create_conversation(ALICE)
    assert first.id == again.id
    assert await alice.is_participant(first.id)

    summaries, total = await bob.list_conversations()
    assert [s.conversation.id for s in summaries] == [first.id]
    assert total == 0


@pytest.mark.asyncio
async def test_heartbeat_marks_user_present(alice, bus, backend):
    await alice.heartbeat(ttl_seconds=60)

    assert await bus.is_present(ALICE)
    profile = next(row for row in backend.rows("profiles") if row["id"] == ALICE)
    assert profile["last_seen"] is not None


def test_base_session_cannot_be_opened_directly(alice):
    with pytest.raises(TypeError):
        _Session(alice)


@pytest.mark.asyncio
async def test_repeated_open_and_close_leaves_no_subscriptions(alice, bus):
    conversation = await alice.get_or_create_conversation(BOB)
    for _ in range(3):
        chat = alice.open_conversation(conversation.id)
        await chat.open()
        await chat.close()

    for table in ("messages", "message_read_status", "calls"):
        assert bus.subscriber_count(changes_channel(table)) == 0
    assert bus.subscriber_count(broadcast_channel(f"chat:{conversation.id}")) == 0
