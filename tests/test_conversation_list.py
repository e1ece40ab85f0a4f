import pytest

from realtime_chat.errors import FetchError
from realtime_chat.repositories.conversation_repository import ConversationRepository
from realtime_chat.repositories.message_repository import MessageRepository
from realtime_chat.repositories.profile_repository import ProfileRepository
from realtime_chat.repositories.read_status_repository import ReadStatusRepository
from realtime_chat.schemas.events import RowChangeEvent
from realtime_chat.services.conversation_list import ConversationListAggregator
from realtime_chat.services.read_receipts import ReadReceiptTracker
from tests.conftest import ALICE, BOB
from tests.fakes import Clock, MemoryBackend


class Inbox:

    def __init__(self) -> None:
        self.backend = MemoryBackend()
        self.backend.seed("profiles", {"id": ALICE, "full_name": "Alice Doe"})
        self.backend.seed("profiles", {"id": BOB, "full_name": "Bob Roe"})
        clock = Clock()
        self.conversations = ConversationRepository(self.backend, clock)
        self.messages = MessageRepository(self.backend, clock)
        self.tracker = ReadReceiptTracker(self.messages, ReadStatusRepository(self.backend, clock), ALICE)
        self.aggregator = ConversationListAggregator(
            self.conversations, self.messages, ProfileRepository(self.backend), self.tracker, ALICE
        )

    async def post(self, conversation_id, sender, text):
        row = await self.messages.save_message(conversation_id, sender, text)
        await self.conversations.update_on_new_message(conversation_id, row)
        return row


@pytest.fixture
def inbox():
    return Inbox()


@pytest.mark.asyncio
async def test_recompute_builds_summaries_newest_first(inbox):
    with_bob = (await inbox.conversations.get_or_create_one_to_one(ALICE, BOB))["id"]
    with_carol = (await inbox.conversations.get_or_create_one_to_one(ALICE, "carol"))["id"]
    await inbox.post(with_carol, "carol", "hey")
    await inbox.post(with_bob, BOB, "first")
    last = await inbox.post(with_bob, BOB, "second")

    summaries = await inbox.aggregator.recompute()

    assert [s.conversation.id for s in summaries] == [with_bob, with_carol]
    bob_summary, carol_summary = summaries
    assert bob_summary.other_participant.display_name == "Bob Roe"
    assert bob_summary.last_message.id == last["id"]
    assert bob_summary.unread_count == 2
    assert carol_summary.other_participant.placeholder
    assert carol_summary.other_participant.display_name == "Unknown User"
    assert inbox.aggregator.total_unread == 3


@pytest.mark.asyncio
async def test_new_message_moves_conversation_to_top(inbox):
    with_bob = (await inbox.conversations.get_or_create_one_to_one(ALICE, BOB))["id"]
    with_carol = (await inbox.conversations.get_or_create_one_to_one(ALICE, "carol"))["id"]
    await inbox.post(with_bob, BOB, "old news")
    await inbox.aggregator.recompute()
    assert inbox.aggregator.summaries[0].conversation.id == with_bob

    row = await inbox.messages.save_message(with_carol, "carol", "fresh")
    changed = await inbox.aggregator.apply(RowChangeEvent(table="messages", operation="insert", row=row))

    assert changed
    top = inbox.aggregator.summaries[0]
    assert top.conversation.id == with_carol
    assert top.last_message.content == "fresh"
    assert top.unread_count == 1
    assert inbox.aggregator.total_unread == 2


@pytest.mark.asyncio
async def test_read_status_lowers_count(inbox):
    with_bob = (await inbox.conversations.get_or_create_one_to_one(ALICE, BOB))["id"]
    row = await inbox.post(with_bob, BOB, "hi")
    await inbox.aggregator.recompute()

    event = RowChangeEvent(table="message_read_status", operation="insert", row={"message_id": row["id"], "user_id": ALICE})
    assert await inbox.aggregator.apply(event)
    assert inbox.aggregator.get(with_bob).unread_count == 0


@pytest.mark.asyncio
async def test_profile_failure_degrades_to_placeholders(inbox):
    await inbox.conversations.get_or_create_one_to_one(ALICE, BOB)
    inbox.backend.fail_reads.add("profiles")

    summaries = await inbox.aggregator.recompute()

    assert len(summaries) == 1
    assert summaries[0].other_participant == summaries[0].other_participant.unknown(BOB)


@pytest.mark.asyncio
async def test_list_failure_is_raised_and_keeps_previous_list(inbox):
    await inbox.conversations.get_or_create_one_to_one(ALICE, BOB)
    await inbox.aggregator.recompute()
    inbox.backend.fail_reads.add("conversation_participants")

    with pytest.raises(FetchError):
        await inbox.aggregator.recompute()
    assert len(inbox.aggregator.summaries) == 1


@pytest.mark.asyncio
async def test_conversation_update_keeps_resolved_participant(inbox):
    with_bob = (await inbox.conversations.get_or_create_one_to_one(ALICE, BOB))["id"]
    await inbox.aggregator.recompute()
    row = await inbox.post(with_bob, ALICE, "mine")
    conversation = await inbox.conversations.get_conversation(with_bob)

    assert await inbox.aggregator.apply(RowChangeEvent(table="conversations", operation="update", row=conversation))

    summary = inbox.aggregator.get(with_bob)
    assert summary.other_participant.display_name == "Bob Roe"
    assert summary.last_message.id == row["id"]
    assert summary.unread_count == 0


@pytest.mark.asyncio
async def test_joining_a_conversation_triggers_recompute(inbox):
    await inbox.aggregator.recompute()
    assert inbox.aggregator.summaries == []
    created = await inbox.conversations.get_or_create_one_to_one(BOB, ALICE)

    joined = RowChangeEvent(
        table="conversation_participants",
        operation="insert",
        row={"conversation_id": created["id"], "user_id": ALICE},
    )
    assert await inbox.aggregator.apply(joined)
    assert [s.conversation.id for s in inbox.aggregator.summaries] == [created["id"]]
    other = RowChangeEvent(
        table="conversation_participants",
        operation="insert",
        row={"conversation_id": created["id"], "user_id": BOB},
    )
    assert not await inbox.aggregator.apply(other)
