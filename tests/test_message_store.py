import asyncio

import pytest

from social_sync.schemas.change_event import ChangeEvent
from social_sync.schemas.result import Ok
from tests.conftest import connection_reset, wait_until


@pytest.fixture
async def store(session):
    yield session.messages
    await session.subscriber.close()


async def start_conversation(session, user_a, user_b):
    result = await session.message_service.get_or_create_conversation(user_a, user_b)
    return result.value["_id"]


async def test_load_conversations_computes_total(store, session, message_repo):
    c1 = await start_conversation(session, "amy", "bob")
    c2 = await start_conversation(session, "amy", "carol")
    message_repo.add(c1, "bob")
    message_repo.add(c1, "bob")
    message_repo.add(c2, "carol")
    message_repo.add(c2, "amy")

    conversations = await store.load_conversations("amy")

    assert {c.id: c.unread_count for c in conversations} == {c1: 2, c2: 1}
    assert store.get_unread_count() == 3
    assert conversations[0].other_user_id in ("bob", "carol")


async def test_mark_read_converges_to_zero_despite_stale_counts(store, session, message_repo, clock):
    cid = await start_conversation(session, "amy", "bob")
    for _ in range(3):
        message_repo.add(cid, "bob")
    await store.load_conversations("amy")
    assert store.get_conversation_unread(cid) == 3

    # the read lands, but count queries keep reporting the old value
    message_repo.stale_unread[cid] = 3
    assert await store.mark_conversation_as_read(cid, "amy") is True

    assert store.get_conversation_unread(cid) == 0
    assert store.get_unread_count() == 0
    assert all(m.is_read for m in store.messages)
    assert not store.is_refresh_suppressed()

    await store.load_conversations("amy", refresh=True)
    assert store.get_conversation_unread(cid) == 0
    assert store.get_unread_count() == 0

    # once the aggregate catches up the overlay is no longer needed
    del message_repo.stale_unread[cid]
    clock.advance(6)
    await store.load_conversations("amy", refresh=True)
    assert store.get_conversation_unread(cid) == 0
    assert store.get_unread_count() == 0


async def test_total_matches_sum_of_displayed_counts(store, session, message_repo):
    c1 = await start_conversation(session, "amy", "bob")
    c2 = await start_conversation(session, "amy", "carol")
    message_repo.add(c1, "bob")
    message_repo.add(c1, "bob")
    message_repo.add(c2, "carol")
    await store.load_conversations("amy")

    await store.mark_conversation_as_read(c1, "amy")

    displayed = sum(store.get_conversation_unread(c.id) for c in store.conversations)
    assert store.get_unread_count() == displayed == 1
    assert await store.refresh_total_unread("amy") == 1


async def test_failed_mark_read_restores_count(store, session, message_repo):
    cid = await start_conversation(session, "amy", "bob")
    message_repo.add(cid, "bob")
    message_repo.add(cid, "bob")
    await store.load_conversations("amy")
    message_repo.fail("mark_read", connection_reset())

    assert await store.mark_conversation_as_read(cid, "amy") is False

    assert store.get_conversation_unread(cid) == 2
    assert store.get_unread_count() == 2
    assert store.error
    assert not store.is_refresh_suppressed()


async def test_failed_mark_read_restores_message_read_flags(store, session, message_repo):
    cid = await start_conversation(session, "amy", "bob")
    message_repo.add(cid, "bob")
    message_repo.add(cid, "bob")
    await store.load_conversations("amy")
    message_repo.fail("mark_read", connection_reset())

    assert await store.mark_conversation_as_read(cid, "amy") is False

    assert len(store.messages) == 2
    assert not any(m.is_read for m in store.messages)


async def test_cancelled_mark_read_restores_unread_state(store, session, message_repo):
    cid = await start_conversation(session, "amy", "bob")
    message_repo.add(cid, "bob")
    await store.load_conversations("amy")
    message_repo.block("mark_read")

    task = asyncio.create_task(store.mark_conversation_as_read(cid, "amy"))
    await wait_until(lambda: message_repo.calls["mark_read"] == 1)
    assert store.get_conversation_unread(cid) == 0
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert store.get_conversation_unread(cid) == 1
    assert store.get_unread_count() == 1
    assert not any(m.is_read for m in store.messages)
    assert not store.is_refresh_suppressed()


async def test_message_arriving_during_mark_read_is_counted_afterwards(store, session, message_repo):
    c1 = await start_conversation(session, "amy", "bob")
    c2 = await start_conversation(session, "amy", "carol")
    message_repo.add(c1, "bob")
    await store.load_conversations("amy")
    confirm = session.message_service.wait_for_conversation_read

    async def confirm_while_carol_writes(conversation_id, user_id, **options):
        await store.handle_message_insert(message_repo.add(c2, "carol", "late"), "amy")
        return await confirm(conversation_id, user_id, **options)

    session.message_service.wait_for_conversation_read = confirm_while_carol_writes
    assert await store.mark_conversation_as_read(c1, "amy") is True

    assert store.get_conversation_unread(c1) == 0
    assert store.get_conversation_unread(c2) == 1
    displayed = sum(store.get_conversation_unread(c.id) for c in store.conversations)
    assert store.get_unread_count() == displayed == 1


async def test_send_message_replaces_optimistic_row(store, session, message_repo):
    cid = await start_conversation(session, "amy", "bob")
    await store.open_conversation_with_user("amy", "bob")

    message = await store.send_message(cid, "amy", "hello")
    await session.message_service.drain()

    assert message is not None
    assert [m.id for m in store.messages] == [message.id]
    assert not message.pending
    assert not store.is_sending
    assert len(message_repo.messages) == 1


async def test_failed_send_leaves_no_trace(store, session, message_repo):
    cid = await start_conversation(session, "amy", "bob")
    message_repo.fail("insert", connection_reset())

    assert await store.send_message(cid, "amy", "hello") is None

    assert store.messages == []
    assert store.error
    assert store.is_sending is False


async def test_second_send_is_rejected_while_first_is_in_flight(store, session, message_repo):
    cid = await start_conversation(session, "amy", "bob")
    gate = message_repo.block("insert")

    first = asyncio.create_task(store.send_message(cid, "amy", "one"))
    await wait_until(lambda: message_repo.calls["insert"] == 1)
    assert store.is_sending
    assert store.messages[0].pending
    assert store.messages[0].id.startswith("local-")

    assert await store.send_message(cid, "amy", "two") is None

    gate.set()
    sent = await first
    await session.message_service.drain()
    assert sent.text == "one"
    assert len(message_repo.messages) == 1
    assert [m.text for m in store.messages] == ["one"]


async def test_cancelled_send_removes_optimistic_row(store, session, message_repo):
    cid = await start_conversation(session, "amy", "bob")
    message_repo.block("insert")

    task = asyncio.create_task(store.send_message(cid, "amy", "hello"))
    await wait_until(lambda: message_repo.calls["insert"] == 1)
    assert store.messages[0].pending
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert store.messages == []
    assert store.is_sending is False


async def test_blank_message_is_ignored(store, message_repo):
    assert await store.send_message("c1", "amy", "   ") is None
    assert message_repo.calls["insert"] == 0
    assert store.messages == []


async def test_send_dedupes_row_already_delivered_by_event(store, session, message_repo):
    cid = await start_conversation(session, "amy", "bob")
    await store.open_conversation_with_user("amy", "bob")

    async def deliver_then_return(conversation_id, sender_id, text):
        row = message_repo.add(conversation_id, sender_id, text)
        await store.handle_message_insert(row, "amy")
        return Ok(value=row)

    session.message_service.send_message = deliver_then_return
    message = await store.send_message(cid, "amy", "hi")

    assert [m.id for m in store.messages] == [message.id]


async def test_incoming_message_in_open_conversation_is_read(store, session, message_repo):
    cid = await start_conversation(session, "amy", "bob")
    await store.open_conversation_with_user("amy", "bob")

    row = message_repo.add(cid, "bob", "are you there?")
    await store.handle_message_insert(row, "amy")

    assert store.messages[-1].text == "are you there?"
    assert store.get_conversation_unread(cid) == 0
    assert all(m["is_read"] for m in message_repo.messages)


async def test_incoming_message_elsewhere_reloads_counts(store, session, message_repo):
    open_id = await start_conversation(session, "amy", "bob")
    other_id = await start_conversation(session, "amy", "carol")
    await store.load_conversations("amy")
    await store.open_conversation_with_user("amy", "bob")

    row = message_repo.add(other_id, "carol", "ping")
    await store.handle_message_insert(row, "amy")

    assert store.get_conversation_unread(other_id) == 1
    assert store.get_conversation_unread(open_id) == 0
    assert store.get_unread_count() == 1


async def test_own_message_elsewhere_does_not_reload(store, session, message_repo, conversation_repo):
    other_id = await start_conversation(session, "amy", "carol")
    await store.load_conversations("amy")
    before = conversation_repo.calls["list_for_user"]

    await store.handle_message_insert(message_repo.add(other_id, "amy"), "amy")

    assert conversation_repo.calls["list_for_user"] == before


async def test_reload_is_skipped_while_mark_read_is_in_flight(store, session, message_repo, conversation_repo):
    other_id = await start_conversation(session, "amy", "carol")
    await store.load_conversations("amy")
    store._refresh_gate.suppress("unread_refresh")
    before = conversation_repo.calls["list_for_user"]

    await store.handle_message_insert(message_repo.add(other_id, "carol"), "amy")

    assert conversation_repo.calls["list_for_user"] == before


async def test_new_message_clears_pending_read_overlay(store, session, message_repo):
    cid = await start_conversation(session, "amy", "bob")
    message_repo.add(cid, "bob")
    await store.load_conversations("amy")
    await store.mark_conversation_as_read(cid, "amy")
    store.close_conversation()

    await store.handle_message_insert(message_repo.add(cid, "bob", "again"), "amy")

    assert store.get_conversation_unread(cid) == 1
    assert store.get_unread_count() == 1


async def test_global_subscription_tracks_unread_over_bus(session, bus, message_repo):
    store = session.messages
    cid = await start_conversation(session, "amy", "carol")
    await session.login("amy")

    row = message_repo.add(cid, "carol", "hey")
    await bus.publish(ChangeEvent(table="messages", type="INSERT", new=row))
    await wait_until(lambda: store.get_unread_count() == 1)

    await session.logout()
    assert store.get_unread_count() == 0
    assert bus.subscription_count == 0


async def test_global_feed_ignores_other_users_conversations(session, bus, message_repo, conversation_repo):
    store = session.messages
    mine = await start_conversation(session, "amy", "carol")
    foreign = await start_conversation(session, "xavier", "yara")
    await session.login("amy")
    before = conversation_repo.calls["list_for_user"]

    await bus.publish(ChangeEvent(table="messages", type="INSERT", new=message_repo.add(foreign, "yara", "not for amy")))
    await bus.publish(ChangeEvent(table="messages", type="INSERT", new=message_repo.add(mine, "carol", "hey")))
    await wait_until(lambda: store.get_unread_count() == 1)

    # only the second event reloads the list
    assert conversation_repo.calls["list_for_user"] == before + 1
    assert [c.id for c in store.conversations] == [mine]
    await session.close()


async def test_global_feed_picks_up_new_conversation(session, bus, message_repo):
    store = session.messages
    await session.login("amy")
    cid = await start_conversation(session, "dana", "amy")

    await bus.publish(ChangeEvent(table="messages", type="INSERT", new=message_repo.add(cid, "dana", "hello")))
    await wait_until(lambda: store.get_unread_count() == 1)

    assert [c.id for c in store.conversations] == [cid]
    await session.close()


async def test_open_conversation_subscription_appends_messages(session, bus, message_repo):
    store = session.messages
    await session.login("amy")
    conversation = await store.open_conversation_with_user("amy", "bob")

    row = message_repo.add(conversation.id, "bob", "live")
    await bus.publish(ChangeEvent(table="messages", type="INSERT", new=row))
    await wait_until(lambda: any(m.text == "live" for m in store.messages))
    assert store.get_conversation_unread(conversation.id) == 0

    await store.back_to_conversations()
    assert store.current_conversation is None
    await session.close()


async def test_reset_clears_everything(store, session, message_repo):
    cid = await start_conversation(session, "amy", "bob")
    message_repo.add(cid, "bob")
    await store.load_conversations("amy")
    await store.reset()
    snapshot = store.snapshot()
    assert snapshot.conversations == []
    assert snapshot.unread_count == 0
    assert store.current_user_id is None
