"""Test suite for presence tracking."""

import pytest

from firechat_sync.domain.errors import InvalidArgument, NotFound
from firechat_sync.domain.models import PresenceStatus
from firechat_sync.services.presence import PresenceBoard


async def _register(context, uid, name=None):
    return await context.directory.upsert(
        uid,
        {"email": f"{uid}@example.com", "displayName": name or uid},
        touch_presence=False,
    )


@pytest.mark.asyncio
async def test_subscriber_sees_exactly_one_update(context, recorder):
    """Test an away transition reaches a subscriber once with a fresh lastSeen."""
    await _register(context, "u1")
    await context.presence.set_status("u1", PresenceStatus.ONLINE)

    subscription = context.presence.subscribe("u1", recorder)
    await subscription.drained()
    before = recorder.last

    await context.presence.set_status("u1", "away")
    await subscription.drained()

    assert len(recorder.items) == 2
    assert before.status == PresenceStatus.ONLINE.value
    assert recorder.last.status == PresenceStatus.AWAY.value
    assert recorder.last.last_seen > before.last_seen
    subscription.cancel()


@pytest.mark.asyncio
async def test_set_status_on_unknown_user(context):
    """Test presence is never written for a user without a record."""
    with pytest.raises(NotFound):
        await context.presence.set_status("ghost", PresenceStatus.ONLINE)


@pytest.mark.asyncio
async def test_set_status_rejects_bad_input(context):
    """Test invalid status values and empty ids."""
    await _register(context, "u1")
    with pytest.raises(InvalidArgument):
        await context.presence.set_status("u1", "busy")
    with pytest.raises(InvalidArgument):
        await context.presence.set_status("", PresenceStatus.ONLINE)


@pytest.mark.asyncio
async def test_subscribe_to_missing_user_delivers_none(context, recorder):
    """Test a missing record arrives as None."""
    subscription = context.presence.subscribe("ghost", recorder)
    await subscription.drained()
    assert recorder.items == [None]


@pytest.mark.asyncio
async def test_cancelled_subscription_gets_nothing_more(context, recorder):
    """Test no deliveries after unsubscribe."""
    await _register(context, "u1")
    subscription = context.presence.subscribe("u1", recorder)
    await subscription.drained()
    subscription.cancel()

    await context.presence.set_status("u1", PresenceStatus.AWAY)
    assert len(recorder.items) == 1


@pytest.mark.asyncio
async def test_presence_board_tracks_directory(context):
    """Test the board buckets every other user by status and follows changes."""
    for uid in ("me", "alice", "bob", "carol"):
        await _register(context, uid)
    await context.presence.set_status("alice", PresenceStatus.ONLINE)
    await context.presence.set_status("bob", PresenceStatus.AWAY)

    board = PresenceBoard(context.presence)
    await board.watch_directory(context.directory, "me")
    assert board.online == {"alice"}
    assert board.away == {"bob"}
    assert board.offline == {"carol"}
    assert board.status_of("me") is None

    await context.presence.set_status("carol", PresenceStatus.ONLINE)
    await context.store.update("users/alice", {"status": "offline"})
    for subscription in board._watched.values():
        await subscription.drained()

    assert board.online == {"carol"}
    assert board.offline == {"alice"}

    board.unwatch("bob")
    assert board.status_of("bob") is None
    board.close()
    assert context.store.listener_count == 0
