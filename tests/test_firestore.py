"""Test suite for the Firestore adapter, driven by fake clients."""

import asyncio
import threading
from datetime import datetime, timezone

import pytest
from google.api_core import exceptions
from google.cloud import firestore

from firechat_sync.domain import errors
from firechat_sync.repositories.base import (
    SERVER_TIMESTAMP,
    ArrayRemove,
    ArrayUnion,
    Increment,
    Query,
    Write,
    WriteKind,
)
from firechat_sync.repositories.firestore import (
    FirestoreDocumentStore,
    to_firestore_value,
    translate_error,
)


class FakeRef:
    def __init__(self, *segments):
        self.path = "/".join(segments)
        self.ordering = []
        self.limited = None
        self.callback = None
        self.unsubscribed = False
        self.error = None

    def order_by(self, field, direction=None):
        self.ordering.append((field, direction))
        return self

    def limit(self, count):
        self.limited = count
        return self

    async def get(self):
        if self.error is not None:
            raise self.error
        return FakeDocument(self, {"name": "x"})

    def on_snapshot(self, callback):
        self.callback = callback
        return self

    def unsubscribe(self):
        self.unsubscribed = True


class FakeDocument:
    def __init__(self, reference, data, update_time=None):
        self.reference = reference
        self.exists = data is not None
        self.update_time = update_time
        self._data = data

    def to_dict(self):
        return self._data


class FakeBatch:
    def __init__(self, error=None):
        self.operations = []
        self.error = error

    def create(self, ref, data):
        self.operations.append(("create", ref.path, data))

    def update(self, ref, data, option=None):
        self.operations.append(("update", ref.path, data, option))

    def set(self, ref, data, merge=False):
        self.operations.append(("set", ref.path, data, merge))

    async def commit(self):
        if self.error is not None:
            raise self.error


class FakeClient:
    def __init__(self):
        self.refs = {}
        self.batches = []
        self.batch_error = None

    def document(self, *segments):
        return self.refs.setdefault("/".join(segments), FakeRef(*segments))

    def collection(self, *segments):
        return self.document(*segments)

    def batch(self):
        batch = FakeBatch(self.batch_error)
        self.batches.append(batch)
        return batch

    def write_option(self, **kwargs):
        return ("write_option", kwargs)


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def firestore_store(client):
    return FirestoreDocumentStore(client=client, watch_client=client)


def test_sentinels_translate_to_firestore_transforms():
    """Test nested sentinels map onto Firestore transforms."""
    value = to_firestore_value(
        {
            "at": SERVER_TIMESTAMP,
            "members": ArrayUnion("a", "b"),
            "gone": ArrayRemove("c"),
            "count": Increment(2),
            "nested": {"at": SERVER_TIMESTAMP, "tags": ["x"]},
        }
    )

    assert value["at"] is firestore.SERVER_TIMESTAMP
    assert isinstance(value["members"], firestore.ArrayUnion)
    assert isinstance(value["gone"], firestore.ArrayRemove)
    assert isinstance(value["count"], firestore.Increment)
    assert value["nested"]["at"] is firestore.SERVER_TIMESTAMP
    assert value["nested"]["tags"] == ["x"]


@pytest.mark.parametrize(
    "error, expected",
    [
        (exceptions.AlreadyExists("exists"), errors.AlreadyExists),
        (exceptions.NotFound("missing"), errors.NotFound),
        (exceptions.PermissionDenied("denied"), errors.PermissionDenied),
        (exceptions.Unauthenticated("who"), errors.PermissionDenied),
        (exceptions.InvalidArgument("bad"), errors.InvalidArgument),
        (exceptions.FailedPrecondition("stale"), errors.Conflict),
        (exceptions.ServiceUnavailable("down"), errors.RemoteFailure),
    ],
)
def test_translate_error(error, expected):
    """Test Google API errors map onto the error taxonomy."""
    assert isinstance(translate_error(error), expected)


def test_transient_classification():
    """Test which remote failures are safe to retry."""
    assert translate_error(exceptions.ServiceUnavailable("down")).transient
    assert translate_error(exceptions.DeadlineExceeded("slow")).transient
    assert not translate_error(exceptions.OutOfRange("cursor")).transient


@pytest.mark.asyncio
async def test_commit_builds_one_batch(firestore_store, client):
    """Test every write kind lands in a single Firestore batch."""
    await firestore_store.commit(
        [
            Write(WriteKind.CREATE, "conversations/c1", {"createdAt": SERVER_TIMESTAMP}),
            Write(WriteKind.UPDATE, "users/u1", {"status": "online"}),
            Write(WriteKind.SET, "users/u1/conversations/c1", {"muted": True}, merge=True),
        ]
    )

    assert len(client.batches) == 1
    operations = client.batches[0].operations
    assert [op[0] for op in operations] == ["create", "update", "set"]
    assert operations[0][2]["createdAt"] is firestore.SERVER_TIMESTAMP
    assert operations[2][3] is True


@pytest.mark.asyncio
async def test_commit_errors_are_translated(firestore_store, client):
    """Test a failed batch raises a domain error."""
    client.batch_error = exceptions.AlreadyExists("exists")
    with pytest.raises(errors.AlreadyExists):
        await firestore_store.create("conversations/c1", {"type": "direct"})


@pytest.mark.asyncio
async def test_get_translates_errors(firestore_store, client):
    """Test reads map snapshots and errors."""
    snapshot = await firestore_store.get("users/u1")
    assert snapshot.path == "users/u1"
    assert snapshot.data == {"name": "x"}

    client.document("users", "u2").error = exceptions.ServiceUnavailable("down")
    with pytest.raises(errors.RemoteFailure) as exc_info:
        await firestore_store.get("users/u2")
    assert exc_info.value.transient


@pytest.mark.asyncio
async def test_watch_callbacks_are_handed_to_the_loop(firestore_store, client, recorder):
    """Test snapshots from the watch thread reach the subscriber in order."""
    query = Query("conversations/c1/messages", order_by="timestamp", descending=True, limit=2)
    subscription = firestore_store.subscribe_query(query, recorder)

    ref = client.collection("conversations", "c1", "messages")
    assert ref.ordering == [("timestamp", firestore.Query.DESCENDING)]
    assert ref.limited == 2

    message = FakeDocument(FakeRef("conversations", "c1", "messages", "m1"), {"text": "hi"})
    thread = threading.Thread(target=ref.callback, args=([message], [], None))
    thread.start()
    thread.join()
    await asyncio.sleep(0)
    await subscription.drained()

    assert [[s.id for s in result] for result in recorder.items] == [["m1"]]

    await firestore_store.close()
    assert not subscription.active
    assert ref.unsubscribed


@pytest.mark.asyncio
async def test_conditional_update_uses_write_option(firestore_store, client):
    """Test an update tied to a read carries a last-update precondition."""
    read_at = datetime(2024, 1, 1, tzinfo=timezone.utc)
    batch = firestore_store.batch()
    batch.update("conversations/c1", {"name": "x"}, last_update=read_at)
    batch.update("users/u1", {"status": "away"})
    await batch.commit()

    operations = client.batches[0].operations
    assert operations[0][3] == ("write_option", {"last_update_time": read_at})
    assert operations[1][3] is None


@pytest.mark.asyncio
async def test_cancelled_watches_are_released(firestore_store, client, recorder):
    """Test repeated subscribe and cancel leaves nothing behind."""
    for _ in range(100):
        subscription = firestore_store.subscribe_document("users/u1", recorder)
        subscription.cancel()

    assert firestore_store.listener_count == 0
    assert client.document("users", "u1").unsubscribed

    kept = firestore_store.subscribe_document("users/u2", recorder)
    assert firestore_store.listener_count == 1
    await firestore_store.close()
    assert not kept.active
    assert firestore_store.listener_count == 0
