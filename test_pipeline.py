"""
Tests for the message pipeline: establishment, ordering, replay and failure handling.
"""

import asyncio

import pytest

from ratchet.primitives import b64decode, b64encode
from messenger.envelope import ASSOCIATED_DATA_SIZE
from messenger.errors import (
    DecryptionFailed,
    InvalidEnvelope,
    MissingHandshake,
    NoDevicesForPeer,
    PeerNotFound,
    SendFailed,
)
from messenger.account import AccountManager
from messenger.pipeline import MessagePipeline

from conftest import open_store


def tamper_associated_data(message):
    header = b64decode(message['header'])
    forged = dict(message)
    forged['header'] = b64encode(b"\x00" * ASSOCIATED_DATA_SIZE + header[ASSOCIATED_DATA_SIZE:])
    return forged


def tamper_ciphertext(message):
    ciphertext = bytearray(b64decode(message['ciphertext']))
    ciphertext[-1] ^= 0x01
    forged = dict(message)
    forged['ciphertext'] = b64encode(bytes(ciphertext))
    return forged


async def establish(alice, bob):
    """Alice opens a session and Bob receives the first message"""
    await alice.send(bob.username, "hello")
    report = await bob.fetch()
    assert [m.content for m in report.received] == ["hello"]


@pytest.mark.asyncio
async def test_round_trip(make_party):
    alice = await make_party("alice")
    bob = await make_party("bob")

    await alice.send("bob", "Hello Bob!")
    report = await bob.fetch()
    assert [(m.sender, m.content) for m in report.received] == [("alice", "Hello Bob!")]

    await bob.send("alice", "Hi Alice!")
    report = await alice.fetch()
    assert [(m.sender, m.content) for m in report.received] == [("bob", "Hi Alice!")]

    await alice.send("bob", "How are you?")
    report = await bob.fetch()
    assert [m.content for m in report.received] == ["How are you?"]

    history = alice.store.get_messages("alice", "bob")
    assert [(m['content'], m['is_outgoing']) for m in history] == [
        ("Hello Bob!", True), ("Hi Alice!", False), ("How are you?", True)
    ]


@pytest.mark.asyncio
async def test_fetch_with_nothing_queued(make_party):
    alice = await make_party("alice")
    report = await alice.fetch()
    assert report.processed == 0


@pytest.mark.asyncio
async def test_send_to_unknown_user(make_party):
    alice = await make_party("alice")
    with pytest.raises(PeerNotFound):
        await alice.send("nobody", "hello")
    assert alice.session("nobody") is None


@pytest.mark.asyncio
async def test_search_requires_exact_match(make_party):
    alice = await make_party("alice")
    await make_party("bobby")
    with pytest.raises(PeerNotFound):
        await alice.send("bob", "hello")


@pytest.mark.asyncio
async def test_out_of_order_delivery(make_party, relay):
    alice = await make_party("alice")
    bob = await make_party("bob")
    await establish(alice, bob)

    for i in range(3):
        await alice.send("bob", f"message {i}")
    queue = relay.queue_for("bob")
    queue[:] = [queue[2], queue[0], queue[1]]

    report = await bob.fetch()
    assert [m.content for m in report.received] == ["message 2", "message 0", "message 1"]
    assert report.stale == 0 and not report.failed
    assert len(bob.session("alice").ratchet.state.skipped) == 0


@pytest.mark.asyncio
async def test_duplicate_is_dropped_without_touching_state(make_party, relay):
    alice = await make_party("alice")
    bob = await make_party("bob")

    await alice.send("bob", "once")
    original = relay.queue_for("bob")[0]
    await bob.fetch()
    blob = bob.session_blob("alice")

    relay.queue_for("bob").append(dict(original))
    report = await bob.fetch()

    assert report.stale == 1
    assert not report.received and not report.failed
    assert bob.session_blob("alice") == blob
    assert len(bob.store.get_messages("bob", "alice")) == 1


@pytest.mark.asyncio
async def test_concurrent_first_sends_share_one_session(make_party, relay):
    alice = await make_party("alice")
    bob = await make_party("bob")

    await asyncio.gather(alice.send("bob", "first"), alice.send("bob", "second"))

    assert relay.bundle_fetches == 1
    assert alice.session("bob").ratchet.state.send_count == 2

    report = await bob.fetch()
    assert sorted(m.content for m in report.received) == ["first", "second"]
    assert not report.failed


@pytest.mark.asyncio
async def test_lost_message(make_party, relay):
    alice = await make_party("alice")
    bob = await make_party("bob")
    await establish(alice, bob)

    for text in ("one", "two", "three"):
        await alice.send("bob", text)
    del relay.queue_for("bob")[1]

    report = await bob.fetch()
    assert [m.content for m in report.received] == ["one", "three"]
    assert len(bob.session("alice").ratchet.state.skipped) == 1


@pytest.mark.asyncio
async def test_first_message_lost_means_missing_handshake(make_party, relay):
    alice = await make_party("alice")
    bob = await make_party("bob")

    await alice.send("bob", "with handshake")
    relay.queue_for("bob").clear()
    await alice.send("bob", "without handshake")

    report = await bob.fetch()
    assert not report.received
    assert len(report.failed) == 1
    sender, error = report.failed[0]
    assert sender == "alice"
    assert isinstance(error, MissingHandshake)
    assert bob.session("alice") is None


@pytest.mark.asyncio
async def test_associated_data_mismatch(make_party, relay):
    alice = await make_party("alice")
    bob = await make_party("bob")
    await establish(alice, bob)
    blob = bob.session_blob("alice")

    await alice.send("bob", "forged")
    queue = relay.queue_for("bob")
    queue[0] = tamper_associated_data(queue[0])

    report = await bob.fetch()
    assert isinstance(report.failed[0][1], InvalidEnvelope)
    assert bob.session_blob("alice") == blob


@pytest.mark.asyncio
async def test_failed_decryption_leaves_state_untouched(make_party, relay):
    alice = await make_party("alice")
    bob = await make_party("bob")
    await establish(alice, bob)
    blob = bob.session_blob("alice")

    await alice.send("bob", "genuine")
    queue = relay.queue_for("bob")
    genuine = queue[0]
    queue[:] = [tamper_ciphertext(genuine)]

    report = await bob.fetch()
    assert isinstance(report.failed[0][1], DecryptionFailed)
    assert bob.session_blob("alice") == blob

    relay.queue_for("bob").append(genuine)
    report = await bob.fetch()
    assert [m.content for m in report.received] == ["genuine"]


@pytest.mark.asyncio
async def test_tampered_first_message_creates_no_session(make_party, relay):
    alice = await make_party("alice")
    bob = await make_party("bob")

    await alice.send("bob", "hello")
    queue = relay.queue_for("bob")
    genuine = queue[0]
    queue[:] = [tamper_ciphertext(genuine)]

    report = await bob.fetch()
    assert isinstance(report.failed[0][1], DecryptionFailed)
    assert bob.session("alice") is None
    assert bob.account.keys.one_time_pre_keys, "Pre-key must survive a failed first message"

    relay.queue_for("bob").append(genuine)
    report = await bob.fetch()
    assert [m.content for m in report.received] == ["hello"]


@pytest.mark.asyncio
async def test_batch_continues_after_bad_envelope(make_party, relay):
    alice = await make_party("alice")
    bob = await make_party("bob")

    await alice.send("bob", "still delivered")
    relay.queue_for("bob").insert(0, {'id': 99, 'sender': 'alice', 'header': '!!', 'ciphertext': 'AA=='})
    relay.queue_for("bob").insert(0, "not even an object")

    report = await bob.fetch()
    assert [m.content for m in report.received] == ["still delivered"]
    assert len(report.failed) == 2
    assert all(isinstance(error, InvalidEnvelope) for _, error in report.failed)


@pytest.mark.asyncio
async def test_send_failure_still_advances_the_session(make_party, relay):
    alice = await make_party("alice")
    bob = await make_party("bob")
    await establish(alice, bob)

    relay.fail_sends = True
    with pytest.raises(SendFailed):
        await alice.send("bob", "lost in transit")
    assert alice.session("bob").ratchet.state.send_count == 2
    assert [m['content'] for m in alice.store.get_messages("alice", "bob")] == ["hello"]

    relay.fail_sends = False
    envelope = await alice.send("bob", "delivered")
    assert envelope.header.n == 2

    report = await bob.fetch()
    assert [m.content for m in report.received] == ["delivered"]
    assert len(bob.session("alice").ratchet.state.skipped) == 1


@pytest.mark.asyncio
async def test_handshake_only_on_first_envelope(make_party, relay):
    alice = await make_party("alice")
    bob = await make_party("bob")

    first = await alice.send("bob", "one")
    second = await alice.send("bob", "two")
    assert first.header.x3dh_init is not None
    assert second.header.x3dh_init is None
    assert first.header.x3dh_init.sender_identity == alice.account.identity_public


@pytest.mark.asyncio
async def test_one_time_pre_key_is_retired(make_party, relay):
    alice = await make_party("alice")
    bob = await make_party("bob")

    envelope = await alice.send("bob", "hello")
    key_id = envelope.header.x3dh_init.one_time_pre_key_id
    assert key_id in bob.account.keys.one_time_pre_keys

    await bob.fetch()
    assert key_id not in bob.account.keys.one_time_pre_keys
    reloaded = bob.pipeline.accounts.load("bob")
    assert key_id not in reloaded.keys.one_time_pre_keys


@pytest.mark.asyncio
async def test_simultaneous_initiation(make_party):
    alice = await make_party("alice")
    bob = await make_party("bob")

    await alice.send("bob", "from alice")
    await bob.send("alice", "from bob")

    if alice.account.identity_public < bob.account.identity_public:
        low, high = alice, bob
    else:
        low, high = bob, alice

    # The lower identity keeps its own session and drops the peer's handshake
    report = await low.fetch()
    assert not report.received
    assert isinstance(report.failed[0][1], InvalidEnvelope)

    # The higher identity adopts the lower's session
    report = await high.fetch()
    assert [m.content for m in report.received] == [f"from {low.username}"]

    await high.send(low.username, "converged")
    report = await low.fetch()
    assert [m.content for m in report.received] == ["converged"]

    await low.send(high.username, "confirmed")
    report = await high.fetch()
    assert [m.content for m in report.received] == ["confirmed"]


@pytest.mark.asyncio
async def test_peer_starting_over_replaces_session(make_party, relay):
    alice = await make_party("alice")
    bob = await make_party("bob")
    await establish(alice, bob)
    await bob.send("alice", "reply")
    await alice.fetch()

    # Alice lost her session and starts a new one
    alice.store.db.execute("DELETE FROM sessions")
    alice.store.db.commit()
    await alice.send("bob", "starting over")

    report = await bob.fetch()
    assert [m.content for m in report.received] == ["starting over"]

    await bob.send("alice", "welcome back")
    report = await alice.fetch()
    assert [m.content for m in report.received] == ["welcome back"]


@pytest.mark.asyncio
async def test_session_survives_new_pipeline(make_party, relay):
    alice = await make_party("alice")
    bob = await make_party("bob")
    await establish(alice, bob)

    restarted = MessagePipeline(bob.store, relay)
    await restarted.send(bob.account, "alice", "after restart")
    report = await alice.fetch()
    assert [m.content for m in report.received] == ["after restart"]


@pytest.mark.asyncio
async def test_replayed_first_envelope_is_stale(make_party, relay):
    alice = await make_party("alice")
    # Without one-time pre-keys the handshake itself would still complete
    bob = await make_party("bob", num_one_time_keys=0)

    await alice.send("bob", "hi")
    first = dict(relay.queue_for("bob")[0])
    await bob.fetch()
    for i in range(3):
        await bob.send("alice", f"reply {i}")
        await alice.fetch()
        await alice.send("bob", f"next {i}")
        await bob.fetch()
    blob = bob.session_blob("alice")

    relay.queue_for("bob").append(first)
    report = await bob.fetch()
    assert report.stale == 1
    assert not report.received and not report.failed
    assert bob.session_blob("alice") == blob

    await alice.send("bob", "still here")
    report = await bob.fetch()
    assert [m.content for m in report.received] == ["still here"]


@pytest.mark.asyncio
async def test_replayed_handshake_cannot_undo_a_restart(make_party, relay):
    alice = await make_party("alice")
    bob = await make_party("bob", num_one_time_keys=0)

    await alice.send("bob", "hello")
    first = dict(relay.queue_for("bob")[0])
    await bob.fetch()

    alice.store.db.execute("DELETE FROM sessions")
    alice.store.db.commit()
    await alice.send("bob", "starting over")
    report = await bob.fetch()
    assert [m.content for m in report.received] == ["starting over"]
    blob = bob.session_blob("alice")

    relay.queue_for("bob").append(first)
    report = await bob.fetch()
    assert report.stale == 1
    assert not report.received and not report.failed
    assert bob.session_blob("alice") == blob

    await bob.send("alice", "welcome back")
    report = await alice.fetch()
    assert [m.content for m in report.received] == ["welcome back"]


@pytest.mark.asyncio
async def test_replay_from_an_earlier_chain_is_stale(make_party, relay):
    alice = await make_party("alice")
    bob = await make_party("bob")
    await establish(alice, bob)

    await bob.send("alice", "reply")
    await alice.fetch()
    await alice.send("bob", "second chain")
    captured = dict(relay.queue_for("bob")[0])
    await bob.fetch()

    for i in range(2):
        await bob.send("alice", f"ping {i}")
        await alice.fetch()
        await alice.send("bob", f"pong {i}")
        await bob.fetch()
    blob = bob.session_blob("alice")

    relay.queue_for("bob").append(captured)
    report = await bob.fetch()
    assert report.stale == 1
    assert not report.received and not report.failed
    assert bob.session_blob("alice") == blob


@pytest.mark.asyncio
async def test_send_to_peer_without_devices(make_party, relay):
    alice = await make_party("alice")
    await make_party("bob")
    relay.users["bob"]["devices"] = []

    with pytest.raises(NoDevicesForPeer):
        await alice.send("bob", "anyone there?")
    assert alice.session("bob") is None
    assert relay.bundle_fetches == 0


@pytest.mark.asyncio
async def test_only_the_first_device_is_addressed(make_party, relay):
    alice = await make_party("alice")
    bob = await make_party("bob")
    bob_device = relay.users["bob"]["device_id"]
    relay.users["bob"]["devices"].append(999)

    await alice.send("bob", "which device?")
    assert alice.store.get_peer_device("bob") == (relay.users["bob"]["id"], bob_device)
    report = await bob.fetch()
    assert [m.content for m in report.received] == ["which device?"]

    # First advertised device has no published bundle
    carol = await make_party("carol")
    relay.users["bob"]["devices"] = [999, bob_device]
    with pytest.raises(NoDevicesForPeer):
        await carol.send("bob", "hello")
    assert carol.session("bob") is None


@pytest.mark.asyncio
async def test_session_started_by_another_connection_wins(make_party, relay):
    """Two clients on one database both start a session; only one survives"""
    alice = await make_party("alice")
    bob = await make_party("bob")

    second_store = open_store(alice.store.db_path)
    second = MessagePipeline(second_store, relay, accounts=AccountManager(second_store))

    await asyncio.gather(
        alice.send("bob", "from the first client"),
        second.send(alice.account, "bob", "from the second client"),
    )
    assert alice.session("bob").ratchet.state.send_count == 2

    report = await bob.fetch()
    assert sorted(m.content for m in report.received) == [
        "from the first client", "from the second client"
    ]
    assert not report.failed
    second_store.close()
