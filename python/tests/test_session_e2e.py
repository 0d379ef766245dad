"""End-to-end tests for the messaging session root.

Two sessions share one in-memory backend, like a client and an escort signed
in on two devices against the same Appwrite project.

Tests cover:
- A full client/escort exchange: first message, reply, reactions, a call
- Opening a conversation watches its messages and marks them read
- stop() leaves no timer, task or subscription behind
- The local cache is written at stop and restored at the next start
"""

import asyncio

import pytest

from rendezvous.errors import UnauthenticatedError
from rendezvous.schemas import CallStatus, CallType, Role
from rendezvous.services.cache import ConversationCache


async def _start(backend, user, **kwargs):
    session = backend.session(user, **kwargs)
    await session.start()
    return session


class TestConversationFlow:
    @pytest.mark.asyncio
    async def test_client_and_escort_exchange(self, backend, clock, client_user, escort_user):
        client = await _start(backend, client_user)
        escort = await _start(backend, escort_user)

        first = await client.messages.send_message(
            "escort1", "Hi, are you available tonight?", target_role=Role.ESCORT
        )
        cid = first.conversation_id
        assert escort.messages.unread_total == 1
        assert escort.ctx.alerts.notifications[0][0] == "New Conversation"

        await escort.open_conversation(cid)
        assert escort.messages.unread_total == 0

        reply = await escort.messages.send_message("client1", "Yes, from 8pm")
        assert reply.sending_state.value == "sent"
        assert [m.content for m in client.messages.messages_for(cid)] == [
            "Hi, are you available tonight?",
            "Yes, from 8pm",
        ]
        assert client.messages.unread_total == 1

        await client.messages.toggle_reaction(cid, reply.id, "❤️")
        assert escort.messages.find(cid, reply.id).reactions == {"❤️": 1}

        call = await client.calls.start_call("escort1", CallType.VIDEO)
        assert escort.calls.incoming_call.id == call.id
        await escort.calls.accept_call(call.id)
        clock.advance(seconds=42)
        ended = await client.calls.end_call(call.id)
        assert ended.status == CallStatus.ENDED
        assert escort.messages.messages_for(cid)[-1].content == "Video call ended (42s)"

        await client.stop()
        await escort.stop()

    @pytest.mark.asyncio
    async def test_presence_of_contacts_loaded_at_start(self, backend, client_user, escort_user):
        client = await _start(backend, client_user)
        await client.messages.send_message("escort1", "hello", target_role=Role.ESCORT)
        escort = await _start(backend, escort_user)

        assert escort.presence.last_seen_text("client1") == "online"

        await client.stop()
        assert escort.presence.presence_of("client1").is_online is False
        await escort.stop()

    @pytest.mark.asyncio
    async def test_open_and_close_conversation(self, backend, client_user, escort_user):
        client = await _start(backend, client_user)
        escort = await _start(backend, escort_user)
        first = await client.messages.send_message("escort1", "one", target_role=Role.ESCORT)
        cid = first.conversation_id

        await escort.open_conversation(cid)
        assert f"messages-{cid}" in escort.realtime.subscription_keys

        second = await client.messages.send_message("escort1", "two")
        await escort.ctx.tasks.drain()
        assert escort.messages.find(cid, second.id).is_read

        escort.close_conversation()
        assert f"messages-{cid}" not in escort.realtime.subscription_keys
        assert escort.messages.active_conversation_id is None

        await client.stop()
        await escort.stop()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_stop_leaves_nothing_running(self, backend, client_user, escort_user):
        client = await _start(backend, client_user)
        escort = await _start(backend, escort_user)
        call = await client.calls.start_call("escort1", CallType.VOICE, Role.ESCORT)
        await escort.calls.decline_call(call.id)
        backend.realtime.set_connected(False)

        await client.stop()
        await escort.stop()

        for session in (client, escort):
            assert not session.started
            assert not session.presence.heartbeat_running
            assert not session.messages.cleanup_running
            assert not session.realtime.reconnect_pending
            assert session.calls.pending_removals == 0
            assert len(session.ctx.tasks) == 0
            assert session.conversations.conversations == []
            assert session.ctx.user is None
        assert backend.realtime.subscriber_count() == 0

        await asyncio.sleep(0.05)
        assert client.realtime.subscription_keys == []

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, backend, client_user):
        client = await _start(backend, client_user)
        subscribers = backend.realtime.subscriber_count()

        await client.start()

        assert backend.realtime.subscriber_count() == subscribers
        await client.stop()
        await client.stop()

    @pytest.mark.asyncio
    async def test_start_requires_sign_in(self, backend):
        session = backend.session(None)

        with pytest.raises(UnauthenticatedError):
            await session.start()

        assert not session.started
        assert backend.realtime.subscriber_count() == 0


class TestCacheRestore:
    @pytest.mark.asyncio
    async def test_cache_saved_on_stop_and_restored(self, backend, settings, tmp_path, client_user):
        cache = ConversationCache(settings, tmp_path / "client1.cache")
        client = await _start(backend, client_user)
        client.cache = cache
        message = await client.messages.send_message("escort1", "remember me", target_role=Role.ESCORT)
        await client.stop()

        snapshot = cache.load("client1")
        assert [m.content for m in snapshot.messages[message.conversation_id]] == ["remember me"]

        backend.documents.fail_next("list", "conversations")
        restored = backend.session(client_user)
        restored.cache = cache
        await restored.start()

        assert [c.id for c in restored.conversations.conversations] == [message.conversation_id]
        assert restored.messages.messages_for(message.conversation_id)[0].content == "remember me"
        await restored.stop()
