"""Tests for the encrypted local conversation cache."""

import pytest

from rendezvous.schemas import Role, SendingState
from rendezvous.services.cache import ConversationCache
from tests.helpers import make_settings


async def _populated(client):
    message = await client.messages.send_message("escort1", "cached text", target_role=Role.ESCORT)
    await client.messages.toggle_reaction(message.conversation_id, message.id, "👍")
    return message


class TestEncodeDecode:
    @pytest.mark.asyncio
    async def test_round_trip(self, settings, client):
        message = await _populated(client)
        cache = ConversationCache(settings)

        blob = cache.encode(
            "client1", client.conversations.conversations, client.messages.messages
        )
        snapshot = cache.decode("client1", blob)

        (conversation,) = snapshot.conversations
        assert conversation.id == message.conversation_id
        assert conversation.participant_roles == {"client1": Role.CLIENT, "escort1": Role.ESCORT}
        (cached,) = snapshot.messages[conversation.id]
        assert cached.content == "cached text"
        assert cached.reactions_raw == {"👍": ["client1"]}
        assert cached.sending_state == SendingState.SENT
        assert conversation.last_message.id == cached.id

    @pytest.mark.asyncio
    async def test_blob_hides_plaintext(self, settings, client):
        await _populated(client)
        cache = ConversationCache(settings)

        blob = cache.encode("client1", client.conversations.conversations, client.messages.messages)

        assert "cached text" not in blob
        assert "client1" not in blob

    @pytest.mark.asyncio
    async def test_temp_messages_not_cached(self, backend, settings, client):
        message = await _populated(client)
        backend.documents.fail_next("create", "messages")
        await client.messages.send_message("escort1", "never sent")
        cache = ConversationCache(settings)

        snapshot = cache.decode(
            "client1",
            cache.encode("client1", client.conversations.conversations, client.messages.messages),
        )

        assert [m.content for m in snapshot.messages[message.conversation_id]] == ["cached text"]

    @pytest.mark.asyncio
    async def test_other_user_cannot_open(self, settings, client):
        await _populated(client)
        cache = ConversationCache(settings)
        blob = cache.encode("client1", client.conversations.conversations, client.messages.messages)

        assert cache.decode("escort1", blob) is None

    @pytest.mark.asyncio
    async def test_other_secret_cannot_open(self, settings, client):
        await _populated(client)
        blob = ConversationCache(settings).encode("client1", client.conversations.conversations, {})

        other = ConversationCache(make_settings(local_cache_secret="different"))

        assert other.decode("client1", blob) is None

    @pytest.mark.parametrize("blob", ["", "not base64!", "AAAA"])
    def test_garbage_yields_none(self, settings, blob):
        assert ConversationCache(settings).decode("client1", blob) is None


class TestFilePersistence:
    @pytest.mark.asyncio
    async def test_save_load_clear(self, tmp_path, settings, client):
        await _populated(client)
        cache = ConversationCache(settings, tmp_path / "cache" / "client1.bin")

        assert cache.save(
            "client1", client.conversations.conversations, client.messages.confirmed_snapshot()
        )
        snapshot = cache.load("client1")
        assert len(snapshot.conversations) == 1

        cache.clear()
        assert cache.load("client1") is None
        cache.clear()

    def test_without_path(self, settings):
        cache = ConversationCache(settings)

        assert not cache.save("client1", [], {})
        assert cache.load("client1") is None
