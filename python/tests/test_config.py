"""Tests for client configuration."""

import pytest
from pydantic import ValidationError

from rendezvous.config import (
    DEFAULT_CONVERSATION_KEY_SALT,
    Environment,
    Settings,
    clear_settings_cache,
    get_settings,
)


def _make_settings(**overrides) -> Settings:
    """Build a Settings instance with test defaults + overrides."""
    defaults = {"RENDEZVOUS_ENV": "test"}
    defaults.update(overrides)
    return Settings(_env_file=None, **defaults)


class TestDefaults:
    def test_timer_defaults(self):
        s = _make_settings()
        assert s.presence_heartbeat_interval_s == 30
        assert s.realtime_reconnect_delay_s == 5
        assert s.message_cleanup_interval_s == 60
        assert s.call_linger_s == 1

    def test_collection_defaults(self):
        s = _make_settings()
        assert s.conversations_collection_id == "conversations"
        assert s.messages_collection_id == "messages"
        assert s.calls_collection_id == "calls"
        assert s.presence_collection_id == "user_presence"

    def test_cache_secret_falls_back_to_salt(self):
        s = _make_settings(CONVERSATION_KEY_SALT="pepper")
        assert s.effective_cache_secret == "pepper"
        assert _make_settings(LOCAL_CACHE_SECRET="s3cret").effective_cache_secret == "s3cret"

    def test_endpoint_normalized(self):
        s = _make_settings(APPWRITE_ENDPOINT="https://cloud.appwrite.io/v1/")
        assert s.normalized_endpoint == "https://cloud.appwrite.io/v1"
        assert _make_settings().normalized_endpoint is None


class TestValidation:
    @pytest.mark.parametrize(
        "name",
        ["PRESENCE_HEARTBEAT_INTERVAL_S", "REALTIME_RECONNECT_DELAY_S", "MESSAGE_CLEANUP_INTERVAL_S"],
    )
    def test_intervals_must_be_positive(self, name):
        with pytest.raises(ValidationError, match=name):
            _make_settings(**{name: 0})

    def test_negative_linger_rejected(self):
        with pytest.raises(ValidationError, match="CALL_LINGER_S"):
            _make_settings(CALL_LINGER_S=-1)

    def test_page_size_must_be_positive(self):
        with pytest.raises(ValidationError, match="Page sizes"):
            _make_settings(MESSAGE_PAGE_SIZE=0)

    @pytest.mark.parametrize("env", ["staging", "prod"])
    def test_deployed_envs_require_appwrite(self, env):
        with pytest.raises(ValidationError, match="APPWRITE_ENDPOINT"):
            _make_settings(RENDEZVOUS_ENV=env, CONVERSATION_KEY_SALT="real-salt")

    def test_prod_rejects_default_salt(self):
        with pytest.raises(ValidationError, match="CONVERSATION_KEY_SALT"):
            _make_settings(
                RENDEZVOUS_ENV="prod",
                APPWRITE_ENDPOINT="https://cloud.appwrite.io/v1",
                APPWRITE_PROJECT_ID="proj",
                CONVERSATION_KEY_SALT=DEFAULT_CONVERSATION_KEY_SALT,
            )

    def test_prod_with_everything_set(self):
        s = _make_settings(
            RENDEZVOUS_ENV="prod",
            APPWRITE_ENDPOINT="https://cloud.appwrite.io/v1",
            APPWRITE_PROJECT_ID="proj",
            CONVERSATION_KEY_SALT="real-salt",
        )
        assert s.rendezvous_env == Environment.PROD


class TestCachedSettings:
    def test_reads_environment_and_caches(self, monkeypatch):
        monkeypatch.setenv("SUPPORT_USER_ID", "helpdesk")
        clear_settings_cache()
        first = get_settings()
        monkeypatch.setenv("SUPPORT_USER_ID", "changed")

        assert first.support_user_id == "helpdesk"
        assert get_settings() is first

        clear_settings_cache()
        assert get_settings().support_user_id == "changed"
