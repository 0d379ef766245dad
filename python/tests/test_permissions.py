"""Tests for conversation access control.

The initiation matrix is exhaustive over all role pairs; reply permission
only depends on being a participant.
"""

from datetime import UTC, datetime

import pytest

from rendezvous.auth.permissions import (
    ESCORT_INITIATION_DENIED,
    can_initiate_conversation,
    can_reply_to_conversation,
    conversation_restrictions,
    conversation_type_for,
    initiation_denied_message,
    is_support_identity,
    require_can_initiate,
    require_can_reply,
    resolve_user_role,
)
from rendezvous.errors import CannotInitiateError, CannotReplyError, MessagingErrorCode
from rendezvous.schemas.conversation import Conversation, ConversationType, Role
from rendezvous.schemas.user import User
from tests.helpers import make_settings

INITIATION_MATRIX = [
    (Role.CLIENT, Role.CLIENT, False),
    (Role.CLIENT, Role.ESCORT, True),
    (Role.CLIENT, Role.SUPPORT, True),
    (Role.ESCORT, Role.CLIENT, False),
    (Role.ESCORT, Role.ESCORT, False),
    (Role.ESCORT, Role.SUPPORT, True),
    (Role.SUPPORT, Role.CLIENT, True),
    (Role.SUPPORT, Role.ESCORT, True),
    (Role.SUPPORT, Role.SUPPORT, True),
]


def _conversation(participants: list[str]) -> Conversation:
    return Conversation(
        id="conv1",
        participants=participants,
        participant_roles={participants[0]: Role.CLIENT, participants[1]: Role.ESCORT},
        initiated_by=participants[0],
        conversation_type=ConversationType.CLIENT_ESCORT,
        last_activity=datetime(2026, 1, 1, tzinfo=UTC),
    )


class TestInitiation:
    @pytest.mark.parametrize("initiator,target,allowed", INITIATION_MATRIX)
    def test_matrix(self, initiator, target, allowed):
        assert can_initiate_conversation(initiator, target) is allowed

    @pytest.mark.parametrize(
        "initiator,target", [(i, t) for i, t, allowed in INITIATION_MATRIX if not allowed]
    )
    def test_require_raises_for_denied_pairs(self, initiator, target):
        with pytest.raises(CannotInitiateError) as exc_info:
            require_can_initiate(initiator, target)
        assert exc_info.value.code == MessagingErrorCode.E_CANNOT_INITIATE

    def test_escort_to_client_message(self):
        assert initiation_denied_message(Role.ESCORT, Role.CLIENT) == ESCORT_INITIATION_DENIED

    def test_generic_denied_message_names_target(self):
        assert initiation_denied_message(Role.CLIENT, Role.CLIENT).endswith("with a client")


class TestReply:
    def test_participant_can_reply_whatever_the_role(self):
        conversation = _conversation(["client1", "escort1"])
        assert can_reply_to_conversation(conversation, "escort1")
        assert can_reply_to_conversation(conversation, "client1")

    def test_outsider_cannot_reply(self):
        conversation = _conversation(["client1", "escort1"])
        assert not can_reply_to_conversation(conversation, "intruder")
        with pytest.raises(CannotReplyError):
            require_can_reply(conversation, "intruder")


class TestConversationType:
    @pytest.mark.parametrize(
        "initiator,target,expected",
        [
            (Role.CLIENT, Role.ESCORT, ConversationType.CLIENT_ESCORT),
            (Role.CLIENT, Role.SUPPORT, ConversationType.CLIENT_SUPPORT),
            (Role.SUPPORT, Role.CLIENT, ConversationType.CLIENT_SUPPORT),
            (Role.ESCORT, Role.SUPPORT, ConversationType.ESCORT_SUPPORT),
            (Role.SUPPORT, Role.ESCORT, ConversationType.ESCORT_SUPPORT),
            (Role.SUPPORT, Role.SUPPORT, ConversationType.CLIENT_SUPPORT),
        ],
    )
    def test_type_from_roles(self, initiator, target, expected):
        assert conversation_type_for(initiator, target) == expected


class TestRoleResolution:
    def test_explicit_user_type(self):
        settings = make_settings()
        user = User(id="u1", prefs={"userType": "escort"})
        assert resolve_user_role(user, settings) == Role.ESCORT

    def test_unknown_user_type_falls_through(self):
        settings = make_settings()
        user = User(id="u1", prefs={"userType": "admin"})
        assert resolve_user_role(user, settings) == Role.CLIENT

    def test_escort_profile_flag(self):
        settings = make_settings()
        user = User(id="u1", prefs={"hasEscortProfile": True})
        assert resolve_user_role(user, settings) == Role.ESCORT

    def test_support_email_domain(self):
        settings = make_settings()
        user = User(id="u1", email=f"agent@{settings.support_email_domain}")
        assert resolve_user_role(user, settings) == Role.SUPPORT

    def test_support_user_id(self):
        settings = make_settings()
        assert resolve_user_role(User(id=settings.support_user_id), settings) == Role.SUPPORT

    def test_default_is_client(self):
        assert resolve_user_role(User(id="u1"), make_settings()) == Role.CLIENT


class TestSupportIdentity:
    @pytest.mark.parametrize(
        "user",
        [
            User(id="u1", labels=["support"]),
            User(id="u1", name="Support"),
            User(id="u1", email="support@example.com"),
        ],
    )
    def test_support_markers(self, user):
        assert is_support_identity(user, make_settings())

    def test_regular_user(self):
        assert not is_support_identity(User(id="u1", name="Alice"), make_settings())


class TestRestrictions:
    def test_escort_may_only_initiate_with_support(self):
        restrictions = conversation_restrictions(Role.ESCORT)
        assert restrictions.can_initiate == (Role.SUPPORT,)
        assert Role.CLIENT in restrictions.can_reply_to

    def test_restrictions_agree_with_matrix(self):
        for initiator, target, allowed in INITIATION_MATRIX:
            if target == Role.SUPPORT and initiator == Role.SUPPORT:
                continue
            listed = target in conversation_restrictions(initiator).can_initiate
            assert listed is allowed, (initiator, target)
