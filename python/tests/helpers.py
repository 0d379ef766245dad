"""Test helpers for building messaging sessions.

Provides:
- A controllable clock
- Recording collaborators (alerts, notifier, entitlements, beacon)
- User factories for each role
- Session builders sharing one in-memory backend, so two sessions see each
  other's writes through the realtime feed
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from rendezvous.backend.base import (
    AlertSink,
    EntitlementChecker,
    FeatureAccess,
    LifecycleHooks,
    Notifier,
)
from rendezvous.backend.identity import StaticIdentityProvider
from rendezvous.backend.memory import InMemoryDocumentStore, InMemoryRealtime
from rendezvous.config import Settings
from rendezvous.context import SessionContext
from rendezvous.schemas.call import CallSession
from rendezvous.schemas.user import User
from rendezvous.session import MessagingSession

DEFAULT_START = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, start: datetime = DEFAULT_START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingAlertSink(AlertSink):
    def __init__(self):
        self.notifications: list[tuple[str, str, dict[str, Any] | None]] = []
        self.call_notifications: list[tuple[CallSession, str]] = []
        self.sounds = 0
        self.ringing = False
        self.ringtone_starts = 0

    def show_notification(self, title: str, body: str, data: dict[str, Any] | None = None) -> None:
        self.notifications.append((title, body, data))

    def show_call_notification(self, call: CallSession, caller_name: str) -> None:
        self.call_notifications.append((call, caller_name))

    def play_notification_sound(self) -> None:
        self.sounds += 1

    def start_ringtone(self) -> None:
        self.ringing = True
        self.ringtone_starts += 1

    def stop_ringtone(self) -> None:
        self.ringing = False


class FailingAlertSink(RecordingAlertSink):
    """Every alert primitive raises."""

    def show_notification(self, title: str, body: str, data: dict[str, Any] | None = None) -> None:
        raise RuntimeError("notifications blocked")

    def play_notification_sound(self) -> None:
        raise RuntimeError("audio unavailable")

    def start_ringtone(self) -> None:
        raise RuntimeError("audio unavailable")


class RecordingNotifier(Notifier):
    def __init__(self, fail: bool = False):
        self.sent: list[dict[str, Any]] = []
        self.fail = fail

    async def notify_user(
        self,
        user_id: str,
        kind: str,
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        if self.fail:
            raise RuntimeError("notification service down")
        self.sent.append(
            {"user_id": user_id, "kind": kind, "title": title, "body": body, "data": data}
        )


class StaticEntitlements(EntitlementChecker):
    def __init__(self, video: bool = True, audio: bool = True, reason: str | None = None):
        self.video = video
        self.audio = audio
        self.reason = reason

    async def can_access_video_call(self) -> FeatureAccess:
        return FeatureAccess(allowed=self.video, reason=None if self.video else self.reason)

    async def can_access_audio_call(self) -> FeatureAccess:
        return FeatureAccess(allowed=self.audio, reason=None if self.audio else self.reason)


@dataclass
class RecordingBeacon:
    calls: list[tuple[str, dict[str, Any]]] = field(default_factory=list)

    def __call__(self, path: str, payload: dict[str, Any]) -> None:
        self.calls.append((path, payload))


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "rendezvous_env": "test",
        "call_linger_s": 0.01,
        "realtime_reconnect_delay_s": 0.01,
        "presence_heartbeat_interval_s": 30.0,
        "message_cleanup_interval_s": 60.0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_user(user_id: str, role: str = "client", **kwargs: Any) -> User:
    prefs = kwargs.pop("prefs", {"userType": role})
    return User(
        id=user_id,
        name=kwargs.pop("name", user_id.capitalize()),
        email=kwargs.pop("email", f"{user_id}@example.com"),
        prefs=prefs,
        **kwargs,
    )


def make_support_user(settings: Settings) -> User:
    return User(
        id=settings.support_user_id,
        name="Support",
        email=f"help@{settings.support_email_domain}",
        labels=["support"],
    )


class Backend:
    """One in-memory backend shared by every session built from it."""

    def __init__(self, settings: Settings | None = None, clock: FakeClock | None = None):
        self.settings = settings or make_settings()
        self.clock = clock or FakeClock()
        self.realtime = InMemoryRealtime()
        self.documents = InMemoryDocumentStore(
            self.realtime, self.settings.appwrite_database_id, now_func=self.clock
        )

    def context(
        self,
        user: User | None,
        *,
        alerts: AlertSink | None = None,
        notifier: Notifier | None = None,
        entitlements: EntitlementChecker | None = None,
        beacon: RecordingBeacon | None = None,
    ) -> SessionContext:
        return SessionContext(
            settings=self.settings,
            documents=self.documents,
            realtime=self.realtime,
            identity=StaticIdentityProvider(user),
            notifier=notifier or RecordingNotifier(),
            entitlements=entitlements or StaticEntitlements(),
            alerts=alerts or RecordingAlertSink(),
            lifecycle=LifecycleHooks(),
            clock=self.clock,
            beacon=beacon,
            user=user,
        )

    def session(self, user: User | None, **kwargs: Any) -> MessagingSession:
        return MessagingSession(self.context(user, **kwargs))

    def wired(self, user: User, **kwargs: Any) -> MessagingSession:
        """A session whose stores follow the realtime feed, without presence or timers."""
        session = self.session(user, **kwargs)
        session.realtime.start()
        return session
