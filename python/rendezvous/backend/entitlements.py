"""Feature entitlement checks for calls."""

from rendezvous.backend.base import EntitlementChecker, FeatureAccess, IdentityProvider


class AuthenticatedEntitlements(EntitlementChecker):
    """Voice and video calls are available on every tier to signed-in users."""

    def __init__(self, identity: IdentityProvider):
        self._identity = identity

    async def _signed_in(self) -> FeatureAccess:
        if await self._identity.current_user() is None:
            return FeatureAccess(allowed=False, reason="Authentication required")
        return FeatureAccess(allowed=True)

    async def can_access_video_call(self) -> FeatureAccess:
        return await self._signed_in()

    async def can_access_audio_call(self) -> FeatureAccess:
        return await self._signed_in()
