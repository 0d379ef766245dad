"""Identity provider holding a fixed signed-in user."""

from rendezvous.backend.base import IdentityProvider
from rendezvous.schemas.user import User


class StaticIdentityProvider(IdentityProvider):
    """Returns whichever user was last signed in; None after sign_out()."""

    def __init__(self, user: User | None = None):
        self._user = user

    async def current_user(self) -> User | None:
        return self._user

    def sign_in(self, user: User) -> None:
        self._user = user

    def sign_out(self) -> None:
        self._user = None
