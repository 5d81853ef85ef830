"""Authentication flows: login, register, refresh, logout, session validation.

Logout clears local state unconditionally, even when the server call fails,
so the client never stays "logged in" after a failed logout.

Session validation fetches the user's profile. What happens when that call fails
for any reason other than 401 is a policy (Settings.on_validation_network_error):
- fail-open (default): keep the session and grant access
- fail-closed: deny access, the session is kept for a later retry
"""

import logging

from sportmatch.errors import ApiError, Unauthorized
from sportmatch.schemas import AuthResponse, LoginRequest, RegisterRequest
from sportmatch.services.api import SportMatchApi
from sportmatch.services.gateway import RequestGateway
from sportmatch.settings import Settings, get_settings

logger = logging.getLogger("sportmatch")


class AuthService:
    def __init__(self, gateway: RequestGateway, api: SportMatchApi, settings: Settings | None = None):
        self.gateway = gateway
        self.api = api
        self.settings = settings or get_settings()

    async def login(self, email: str, password: str) -> AuthResponse:
        auth = await self.api.login(LoginRequest(email=email, password=password))
        await self.gateway.install_session(auth)
        return auth

    async def register(self, request: RegisterRequest) -> AuthResponse:
        auth = await self.api.register(request)
        await self.gateway.install_session(auth)
        return auth

    async def refresh(self) -> str:
        """Rotate the credential pair. Shares the gateway's single flight."""
        return await self.gateway.renew()

    async def logout(self) -> None:
        try:
            if self.gateway.store.is_authenticated:
                await self.api.logout()
        except ApiError as e:
            logger.warning(f"Server logout failed, clearing local session anyway: {e}")
        finally:
            await self.gateway.end_session("logout")

    async def validate_session(self) -> bool:
        """Check the stored session against the API."""
        store = self.gateway.store
        user = store.user
        if not store.is_authenticated or user is None:
            return False

        try:
            await self.api.get_user_profile(user.id)
        except Unauthorized:
            # The gateway already tried a renewal and ended the session.
            return False
        except ApiError as e:
            fail_open = self.settings.on_validation_network_error == "fail-open"
            logger.warning(
                f"Session validation could not reach the API ({e}); "
                f"{'granting' if fail_open else 'denying'} access"
            )
            return fail_open
        return True
