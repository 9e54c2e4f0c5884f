"""Login, logout and session restore on top of the resource client."""

import logging

from quiz_client.core.errors import ApiError, AuthExpired, QuizClientError
from quiz_client.schemas.common import User
from quiz_client.services.api_client import ResourceClient

logger = logging.getLogger(__name__)


class AuthService:
    """Explicit login and logout. Besides the renewal gate, the only writer of the credential store."""

    def __init__(self, client: ResourceClient) -> None:
        self.client = client
        self.credentials = client.context.credentials
        self.user: User | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None

    async def login(self, username: str, password: str) -> User:
        """Store a fresh credential pair and load the user profile.

        Raises:
            Unauthorized: wrong username or password.
            QuizClientError: any other failure; stored credentials are cleared.
        """
        try:
            pair = await self.client.obtain_token_pair(username, password)
            self.credentials.save_tokens(pair.access, pair.refresh)
            self.user = await self.client.get_current_user()
        except QuizClientError:
            self.logout()
            raise
        logger.info("Logged in as %s", self.user.username)
        return self.user

    def logout(self) -> None:
        self.credentials.clear_tokens()
        self.user = None

    async def check_auth(self) -> User | None:
        """Restore a session from stored credentials, renewing once if needed.

        Returns the user, or None (with credentials cleared) when the stored
        pair is unusable. Network failures propagate: they say nothing
        about the credentials.
        """
        if self.credentials.access_token is None and self.credentials.refresh_token is None:
            self.user = None
            return None
        try:
            self.user = await self.client.get_current_user()
        except (AuthExpired, ApiError) as e:
            logger.info("Stored credentials rejected: %s", e)
            self.logout()
            return None
        return self.user
