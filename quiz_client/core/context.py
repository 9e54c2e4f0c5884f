"""Process-wide session context, built once at startup and passed by reference."""

import logging
from dataclasses import dataclass, field

from quiz_client.config import Settings, settings as default_settings
from quiz_client.core.credentials import CredentialStore, build_credential_store
from quiz_client.services.renewal import RenewalGate

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SessionContext:
    """Owns the single credential store and the single renewal gate."""

    settings: Settings
    credentials: CredentialStore
    gate: RenewalGate = field(init=False)

    def __post_init__(self) -> None:
        self.gate = RenewalGate(self.credentials)


def build_session_context(
    settings: Settings | None = None,
    credentials: CredentialStore | None = None,
) -> SessionContext:
    settings = settings or default_settings
    store = credentials or build_credential_store(settings)
    logger.debug("Session context initialised (credential backend: %s)", type(store).__name__)
    return SessionContext(settings=settings, credentials=store)
