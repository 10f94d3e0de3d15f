"""Credential vault access.

Encryption at rest and OAuth refresh belong to the vault service; the
turn pipeline asks for a decrypted ``CredentialSet`` per (user, family)
and treats every failure as the failure of the tool call that needed it.
"""

from __future__ import annotations

import logging
from typing import Protocol

from agent_workspace.errors import CredentialsNotFoundError
from agent_workspace.models import CredentialSet

logger = logging.getLogger(__name__)

GOOGLE = "google"
STOREFRONT = "woocommerce"


class CredentialVault(Protocol):
    async def get_credentials(self, user_id: str, family: str) -> CredentialSet:
        """Return usable credentials or raise a ``CredentialError``."""
        ...


class InMemoryCredentialVault:
    def __init__(self) -> None:
        self._sets: dict[tuple[str, str], CredentialSet] = {}

    def put(self, user_id: str, credentials: CredentialSet) -> None:
        self._sets[(user_id, credentials.family)] = credentials

    def remove(self, user_id: str, family: str) -> bool:
        return self._sets.pop((user_id, family), None) is not None

    async def get_credentials(self, user_id: str, family: str) -> CredentialSet:
        creds = self._sets.get((user_id, family))
        if creds is None:
            logger.info("No %s credentials for user %s", family, user_id)
            raise CredentialsNotFoundError(family)
        creds.ensure_usable()
        return creds
