"""
Identity provider

Credential checks belong to the hosted auth service; the portal only needs
someone to hand it an Identity. DemoIdentityProvider stands in for that
service with the two sample accounts used on the login screens.
"""
import hmac
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

from schemas import Identity, Portal

logger = logging.getLogger(__name__)

SAMPLE_USERS: Dict[Portal, Identity] = {
    Portal.STUDENT: Identity(
        id="S-2025-00290-001",
        name="Kamugisha Isaac",
        email="S202500290001@smark.schub.com",
        role="student",
        schoolId="school-1",
    ),
    Portal.ADMIN: Identity(
        id="A-2025-00290-001",
        name="Christopher M.",
        email="chris.m@smack.schub.com",
        role="admin",
        schoolId="school-1",
    ),
}


class IdentityProvider(ABC):
    @abstractmethod
    async def authenticate(self, email: str, password: str, portal: Portal) -> Optional[Identity]:
        """Return the identity for valid credentials, None otherwise"""


class DemoIdentityProvider(IdentityProvider):
    def __init__(self, password: str = "password", users: Optional[Dict[Portal, Identity]] = None):
        self.password = password
        self.users = users or SAMPLE_USERS

    async def authenticate(self, email, password, portal):
        user = self.users.get(portal)
        if user is None:
            return None
        if user.email.lower() != (email or "").strip().lower():
            logger.info("Rejected sign-in for unknown %s account", portal.value)
            return None
        if not hmac.compare_digest((password or "").encode(), self.password.encode()):
            logger.info("Rejected sign-in for %s: wrong password", user.id)
            return None
        return user.model_copy()
