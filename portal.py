"""
Portal resolution

Decides whether a browsing session belongs to the student or the admin
portal and keeps that decision consistent with the signed-in identity.

Signals, first match wins:
1. host prefix (student.example.com, admin.example.com)
2. explicit login path (/login/student) or, on a local host, ?portal=
3. on a local host, the portal preference saved by an earlier resolution
4. the role of the cached identity
5. nothing: Portal.UNKNOWN, the landing page offers the choice
"""
import json
import logging
from typing import Iterable, Mapping, Optional

from pydantic import BaseModel, ValidationError

from database import KeyValueMedium, MediumError
from schemas import Identity, Portal

logger = logging.getLogger(__name__)

DEFAULT_LOCAL_HOSTS = ("localhost", "127.0.0.1", "0.0.0.0")

PROTECTED_PREFIXES = {
    "/student": Portal.STUDENT,
    "/admin": Portal.ADMIN,
}


class Resolution(BaseModel):
    portal: Portal
    source: str


class Notice(BaseModel):
    kind: str = "portal_switched"
    message: str
    previous: Portal
    current: Portal


class Access(BaseModel):
    allowed: bool
    portal: Portal
    redirect: Optional[str] = None
    notice: Optional[Notice] = None


def _parse_portal(value: Optional[str]) -> Optional[Portal]:
    if not value:
        return None
    value = value.strip().lower()
    if value == Portal.STUDENT.value:
        return Portal.STUDENT
    if value == Portal.ADMIN.value:
        return Portal.ADMIN
    return None


def hostname_of(host: str) -> str:
    return (host or "").split(":")[0].strip().lower()


def portal_from_host(host: str) -> Optional[Portal]:
    parts = hostname_of(host).split(".")
    if len(parts) < 2:
        return None
    return _parse_portal(parts[0])


def portal_from_path(path: str) -> Optional[Portal]:
    segments = [s for s in (path or "").split("/") if s]
    if len(segments) >= 2 and segments[0] == "login":
        return _parse_portal(segments[1])
    return None


def portal_for_path(path: str) -> Optional[Portal]:
    """Portal that owns a protected path, if any"""
    for prefix, portal in PROTECTED_PREFIXES.items():
        if path == prefix or (path or "").startswith(prefix + "/"):
            return portal
    return None


class PortalResolver:
    PREFERENCE_KEY = "portal"
    IDENTITY_KEY = "user"

    def __init__(
        self,
        medium: KeyValueMedium,
        key_prefix: str = "schub_",
        session_id: Optional[str] = None,
        local_hosts: Iterable[str] = (),
    ):
        self.medium = medium
        self.key_prefix = key_prefix
        self.session_id = session_id
        self.local_hosts = set(DEFAULT_LOCAL_HOSTS) | {h.lower() for h in local_hosts}
        self.portal = Portal.UNKNOWN
        self._resolution: Optional[Resolution] = None

    def _key(self, name: str) -> str:
        key = f"{self.key_prefix}{name}"
        return f"{key}:{self.session_id}" if self.session_id else key

    def is_local(self, host: str) -> bool:
        hostname = hostname_of(host)
        return hostname in self.local_hosts or hostname.startswith("192.168.")

    # Durable slots

    def stored_preference(self) -> Optional[Portal]:
        try:
            return _parse_portal(self.medium.get(self._key(self.PREFERENCE_KEY)))
        except MediumError as e:
            logger.warning("Could not read portal preference: %s", e)
            return None

    def _save_preference(self, portal: Portal) -> None:
        try:
            self.medium.set(self._key(self.PREFERENCE_KEY), portal.value)
        except MediumError as e:
            logger.error("Could not save portal preference: %s", e)

    def current_identity(self) -> Optional[Identity]:
        try:
            raw = self.medium.get(self._key(self.IDENTITY_KEY))
        except MediumError as e:
            logger.warning("Could not read identity cache: %s", e)
            return None
        if not raw:
            return None
        try:
            return Identity.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            logger.warning("Discarding unreadable identity cache: %s", e)
            return None

    def sign_in(self, identity: Identity) -> None:
        try:
            self.medium.set(self._key(self.IDENTITY_KEY), identity.model_dump_json())
        except MediumError as e:
            logger.error("Could not cache identity %s: %s", identity.id, e)

    def sign_out(self) -> None:
        """Forget the identity; the portal preference stays for the next visit"""
        try:
            self.medium.delete(self._key(self.IDENTITY_KEY))
        except MediumError as e:
            logger.error("Could not clear identity cache: %s", e)

    # Resolution

    def resolve_portal(self, host: str, path: str = "/", query: Optional[Mapping[str, str]] = None,
                       refresh: bool = False) -> Resolution:
        if self._resolution is not None and not refresh:
            return self._resolution

        resolution = self._resolve(host, path, query or {})
        self._resolution = resolution
        self.portal = resolution.portal
        if resolution.portal is not Portal.UNKNOWN:
            self._save_preference(resolution.portal)
        logger.debug("Resolved portal %s from %s", resolution.portal.value, resolution.source)
        return resolution

    def _resolve(self, host: str, path: str, query: Mapping[str, str]) -> Resolution:
        portal = portal_from_host(host)
        if portal:
            return Resolution(portal=portal, source="subdomain")

        local = self.is_local(host)
        portal = portal_from_path(path)
        if portal is None and local:
            portal = _parse_portal(query.get("portal"))
        if portal:
            return Resolution(portal=portal, source="login_path")

        if local:
            portal = self.stored_preference()
            if portal:
                return Resolution(portal=portal, source="preference")

        identity = self.current_identity()
        if identity:
            return Resolution(portal=identity.portal, source="identity")

        return Resolution(portal=Portal.UNKNOWN, source="none")

    def set_portal(self, portal: Portal) -> Resolution:
        """Explicit choice made on the landing page"""
        if portal is Portal.UNKNOWN:
            raise ValueError("Choose the student or the admin portal")
        self.portal = portal
        self._resolution = Resolution(portal=portal, source="choice")
        self._save_preference(portal)
        return self._resolution

    def reconcile(self, identity: Optional[Identity] = None) -> Optional[Notice]:
        """Trust the signed-in role over the resolved portal"""
        identity = identity or self.current_identity()
        if identity is None or self.portal is Portal.UNKNOWN:
            return None
        if identity.portal is self.portal:
            return None
        previous = self.portal
        self.set_portal(identity.portal)
        logger.info("Switched session portal from %s to %s for %s", previous.value, identity.portal.value, identity.id)
        return Notice(
            message=f"You are signed in as {identity.role}; switched to the {identity.portal.value} portal.",
            previous=previous,
            current=identity.portal,
        )

    def enter(self, path: str) -> Access:
        """Gate a protected view. Call once per view entry."""
        identity = self.current_identity()
        if identity is None:
            if self.portal is Portal.UNKNOWN:
                return Access(allowed=False, portal=self.portal, redirect="/")
            return Access(allowed=False, portal=self.portal, redirect=f"/login/{self.portal.value}")

        if self.portal is Portal.UNKNOWN:
            return Access(allowed=False, portal=self.portal, redirect="/")

        notice = self.reconcile(identity)
        owner = portal_for_path(path)
        if owner is not None and owner is not self.portal:
            return Access(allowed=False, portal=self.portal, redirect=f"/{self.portal.value}/dashboard", notice=notice)
        return Access(allowed=True, portal=self.portal, notice=notice)
