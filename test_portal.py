import pytest

from database import MediumError, MemoryMedium
from portal import PortalResolver, portal_for_path, portal_from_host, portal_from_path
from schemas import Identity, Portal

ADMIN = Identity(id="A-1", email="chris.m@smack.schub.com", role="admin", schoolId="school-1")
STUDENT = Identity(id="S-1", email="s@smark.schub.com", role="student", schoolId="school-1")


@pytest.fixture
def resolver(medium):
    return PortalResolver(medium)


def fresh(medium):
    return PortalResolver(medium)


def test_host_prefix_parsing():
    assert portal_from_host("student.schub.com") is Portal.STUDENT
    assert portal_from_host("ADMIN.schub.com:8080") is Portal.ADMIN
    assert portal_from_host("student.localhost") is Portal.STUDENT
    assert portal_from_host("schub.com") is None
    assert portal_from_host("teacher.schub.com") is None
    assert portal_from_host("localhost") is None


def test_login_path_parsing():
    assert portal_from_path("/login/admin") is Portal.ADMIN
    assert portal_from_path("/login/student/") is Portal.STUDENT
    assert portal_from_path("/login") is None
    assert portal_for_path("/admin/students") is Portal.ADMIN
    assert portal_for_path("/student") is Portal.STUDENT
    assert portal_for_path("/administrator") is None


def test_subdomain_beats_stored_preference(medium):
    medium.set("schub_portal", "admin")
    resolution = fresh(medium).resolve_portal("student.schub.com")
    assert resolution.portal is Portal.STUDENT
    assert resolution.source == "subdomain"


def test_resolution_is_deterministic(medium):
    medium.set("schub_portal", "admin")
    results = {fresh(medium).resolve_portal("student.schub.com", "/login/admin").portal for _ in range(5)}
    assert results == {Portal.STUDENT}


def test_login_path_beats_preference(medium):
    medium.set("schub_portal", "student")
    resolution = fresh(medium).resolve_portal("localhost:5173", "/login/admin")
    assert resolution.portal is Portal.ADMIN
    assert resolution.source == "login_path"


def test_portal_query_only_counts_on_local_hosts(medium):
    assert fresh(medium).resolve_portal("localhost", "/", {"portal": "admin"}).portal is Portal.ADMIN
    other = MemoryMedium()
    assert fresh(other).resolve_portal("schub.com", "/", {"portal": "admin"}).portal is Portal.UNKNOWN


def test_preference_only_consulted_locally(medium):
    medium.set("schub_portal", "admin")
    assert fresh(medium).resolve_portal("localhost").source == "preference"
    assert fresh(medium).resolve_portal("192.168.1.20").portal is Portal.ADMIN
    assert fresh(medium).resolve_portal("schub.com").portal is Portal.UNKNOWN


def test_extra_local_hosts(medium):
    medium.set("schub_portal", "student")
    resolver = PortalResolver(medium, local_hosts=["dev.internal"])
    assert resolver.resolve_portal("dev.internal").portal is Portal.STUDENT


def test_identity_role_used_when_nothing_else_matches(resolver):
    resolver.sign_in(ADMIN)
    resolution = resolver.resolve_portal("schub.com")
    assert resolution.portal is Portal.ADMIN
    assert resolution.source == "identity"


def test_unknown_without_any_signal(resolver, medium):
    assert resolver.resolve_portal("schub.com").portal is Portal.UNKNOWN
    assert medium.get("schub_portal") is None


def test_resolution_is_cached_for_the_session(resolver, medium):
    assert resolver.resolve_portal("student.schub.com").portal is Portal.STUDENT
    assert resolver.resolve_portal("admin.schub.com").portal is Portal.STUDENT
    assert resolver.resolve_portal("admin.schub.com", refresh=True).portal is Portal.ADMIN
    assert medium.get("schub_portal") == "admin"


def test_set_portal_writes_preference(resolver, medium):
    resolver.set_portal(Portal.ADMIN)
    assert resolver.portal is Portal.ADMIN
    assert medium.get("schub_portal") == "admin"
    with pytest.raises(ValueError):
        resolver.set_portal(Portal.UNKNOWN)


def test_reconcile_switches_to_identity_role(resolver):
    resolver.resolve_portal("student.schub.com")
    resolver.sign_in(ADMIN)

    notice = resolver.reconcile()

    assert resolver.portal is Portal.ADMIN
    assert notice.previous is Portal.STUDENT
    assert notice.current is Portal.ADMIN
    assert resolver.reconcile() is None


def test_enter_without_identity_redirects_to_login(resolver):
    resolver.resolve_portal("admin.schub.com")
    access = resolver.enter("/admin/dashboard")
    assert not access.allowed
    assert access.redirect == "/login/admin"


def test_enter_with_unknown_portal_stays_on_landing(resolver):
    resolver.resolve_portal("schub.com")
    access = resolver.enter("/admin/dashboard")
    assert not access.allowed
    assert access.redirect == "/"


def test_enter_with_mismatched_role_switches_once(resolver):
    resolver.resolve_portal("student.schub.com")
    resolver.sign_in(ADMIN)

    access = resolver.enter("/admin/students")

    assert access.allowed
    assert access.portal is Portal.ADMIN
    assert access.notice is not None
    assert resolver.enter("/admin/students").notice is None


def test_enter_other_portal_path_redirects_to_own_dashboard(resolver):
    resolver.resolve_portal("student.schub.com")
    resolver.sign_in(STUDENT)
    access = resolver.enter("/admin/students")
    assert not access.allowed
    assert access.redirect == "/student/dashboard"


def test_sign_out_keeps_preference(resolver, medium):
    resolver.resolve_portal("admin.schub.com")
    resolver.sign_in(ADMIN)
    resolver.sign_out()
    assert resolver.current_identity() is None
    assert medium.get("schub_portal") == "admin"
    assert fresh(medium).resolve_portal("localhost").portal is Portal.ADMIN


def test_session_ids_scope_slots(medium):
    one = PortalResolver(medium, session_id="one")
    two = PortalResolver(medium, session_id="two")
    one.sign_in(ADMIN)
    assert two.current_identity() is None
    assert medium.get("schub_user:one") is not None


def test_unreadable_identity_cache_is_ignored(resolver, medium):
    medium.set("schub_user", "{broken")
    assert resolver.current_identity() is None


def test_medium_errors_do_not_escape(monkeypatch, resolver, medium):
    def boom(*args):
        raise MediumError("unavailable")

    monkeypatch.setattr(medium, "get", boom)
    monkeypatch.setattr(medium, "set", boom)
    assert resolver.resolve_portal("localhost").portal is Portal.UNKNOWN
    resolver.sign_in(ADMIN)
    assert resolver.current_identity() is None
