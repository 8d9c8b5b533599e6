"""
tests/test_session_access.py

Admin resolution, route guard and the identity lifecycle of sessions.
"""

from __future__ import annotations

import unittest
from types import SimpleNamespace
from unittest import mock

from access import AccessPolicy, RouteDecision, guard
from errors import GatewayError
from session import Session, SessionRegistry, SessionState

from portal_fixtures import ADMIN_EMAIL, UNIT_1_NOTES, make_material, make_store

STUDENT = {"uid": "u-asha", "display_name": "Asha", "email": "asha@college.edu"}
OWNER = {"uid": "u-owner", "display_name": "Hub Admin", "email": ADMIN_EMAIL}


class TestAccessPolicy(unittest.TestCase):
    def test_allow_list_overrides_stored_role(self) -> None:
        policy = AccessPolicy([ADMIN_EMAIL])
        self.assertTrue(policy.is_admin(ADMIN_EMAIL, "student"))
        self.assertTrue(policy.is_admin(ADMIN_EMAIL.upper(), None))
        self.assertFalse(policy.is_admin("asha@college.edu", "student"))
        self.assertTrue(policy.is_admin("asha@college.edu", "admin"))

    def test_empty_allow_list(self) -> None:
        policy = AccessPolicy(["", "  "])
        self.assertFalse(policy.is_admin("", "student"))
        self.assertFalse(policy.is_admin(None, None))


class TestGuard(unittest.TestCase):
    def _session(self, signed_in=True, banned=False, admin=False):
        return SimpleNamespace(signed_in=signed_in, is_banned=banned, is_admin=admin)

    def test_decisions(self) -> None:
        self.assertEqual(guard(None), RouteDecision.SIGN_IN)
        self.assertEqual(guard(self._session(signed_in=False)), RouteDecision.SIGN_IN)
        self.assertEqual(guard(self._session(), loading=True), RouteDecision.LOADING)
        self.assertEqual(guard(self._session()), RouteDecision.ALLOW)
        self.assertEqual(guard(self._session(), "admin"), RouteDecision.HOME)
        self.assertEqual(guard(self._session(admin=True), "admin"), RouteDecision.ALLOW)

    def test_ban_wins_over_admin(self) -> None:
        banned_admin = self._session(banned=True, admin=True)
        self.assertEqual(guard(banned_admin), RouteDecision.RESTRICTED)
        self.assertEqual(guard(banned_admin, "admin"), RouteDecision.RESTRICTED)


class TestSessionLifecycle(unittest.TestCase):
    def setUp(self) -> None:
        self.store = make_store()
        self.registry = SessionRegistry(self.store)

    def _login(self, identity):
        result = self.registry.login(identity)
        self.assertTrue(result.success, result.error)
        return result.id, self.registry.get(result.id)

    def test_new_session_starts_unknown(self) -> None:
        session = Session(self.store)
        self.assertEqual(session.state, SessionState.UNKNOWN)
        session.begin_sign_in()
        self.assertEqual(session.state, SessionState.AUTHENTICATING)
        self.assertFalse(session.signed_in)

    def test_student_sign_in(self) -> None:
        _, session = self._login(STUDENT)
        self.assertEqual(session.state, SessionState.ACTIVE)
        self.assertEqual(session.role, "student")
        self.assertFalse(session.is_admin)

    def test_admin_email_with_student_role(self) -> None:
        _, session = self._login(OWNER)
        self.assertEqual(session.role, "student")
        self.assertTrue(session.is_admin)

    def test_promotion_applies_without_new_login(self) -> None:
        _, session = self._login(STUDENT)
        self.store.set_user_role("u-asha", "admin")
        self.assertTrue(session.is_admin)
        self.store.set_user_role("u-asha", "student")
        self.assertFalse(session.is_admin)

    def test_ban_is_followed_live_and_rechecked_on_sign_in(self) -> None:
        token, session = self._login(OWNER)
        self.store.set_user_banned("u-owner", True)
        self.assertEqual(session.state, SessionState.BANNED)
        self.assertEqual(guard(session, "admin"), RouteDecision.RESTRICTED)

        self.assertTrue(self.registry.logout(token).success)
        self.assertEqual(session.state, SessionState.ANONYMOUS)
        self.assertIsNone(self.registry.get(token))

        _, again = self._login(OWNER)
        self.assertEqual(again.state, SessionState.BANNED)

        self.store.set_user_banned("u-owner", False)
        self.assertEqual(again.state, SessionState.ACTIVE)
        self.assertEqual(guard(again, "admin"), RouteDecision.ALLOW)

    def test_signed_out_session_stops_following(self) -> None:
        token, session = self._login(STUDENT)
        self.registry.logout(token)
        self.store.set_user_banned("u-asha", True)
        self.assertEqual(session.state, SessionState.ANONYMOUS)

    def test_failed_sign_in_returns_failure(self) -> None:
        with mock.patch.object(self.store, "resolve_identity", side_effect=GatewayError("provider unavailable")):
            result = self.registry.login(STUDENT)
        self.assertFalse(result.success)
        self.assertEqual(result.error, "provider unavailable")

    def test_invalid_identity(self) -> None:
        result = self.registry.login({"uid": "u-x", "email": "not-an-email"})
        self.assertFalse(result.success)
        self.assertEqual(result.code, "validation")

    def test_logout_unknown_token(self) -> None:
        self.assertEqual(self.registry.logout("nope").code, "not_found")
        self.assertEqual(self.registry.logout(None).code, "not_found")


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestSessionExpiry(unittest.TestCase):
    def setUp(self) -> None:
        self.store = make_store()
        self.clock = _Clock()
        self.registry = SessionRegistry(self.store, idle_timeout=60, max_age=600, clock=self.clock)

    def _login(self, identity) -> str:
        result = self.registry.login(identity)
        self.assertTrue(result.success, result.error)
        return result.id

    def test_idle_session_expires_and_drops_listener(self) -> None:
        token = self._login(STUDENT)
        session = self.registry.get(token)
        self.assertEqual(len(self.store._user_listeners), 1)

        self.clock.now += 61
        self.assertIsNone(self.registry.get(token))
        self.assertEqual(session.state, SessionState.ANONYMOUS)
        self.assertEqual(self.store._user_listeners, [])
        self.assertEqual(self.registry.logout(token).code, "not_found")

    def test_requests_keep_session_alive_until_max_age(self) -> None:
        token = self._login(STUDENT)
        for _ in range(12):
            self.clock.now += 50
            self.assertIsNotNone(self.registry.get(token))
        self.clock.now += 50
        self.assertIsNone(self.registry.get(token))

    def test_abandoned_logins_are_purged(self) -> None:
        for n in range(50):
            self._login({"uid": f"u{n}", "email": f"u{n}@college.edu"})
        self.assertEqual(len(self.store._user_listeners), 50)

        self.clock.now += 61
        self._login(STUDENT)
        self.assertEqual(len(self.store._user_listeners), 1)
        self.assertEqual(self.registry.purge_expired(), 0)


class TestRecentHistory(unittest.TestCase):
    def test_capped_most_recent_first_without_repeats(self) -> None:
        store = make_store()
        store.add_subject({"name": "C Programming", "sem_id": 1})
        session = Session(store, history_limit=10)
        for n in range(12):
            session.record_view(make_material(f"m{n}", f"Notes {n}"))
        self.assertEqual(len(session.recently_viewed), 10)
        self.assertEqual(session.recently_viewed[0].material_id, "m11")

        session.record_view(make_material("m5", "Notes 5"))
        self.assertEqual(session.recently_viewed[0].material_id, "m5")
        self.assertEqual([e.material_id for e in session.recently_viewed].count("m5"), 1)
        self.assertEqual(session.recently_viewed[0].subject, "Unknown")

    def test_download_history_uses_subject_name(self) -> None:
        store = make_store()
        subject_id = store.add_subject({"name": "C Programming", "sem_id": 1}).id
        material_id = store.add_material({**UNIT_1_NOTES, "subject_id": subject_id}).id
        session = Session(store)
        session.record_download(store.get_material(material_id))
        [entry] = session.recently_downloaded
        self.assertEqual(entry.subject, "C Programming")
        self.assertEqual(entry.title, "Unit 1 Notes")
        self.assertEqual(session.recently_viewed, [])


if __name__ == "__main__":
    unittest.main()
