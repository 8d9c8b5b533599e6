"""
tests/test_api.py

HTTP surface: sign-in, route guarding, moderation flow and file opening.
"""

from __future__ import annotations

import time
import unittest
from unittest import mock

from fastapi.testclient import TestClient

from main import app, attach_store
from schemas import Result

from portal_fixtures import ADMIN_EMAIL, DRIVE_LINK, UNIT_1_NOTES, make_store


class ApiTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.store = make_store()
        attach_store(app, self.store)
        self.client = TestClient(app)
        self.student = self._login("u-asha", "asha@college.edu")
        self.admin = self._login("u-owner", ADMIN_EMAIL)

    def tearDown(self) -> None:
        app.state.sessions.close()
        self.store.close()

    def _login(self, uid: str, email: str) -> dict:
        response = self.client.post("/auth/login", json={"uid": uid, "email": email, "display_name": uid})
        self.assertEqual(response.status_code, 200, response.text)
        return {"X-Session-Token": response.json()["token"]}

    def _submit(self, **overrides) -> str:
        response = self.client.post("/materials", json={**UNIT_1_NOTES, **overrides}, headers=self.student)
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()["id"]

    def _approved(self, **overrides) -> str:
        material_id = self._submit(**overrides)
        response = self.client.post(f"/materials/{material_id}/approve", headers=self.admin)
        self.assertEqual(response.status_code, 200, response.text)
        return material_id


class TestAuth(ApiTestCase):
    def test_sign_in_required(self) -> None:
        self.assertEqual(self.client.get("/materials").status_code, 401)
        self.assertEqual(self.client.get("/materials", headers={"X-Session-Token": "bogus"}).status_code, 401)

    def test_me(self) -> None:
        body = self.client.get("/auth/me", headers=self.admin).json()
        self.assertEqual(body["user"]["role"], "student")
        self.assertTrue(body["is_admin"])
        self.assertEqual(body["state"], "active")
        self.assertFalse(self.client.get("/auth/me", headers=self.student).json()["is_admin"])

    def test_invalid_login(self) -> None:
        response = self.client.post("/auth/login", json={"uid": "u-x", "email": "nope"})
        self.assertEqual(response.status_code, 422)

    def test_logout(self) -> None:
        self.assertTrue(self.client.post("/auth/logout", headers=self.student).json()["success"])
        self.assertEqual(self.client.get("/materials", headers=self.student).status_code, 401)
        self.assertEqual(self.client.post("/auth/logout", headers=self.student).status_code, 404)

    def test_banned_user_sees_restricted_view(self) -> None:
        response = self.client.post("/users/u-asha/ban", json={"banned": True}, headers=self.admin)
        self.assertEqual(response.status_code, 200, response.text)

        response = self.client.get("/materials", headers=self.student)
        self.assertEqual(response.status_code, 403)
        detail = response.json()["detail"]
        self.assertEqual(detail["view"], "restricted")
        self.assertEqual(detail["actions"], ["sign_out"])
        self.assertEqual(self.client.get("/auth/me", headers=self.student).json()["state"], "banned")
        self.assertEqual(self.client.post("/auth/logout", headers=self.student).status_code, 200)

    def test_expired_session_needs_sign_in(self) -> None:
        sessions = app.state.sessions
        now = time.monotonic()
        sessions.clock = lambda: now + sessions.idle_timeout + 1
        self.assertEqual(self.client.get("/materials", headers=self.student).status_code, 401)
        self.assertEqual(self.client.get("/auth/me", headers=self.admin).status_code, 401)
        self.assertEqual(self.store._user_listeners, [])

    def test_admin_routes_need_admin(self) -> None:
        self.assertEqual(self.client.get("/materials/pending", headers=self.student).status_code, 403)
        self.assertEqual(self.client.get("/users", headers=self.student).status_code, 403)

    def test_promotion_grants_admin_routes(self) -> None:
        self.client.post("/users/u-asha/role", json={"role": "admin"}, headers=self.admin)
        self.assertEqual(self.client.get("/materials/pending", headers=self.student).status_code, 200)

    def test_unknown_role_rejected(self) -> None:
        response = self.client.post("/users/u-asha/role", json={"role": "moderator"}, headers=self.admin)
        self.assertEqual(response.status_code, 422)


class TestModeration(ApiTestCase):
    def test_submission_is_hidden_until_approved(self) -> None:
        material_id = self._submit()
        self.assertEqual(self.client.get("/materials", headers=self.student).json(), [])
        self.assertEqual(self.client.get(f"/materials/{material_id}", headers=self.student).status_code, 404)

        pending = self.client.get("/materials/pending", headers=self.admin).json()
        self.assertEqual([m["id"] for m in pending], [material_id])

        self.client.post(f"/materials/{material_id}/approve", headers=self.admin)
        listed = self.client.get("/materials", headers=self.student).json()
        self.assertEqual([m["title"] for m in listed], ["Unit 1 Notes"])
        self.assertEqual(self.client.get("/materials/pending", headers=self.admin).json(), [])

    def test_students_cannot_see_pending_via_status(self) -> None:
        self._submit()
        response = self.client.get("/materials", params={"status": "Pending"}, headers=self.student)
        self.assertEqual(response.json(), [])
        response = self.client.get("/materials", params={"status": "Pending"}, headers=self.admin)
        self.assertEqual(len(response.json()), 1)

    def test_duplicate_submission(self) -> None:
        self._submit()
        response = self.client.post("/materials", json=UNIT_1_NOTES, headers=self.student)
        self.assertEqual(response.status_code, 409)
        self.assertIn("already exists", response.json()["detail"])

    def test_blank_title(self) -> None:
        response = self.client.post("/materials", json={**UNIT_1_NOTES, "title": "   "}, headers=self.student)
        self.assertEqual(response.status_code, 422)
        self.assertEqual(self.store.materials, ())

    def test_control_characters_in_title_do_not_break_sorting(self) -> None:
        self._approved()
        material_id = self._approved(title="Evil\x00")
        self.assertEqual(self.store.get_material(material_id).title, "Evil")
        response = self.client.get("/materials", params={"sort": "title-asc"}, headers=self.student)
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual([m["title"] for m in response.json()], ["Evil", "Unit 1 Notes"])

    def test_approve_again_is_a_no_op(self) -> None:
        material_id = self._approved()
        approved_at = self.store.get_material(material_id).approved_at
        response = self.client.post(f"/materials/{material_id}/approve", headers=self.admin)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.store.get_material(material_id).approved_at, approved_at)

    def test_student_cannot_approve(self) -> None:
        material_id = self._submit()
        response = self.client.post(f"/materials/{material_id}/approve", headers=self.student)
        self.assertEqual(response.status_code, 403)
        self.assertEqual(self.store.get_material(material_id).status, "Pending")

    def test_reject_removes_submission(self) -> None:
        material_id = self._submit()
        self.assertEqual(self.client.post(f"/materials/{material_id}/reject", headers=self.admin).status_code, 200)
        self.assertIsNone(self.store.get_material(material_id))
        self.assertEqual(self.client.delete(f"/materials/{material_id}", headers=self.admin).status_code, 404)

    def test_edit_material(self) -> None:
        material_id = self._approved()
        response = self.client.patch(f"/materials/{material_id}", json={"title": "Unit 1 Notes (rev)"},
                                     headers=self.admin)
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(self.store.get_material(material_id).title, "Unit 1 Notes (rev)")


class TestOpeningFiles(ApiTestCase):
    def test_view_and_download(self) -> None:
        material_id = self._approved()
        body = self.client.post(f"/materials/{material_id}/view", headers=self.student).json()
        self.assertEqual(body, {"link": DRIVE_LINK, "counted": True})
        body = self.client.post(f"/materials/{material_id}/download", headers=self.student).json()
        self.assertEqual(body["link"], "https://docs.google.com/uc?export=download&id=ABC123")

        material = self.store.get_material(material_id)
        self.assertEqual((material.views, material.downloads), (1, 1))
        stats = self.client.get("/stats", headers=self.student).json()
        self.assertEqual(stats["total_views"], 1)

        history = self.client.get("/me/history", headers=self.student).json()
        self.assertEqual(history["viewed"][0]["material_id"], material_id)
        self.assertEqual(history["downloaded"][0]["title"], "Unit 1 Notes")
        self.assertEqual(self.client.get("/me/history", headers=self.admin).json()["viewed"], [])

    def test_link_returned_when_counter_fails(self) -> None:
        material_id = self._approved()
        failed = Result.fail("Failed to increment view count")
        with mock.patch.object(self.store, "increment_view", return_value=failed):
            body = self.client.post(f"/materials/{material_id}/view", headers=self.student).json()
        self.assertEqual(body, {"link": DRIVE_LINK, "counted": False})

    def test_reset_analytics(self) -> None:
        material_id = self._approved()
        self.client.post(f"/materials/{material_id}/view", headers=self.student)
        self.assertEqual(self.client.post("/materials/reset-analytics", headers=self.admin).status_code, 200)
        self.assertEqual(self.store.get_material(material_id).views, 0)


class TestCatalog(ApiTestCase):
    def test_semesters_and_subjects(self) -> None:
        response = self.client.post("/subjects", json={"name": "C Programming", "sem_id": 1}, headers=self.admin)
        self.assertEqual(response.status_code, 200, response.text)
        semesters = self.client.get("/semesters", headers=self.student).json()
        self.assertEqual([s["id"] for s in semesters], ["1", "2", "3", "4"])
        self.assertEqual(semesters[0]["subjects"], 1)
        subjects = self.client.get("/semesters/1/subjects", headers=self.student).json()
        self.assertEqual([s["name"] for s in subjects], ["C Programming"])
        self.assertEqual(self.client.get("/semesters/9/subjects", headers=self.student).status_code, 404)

    def test_subject_with_materials_cannot_be_deleted(self) -> None:
        subject_id = self.client.post("/subjects", json={"name": "C Programming", "sem_id": 1},
                                      headers=self.admin).json()["id"]
        material_id = self._submit(subject_id=subject_id)

        response = self.client.delete(f"/subjects/{subject_id}", headers=self.admin)
        self.assertEqual(response.status_code, 400)
        self.client.delete(f"/materials/{material_id}", headers=self.admin)
        self.assertEqual(self.client.delete(f"/subjects/{subject_id}", headers=self.admin).status_code, 200)

    def test_subject_page_lists_approved_only(self) -> None:
        subject_id = self.client.post("/subjects", json={"name": "C Programming", "sem_id": 1},
                                      headers=self.admin).json()["id"]
        approved = self._approved(subject_id=subject_id)
        self._submit(subject_id=subject_id, title="Unit 2 Notes")
        listed = self.client.get(f"/subjects/{subject_id}/materials", headers=self.student).json()
        self.assertEqual([m["id"] for m in listed], [approved])
        self.assertEqual(self.client.get("/subjects/missing/materials", headers=self.student).status_code, 404)

    def test_deep_search_by_subject_name(self) -> None:
        subject_id = self.client.post("/subjects", json={"name": "Discrete Maths", "sem_id": 1},
                                      headers=self.admin).json()["id"]
        self._approved(subject_id=subject_id)
        params = {"search": "discrete"}
        self.assertEqual(self.client.get("/materials", params=params, headers=self.student).json(), [])
        params["deep_search"] = "true"
        self.assertEqual(len(self.client.get("/materials", params=params, headers=self.student).json()), 1)


class TestReports(ApiTestCase):
    def test_report_flow(self) -> None:
        material_id = self._approved()
        response = self.client.post("/reports", json={"material_id": material_id, "reason": "Broken Link"},
                                    headers=self.student)
        self.assertEqual(response.status_code, 200, response.text)
        report_id = response.json()["id"]

        body = self.client.get("/reports", headers=self.admin).json()
        self.assertEqual(body["unresolved"], 1)
        self.assertEqual(body["reports"][0]["reason"], "Broken Link")
        self.assertEqual(body["reports"][0]["subject"], "Unknown")

        self.client.post(f"/reports/{report_id}/resolve", headers=self.admin)
        self.assertEqual(self.client.get("/reports", headers=self.admin).json()["unresolved"], 0)
        self.client.delete(f"/reports/{report_id}", headers=self.admin)
        self.assertEqual(self.client.get("/reports", headers=self.admin).json()["reports"], [])

    def test_report_for_missing_material(self) -> None:
        response = self.client.post("/reports", json={"material_id": "gone", "reason": "Other"},
                                    headers=self.student)
        self.assertEqual(response.status_code, 404)

    def test_pending_material_reportable_by_admin_only(self) -> None:
        material_id = self._submit()
        report = {"material_id": material_id, "reason": "Broken Link"}
        self.assertEqual(self.client.post("/reports", json=report, headers=self.student).status_code, 404)
        self.assertEqual(self.client.post("/reports", json=report, headers=self.admin).status_code, 200)


class TestMeta(ApiTestCase):
    def test_health(self) -> None:
        body = self.client.get("/test").json()
        self.assertEqual(body["connection_status"], "Connected")
        self.assertIn("users", body["collections"])
        self.assertFalse(body["loading"])

    def test_restricted_page(self) -> None:
        self.assertEqual(self.client.get("/restricted").json()["view"], "restricted")


if __name__ == "__main__":
    unittest.main()
