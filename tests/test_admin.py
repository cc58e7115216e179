"""
Tests for admin endpoints.
"""
import csv
import io

import pytest
from fastapi.testclient import TestClient

from conftest import register


def label_as(client, sentence_id, property_id, label="n"):
    response = client.put("/api/labels", json={
        "sentence_id": sentence_id, "property_id": property_id, "label": label,
    })
    assert response.status_code == 200
    if response.json()["created"]:
        client.post("/api/rpc/increment_label_count", json={"sentence_id": sentence_id})


class TestAdminAccess:
    """Tests for admin access control."""

    def test_admin_requires_auth(self, fresh_client: TestClient):
        """Test admin endpoints require authentication."""
        response = fresh_client.get("/api/admin/stats")
        assert response.status_code == 401

    def test_admin_requires_admin_role(self, auth_client: tuple[TestClient, dict]):
        """Test admin endpoints require admin role."""
        client, user = auth_client
        assert user["role"] == "annotator"
        assert client.get("/api/admin/stats").status_code == 403
        assert client.get("/api/admin/export").status_code == 403
        assert client.put("/api/admin/properties/1", json={"is_active": False}).status_code == 403

    def test_existing_user_promoted_on_startup(self, fresh_client: TestClient):
        import app as app_module

        with app_module.get_db() as conn:
            conn.execute(
                "INSERT INTO users (email, password_hash, role) VALUES (?, ?, 'annotator')",
                ("admin@test.local", app_module.hash_password("adminpass123")),
            )
        app_module.init_db()

        fresh_client.post("/api/auth/login", json={"email": "admin@test.local", "password": "adminpass123"})
        assert fresh_client.get("/api/me").json()["role"] == "admin"


class TestAdminStats:
    """Tests for /api/admin/stats."""

    def test_empty_stats(self, admin_client):
        client, _ = admin_client
        data = client.get("/api/admin/stats").json()
        assert data["total_sentences"] == 0
        assert data["coverage"] == 0
        assert data["top_users"] == []

    def test_stats(self, admin_client, seeded):
        client, admin = admin_client
        import app as app_module

        pid = seeded["properties"]["capital"]
        ids = seeded["sentences"]["capital"]
        label_as(client, ids[0], pid)
        label_as(client, ids[1], pid)

        with TestClient(app_module.app) as other:
            register(other, "second@test.local")
            label_as(other, ids[0], pid)

        data = client.get("/api/admin/stats").json()
        assert data["total_sentences"] == 15
        assert data["labeled_sentences"] == 2
        assert data["coverage"] == round(2 / 15 * 100)
        assert data["redundancy"] == {"1": 2, "2": 1, "3": 0, "5": 0}
        top = data["top_users"]
        assert top[0]["user_id"] == admin["id"]
        assert top[0]["count"] == 2
        assert top[0]["is_current_user"] is True
        assert top[1]["count"] == 1


class TestPropertyAdmin:
    """Tests for PUT /api/admin/properties/{id}."""

    def test_hide_property(self, admin_client, seeded):
        client, _ = admin_client
        pid = seeded["properties"]["capital"]
        response = client.put(f"/api/admin/properties/{pid}", json={"is_active": False})
        assert response.status_code == 200
        assert response.json()["is_active"] is False

        # Admins still see hidden properties
        listed = {p["id"]: p for p in client.get("/api/properties").json()["properties"]}
        assert listed[pid]["is_active"] is False

    def test_hidden_property_invisible_to_annotators(self, admin_client, second_client, seeded):
        client, _ = admin_client
        other, _ = second_client
        pid = seeded["properties"]["capital"]
        client.put(f"/api/admin/properties/{pid}", json={"is_active": False})
        names = [p["name"] for p in other.get("/api/properties").json()["properties"]]
        assert "capital" not in names

    def test_edit_description(self, admin_client, seeded):
        client, _ = admin_client
        pid = seeded["properties"]["birthPlace"]
        response = client.put(f"/api/admin/properties/{pid}", json={"description": "Where a person was born."})
        assert response.json()["description"] == "Where a person was born."
        assert response.json()["is_active"] is True

    def test_update_missing_property(self, admin_client):
        client, _ = admin_client
        assert client.put("/api/admin/properties/9999", json={"is_active": True}).status_code == 404


class TestExport:
    """Tests for /api/admin/export."""

    @pytest.fixture
    def labeled(self, admin_client, seeded):
        client, _ = admin_client
        import app as app_module

        cap = seeded["properties"]["capital"]
        birth = seeded["properties"]["birthPlace"]
        c_ids = seeded["sentences"]["capital"]
        label_as(client, c_ids[0], cap, "n")
        label_as(client, c_ids[1], cap, "n")
        label_as(client, seeded["sentences"]["birthPlace"][0], birth, "n")
        with TestClient(app_module.app) as other:
            register(other, "exporter@test.local")
            label_as(other, c_ids[0], cap, "n")
        return client, seeded

    def test_export_json(self, labeled):
        client, _ = labeled
        data = client.get("/api/admin/export").json()
        assert data["count"] == 4
        assert set(data["labels"][0]) == {
            "sentence_id", "sentence_text", "property_id", "user_id", "label",
            "subject_start", "subject_end", "object_start", "object_end", "created_at",
        }

    def test_export_filters(self, labeled):
        client, seeded = labeled
        pid = seeded["properties"]["capital"]
        data = client.get("/api/admin/export", params={"property_id": pid, "min_labels": 2}).json()
        assert data["count"] == 2
        assert {l["sentence_id"] for l in data["labels"]} == {seeded["sentences"]["capital"][0]}
        assert data["filters"] == {"property_id": pid, "min_labels": 2}

    def test_export_csv(self, labeled):
        client, seeded = labeled
        pid = seeded["properties"]["capital"]
        response = client.get("/api/admin/export", params={"property_id": pid, "format": "csv"})
        assert response.status_code == 200
        assert "text/csv" in response.headers["content-type"]
        assert "capital_min1_labels.csv" in response.headers["content-disposition"]
        rows = list(csv.DictReader(io.StringIO(response.text)))
        assert len(rows) == 3
        assert rows[0]["label"] == "n"

    def test_export_bad_format(self, admin_client):
        client, _ = admin_client
        assert client.get("/api/admin/export", params={"format": "xml"}).status_code == 422
