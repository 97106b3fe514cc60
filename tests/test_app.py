"""
Tests for users, health, metrics and error rendering.
"""

from conftest import auth, register


class TestUsers:
    """Test /users endpoints."""

    def test_register_hides_password(self, client):
        data = register(client, "alice", location="Boston")

        assert data["username"] == "alice"
        assert data["location"] == "Boston"
        assert "password" not in data

    def test_duplicate_username_case_insensitive(self, client):
        register(client, "Alice")

        response = client.post(
            "/users", json={"username": "alice", "email": "other@example.com", "password": "secret123"}
        )

        assert response.status_code == 400
        assert response.json() == {"detail": "Username already exists"}

    def test_duplicate_email(self, client):
        register(client, "alice", email="a@example.com")

        response = client.post(
            "/users", json={"username": "alice2", "email": "A@EXAMPLE.COM", "password": "secret123"}
        )

        assert response.status_code == 400

    def test_invalid_email(self, client):
        response = client.post("/users", json={"username": "alice", "email": "nope", "password": "secret123"})

        assert response.status_code == 400
        assert response.json()["detail"].startswith("Validation error")

    def test_malformed_emails_rejected(self, client):
        """Addresses with a bad local part or domain are refused."""
        for email in ["not an email@x", "a@b", "a@.", "a@b..c"]:
            response = client.post(
                "/users", json={"username": "alice", "email": email, "password": "secret123"}
            )

            assert response.status_code == 400, email
            assert "email" in response.json()["detail"]

        assert client.get("/users/1").status_code == 404

    def test_current_user(self, client):
        alice = register(client, "alice")

        response = client.get("/users/me", headers=auth(alice))

        assert response.status_code == 200
        assert response.json()["id"] == alice["id"]

    def test_invalid_identity_header(self, client):
        response = client.get("/users/me", headers={"X-User-Id": "abc"})

        assert response.status_code == 401

    def test_public_profile(self, client):
        alice = register(client, "alice")

        assert client.get(f"/users/{alice['id']}").json() == {"id": alice["id"], "username": "alice"}
        assert client.get("/users/99").status_code == 404


class TestHealth:
    def test_live(self, client):
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"


class TestMetrics:
    def test_metrics_exposed(self, client):
        alice = register(client, "alice")
        bob = register(client, "bob")
        client.post("/messages", json={"receiverId": bob["id"], "content": "hi"}, headers=auth(alice))
        client.get(f"/listings/{alice['id']}")

        response = client.get("/metrics")

        assert response.status_code == 200
        body = response.text
        assert "http_requests_total" in body
        assert "messages_sent_total" in body
        assert 'live_deliveries_total{result="offline"}' in body
        assert 'path="/listings/{id}"' in body
