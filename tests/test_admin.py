"""Tests for the admin dashboard, user management, moderation and audit log."""
from bson import ObjectId


class TestDashboard:
    def test_dashboard_counts(self, client, admin_headers, make_article, make_product, make_post):
        make_article(views=7, category="صحتي")
        make_article(views=3, category="صحتي")
        make_product()
        make_post()

        response = client.get("/api/admin/dashboard", headers=admin_headers)

        assert response.status_code == 200
        data = response.get_json()
        assert data["counts"]["articles"] == 2
        assert data["counts"]["products"] == 1
        assert data["counts"]["posts"] == 1
        assert data["stats"]["total_views"] == 10
        assert data["stats"]["popular_category"] == "صحتي"

    def test_dashboard_requires_admin(self, client, user_headers):
        response = client.get("/api/admin/dashboard", headers=user_headers)

        assert response.status_code == 403
        assert response.get_json()["code"] == "ADMIN_REQUIRED"

    def test_raw_article_does_not_count_view(self, client, admin_headers, make_article, db):
        article = make_article()

        response = client.get(f"/api/admin/articles/{article['_id']}", headers=admin_headers)

        assert response.status_code == 200
        assert db.articles.find_one({"_id": article["_id"]})["views"] == 0


class TestUsers:
    def test_list_and_search_users(self, client, admin_headers, make_user):
        make_user(name="فاطمة")
        make_user(name="خديجة")

        data = client.get(
            "/api/admin/users", query_string={"search": "فاطمة"}, headers=admin_headers
        ).get_json()

        assert [user["name"] for user in data["users"]] == ["فاطمة"]

    def test_toggle_suspends_and_reactivates(self, client, admin_headers, user, db):
        first = client.patch(f"/api/admin/users/{user['_id']}/toggle", headers=admin_headers)
        assert first.get_json()["user"]["is_active"] is False

        second = client.patch(f"/api/admin/users/{user['_id']}/toggle", headers=admin_headers)
        assert second.get_json()["user"]["is_active"] is True

    def test_cannot_toggle_self(self, client, admin, admin_headers):
        response = client.patch(f"/api/admin/users/{admin['_id']}/toggle", headers=admin_headers)

        assert response.status_code == 400

    def test_update_role(self, client, admin_headers, user):
        response = client.put(
            f"/api/admin/users/{user['_id']}/role", json={"role": "admin"}, headers=admin_headers
        )

        assert response.status_code == 200
        assert response.get_json()["user"]["role"] == "admin"

    def test_update_role_rejects_unknown_role(self, client, admin_headers, user):
        response = client.put(
            f"/api/admin/users/{user['_id']}/role", json={"role": "owner"}, headers=admin_headers
        )

        assert response.status_code == 400

    def test_delete_user(self, client, admin_headers, user, db):
        response = client.delete(f"/api/admin/users/{user['_id']}", headers=admin_headers)

        assert response.status_code == 200
        assert db.users.find_one({"_id": user["_id"]}) is None

    def test_cannot_delete_self_or_other_admin(self, client, admin, admin_headers, make_user):
        other_admin = make_user(role="admin")

        assert client.delete(f"/api/admin/users/{admin['_id']}", headers=admin_headers).status_code == 400
        assert (
            client.delete(f"/api/admin/users/{other_admin['_id']}", headers=admin_headers).status_code
            == 400
        )

    def test_deleted_author_is_shown_as_removed(self, client, admin_headers, make_user, make_post):
        author = make_user()
        post = make_post(author=author)
        client.delete(f"/api/admin/users/{author['_id']}", headers=admin_headers)

        data = client.get(f"/api/posts/{post['_id']}").get_json()

        assert data["post"]["author"]["name"] == "مستخدم محذوف"


class TestModeration:
    def create_comment(self, client, headers, article):
        return client.post(
            "/api/comments",
            json={"content": "تعليق", "target_type": "Article", "target_id": str(article["_id"])},
            headers=headers,
        ).get_json()["comment"]

    def test_filter_comments_by_status(self, client, admin_headers, user_headers, make_article, db):
        article = make_article()
        self.create_comment(client, user_headers, article)
        hidden = self.create_comment(client, user_headers, article)
        db.comments.update_one(
            {"_id": ObjectId(hidden["id"])}, {"$set": {"approved": False, "reported": True}}
        )

        pending = client.get("/api/admin/comments?status=pending", headers=admin_headers).get_json()
        reported = client.get("/api/admin/comments?status=reported", headers=admin_headers).get_json()
        everything = client.get("/api/admin/comments?status=all", headers=admin_headers).get_json()

        assert pending["pagination"]["total"] == 1
        assert reported["comments"][0]["id"] == hidden["id"]
        assert everything["pagination"]["total"] == 2

    def test_approve_toggle_clears_reported(self, client, admin_headers, user_headers, make_article, db):
        comment = self.create_comment(client, user_headers, make_article())

        db.comments.update_one(
            {"_id": ObjectId(comment["id"])},
            {"$set": {"approved": False, "reported": True, "report_count": 5}},
        )

        response = client.patch(f"/api/admin/comments/{comment['id']}/approve", headers=admin_headers)

        assert response.status_code == 200
        stored = db.comments.find_one({"_id": ObjectId(comment["id"])})
        assert stored["approved"] is True
        assert stored["reported"] is False

    def test_admin_delete_comment(self, client, admin_headers, user_headers, make_article, db):
        comment = self.create_comment(client, user_headers, make_article())

        response = client.delete(f"/api/admin/comments/{comment['id']}", headers=admin_headers)

        assert response.status_code == 200
        assert db.comments.count_documents({}) == 0

    def test_post_approval_and_pin(self, client, admin_headers, make_post):
        post = make_post()

        hidden = client.patch(f"/api/admin/posts/{post['_id']}/approve", headers=admin_headers)
        pinned = client.patch(f"/api/admin/posts/{post['_id']}/pin", headers=admin_headers)

        assert hidden.get_json()["post"]["approved"] is False
        assert pinned.get_json()["post"]["pinned"] is True
        assert client.get("/api/posts").get_json()["pagination"]["total"] == 0


class TestAuditLog:
    def test_admin_actions_are_logged(self, client, admin_headers, user):
        client.patch(f"/api/admin/users/{user['_id']}/toggle", headers=admin_headers)

        data = client.get("/api/admin/logs", headers=admin_headers).get_json()

        assert data["logs"][0]["action"] == "Suspended user"
        assert data["logs"][0]["user_email"] == "admin@example.com"

    def test_search_logs(self, client, admin_headers, user):
        client.patch(f"/api/admin/users/{user['_id']}/toggle", headers=admin_headers)
        client.put(
            f"/api/admin/users/{user['_id']}/role", json={"role": "admin"}, headers=admin_headers
        )

        data = client.get("/api/admin/logs?search=role", headers=admin_headers).get_json()

        assert [log["action"] for log in data["logs"]] == ["Updated user role"]

    def test_purge_logs(self, client, admin_headers, user, db):
        client.patch(f"/api/admin/users/{user['_id']}/toggle", headers=admin_headers)

        response = client.delete("/api/admin/logs", headers=admin_headers)

        assert response.status_code == 200
        assert response.get_json()["deleted"] == 1
        assert [log["action"] for log in db.audit_logs.find()] == ["Deleted audit logs"]
