"""Tests for threaded comments: replies, edits, deletes, likes and reports."""
from datetime import datetime, timedelta


def post_comment(client, headers, target, content="تعليق", target_type="Article", parent=None):
    payload = {"content": content, "target_type": target_type, "target_id": str(target["_id"])}
    if parent:
        payload["parent_comment_id"] = parent["id"]
    return client.post("/api/comments", json=payload, headers=headers)


class TestCreate:
    def test_comment_increments_counters(self, client, make_article, user, user_headers, db):
        article = make_article()

        response = post_comment(client, user_headers, article)

        assert response.status_code == 201
        assert db.articles.find_one({"_id": article["_id"]})["comments_count"] == 1
        assert db.users.find_one({"_id": user["_id"]})["stats"]["comments_count"] == 1

    def test_target_type_is_case_insensitive(self, client, make_product, user_headers):
        product = make_product()

        response = post_comment(client, user_headers, product, target_type="product")

        assert response.status_code == 201
        assert response.get_json()["comment"]["target_type"] == "Product"

    def test_requires_content(self, client, make_article, user_headers):
        response = post_comment(client, user_headers, make_article(), content="   ")

        assert response.status_code == 400

    def test_rejects_overlong_content(self, client, make_article, user_headers):
        response = post_comment(client, user_headers, make_article(), content="x" * 1001)

        assert response.status_code == 400

    def test_missing_target(self, client, make_article, user_headers, db):
        article = make_article()
        db.articles.delete_one({"_id": article["_id"]})

        response = post_comment(client, user_headers, article)

        assert response.status_code == 404

    def test_disabled_article_comments(self, client, make_article, user_headers):
        article = make_article(comments_enabled=False)

        response = post_comment(client, user_headers, article)

        assert response.status_code == 400

    def test_reply_is_linked_to_parent_once(self, client, make_article, user_headers, db):
        article = make_article()
        parent = post_comment(client, user_headers, article).get_json()["comment"]

        reply = post_comment(client, user_headers, article, content="رد", parent=parent)

        assert reply.status_code == 201
        reply_id = reply.get_json()["comment"]["id"]
        stored_parent = db.comments.find_one({"content": "تعليق"})
        assert [str(item) for item in stored_parent["replies"]] == [reply_id]

    def test_reply_must_share_target(self, client, make_article, user_headers):
        first = make_article(title="أول")
        second = make_article(title="ثاني")
        parent = post_comment(client, user_headers, first).get_json()["comment"]

        response = post_comment(client, user_headers, second, parent=parent)

        assert response.status_code == 400


class TestListing:
    def test_nested_replies(self, client, make_article, user_headers):
        article = make_article()
        parent = post_comment(client, user_headers, article, content="أصل").get_json()["comment"]
        child = post_comment(
            client, user_headers, article, content="رد", parent=parent
        ).get_json()["comment"]
        post_comment(client, user_headers, article, content="رد على رد", parent=child)

        data = client.get(f"/api/comments/Article/{article['_id']}").get_json()

        assert data["pagination"]["total"] == 1
        top = data["comments"][0]
        assert top["content"] == "أصل"
        assert top["replies"][0]["content"] == "رد"
        assert top["replies"][0]["replies"][0]["content"] == "رد على رد"

    def test_hidden_comments_are_not_listed(self, client, make_article, user_headers, db):
        article = make_article()
        post_comment(client, user_headers, article, content="ظاهر")
        post_comment(client, user_headers, article, content="مخفي")
        db.comments.update_one({"content": "مخفي"}, {"$set": {"approved": False}})

        data = client.get(f"/api/comments/article/{article['_id']}").get_json()

        assert [comment["content"] for comment in data["comments"]] == ["ظاهر"]

    def test_invalid_target_type(self, client, make_article):
        article = make_article()

        assert client.get(f"/api/comments/Video/{article['_id']}").status_code == 400

    def test_user_comments(self, client, make_article, user, user_headers):
        article = make_article()
        post_comment(client, user_headers, article)

        data = client.get(f"/api/comments/user/{user['_id']}").get_json()

        assert data["pagination"]["total"] == 1


class TestEdit:
    def test_author_edit_records_history(self, client, make_article, user_headers, db):
        comment = post_comment(client, user_headers, make_article()).get_json()["comment"]

        response = client.put(
            f"/api/comments/{comment['id']}", json={"content": "معدل"}, headers=user_headers
        )

        assert response.status_code == 200
        stored = db.comments.find_one({"content": "معدل"})
        assert stored["edited"] is True
        assert stored["edit_history"][0]["content"] == "تعليق"

    def test_author_cannot_edit_after_window(self, client, make_article, user_headers, db):
        comment = post_comment(client, user_headers, make_article()).get_json()["comment"]
        db.comments.update_many(
            {}, {"$set": {"created_at": datetime.utcnow() - timedelta(hours=25)}}
        )

        response = client.put(
            f"/api/comments/{comment['id']}", json={"content": "متأخر"}, headers=user_headers
        )

        assert response.status_code == 400

    def test_admin_can_edit_any_time(self, client, make_article, user_headers, admin_headers, db):
        comment = post_comment(client, user_headers, make_article()).get_json()["comment"]
        db.comments.update_many(
            {}, {"$set": {"created_at": datetime.utcnow() - timedelta(days=3)}}
        )

        response = client.put(
            f"/api/comments/{comment['id']}", json={"content": "إشراف"}, headers=admin_headers
        )

        assert response.status_code == 200

    def test_stranger_cannot_edit(self, client, make_article, make_user, user_headers, auth_headers):
        comment = post_comment(client, user_headers, make_article()).get_json()["comment"]

        response = client.put(
            f"/api/comments/{comment['id']}",
            json={"content": "x"},
            headers=auth_headers(make_user()),
        )

        assert response.status_code == 403


class TestDelete:
    def test_delete_removes_subtree_and_unlinks_parent(self, client, make_article, user_headers, db):
        article = make_article()
        root = post_comment(client, user_headers, article, content="جذر").get_json()["comment"]
        middle = post_comment(
            client, user_headers, article, content="وسط", parent=root
        ).get_json()["comment"]
        post_comment(client, user_headers, article, content="ورقة", parent=middle)

        response = client.delete(f"/api/comments/{middle['id']}", headers=user_headers)

        assert response.status_code == 200
        assert response.get_json()["deleted_count"] == 2
        assert [c["content"] for c in db.comments.find()] == ["جذر"]
        assert db.comments.find_one({"content": "جذر"})["replies"] == []
        assert db.articles.find_one({"_id": article["_id"]})["comments_count"] == 1

    def test_stranger_cannot_delete(self, client, make_article, make_user, user_headers, auth_headers):
        comment = post_comment(client, user_headers, make_article()).get_json()["comment"]

        response = client.delete(
            f"/api/comments/{comment['id']}", headers=auth_headers(make_user())
        )

        assert response.status_code == 403


class TestLikesAndReports:
    def test_like_toggle(self, client, make_article, user_headers):
        comment = post_comment(client, user_headers, make_article()).get_json()["comment"]

        first = client.post(f"/api/comments/{comment['id']}/like", headers=user_headers)
        second = client.post(f"/api/comments/{comment['id']}/like", headers=user_headers)

        assert first.get_json()["likes_count"] == 1
        assert second.get_json()["likes_count"] == 0

    def test_report_once_per_user(self, client, make_article, make_user, user_headers, auth_headers, db):
        comment = post_comment(client, user_headers, make_article()).get_json()["comment"]
        reporter_headers = auth_headers(make_user())

        first = client.post(
            f"/api/comments/{comment['id']}/report",
            json={"reason": "spam"},
            headers=reporter_headers,
        )
        second = client.post(
            f"/api/comments/{comment['id']}/report",
            json={"reason": "spam"},
            headers=reporter_headers,
        )

        assert first.status_code == 200
        assert second.status_code == 400
        stored = db.comments.find_one({"content": "تعليق"})
        assert stored["report_count"] == 1
        assert stored["reported"] is False
        assert stored["approved"] is True

    def test_single_report_is_not_listed_for_moderation(
        self, client, make_article, make_user, user_headers, auth_headers, admin_headers
    ):
        comment = post_comment(client, user_headers, make_article()).get_json()["comment"]
        client.post(
            f"/api/comments/{comment['id']}/report",
            json={"reason": "spam"},
            headers=auth_headers(make_user()),
        )

        reported = client.get("/api/admin/comments?status=reported", headers=admin_headers)

        assert reported.get_json()["comments"] == []

    def test_report_reasons_are_not_repeated(self, client, make_article, make_user, user_headers, auth_headers, db):
        comment = post_comment(client, user_headers, make_article()).get_json()["comment"]

        for reason in ("spam", "spam", "offensive"):
            client.post(
                f"/api/comments/{comment['id']}/report",
                json={"reason": reason},
                headers=auth_headers(make_user()),
            )

        stored = db.comments.find_one({"content": "تعليق"})
        assert stored["report_count"] == 3
        assert sorted(stored["report_reasons"]) == ["offensive", "spam"]

    def test_unknown_reason_becomes_other(self, client, make_article, make_user, user_headers, auth_headers, db):
        comment = post_comment(client, user_headers, make_article()).get_json()["comment"]

        client.post(
            f"/api/comments/{comment['id']}/report",
            json={"reason": "boring"},
            headers=auth_headers(make_user()),
        )

        assert db.comments.find_one({"content": "تعليق"})["report_reasons"] == ["other"]

    def test_five_reports_hide_comment(self, client, make_article, make_user, user_headers, auth_headers, db):
        comment = post_comment(client, user_headers, make_article()).get_json()["comment"]

        responses = [
            client.post(
                f"/api/comments/{comment['id']}/report",
                json={"reason": "offensive"},
                headers=auth_headers(make_user()),
            )
            for _ in range(5)
        ]

        assert [r.get_json()["hidden"] for r in responses] == [False] * 4 + [True]
        stored = db.comments.find_one({"content": "تعليق"})
        assert stored["approved"] is False
        assert stored["reported"] is True

    def test_cannot_report_own_comment(self, client, make_article, user_headers):
        comment = post_comment(client, user_headers, make_article()).get_json()["comment"]

        response = client.post(
            f"/api/comments/{comment['id']}/report", json={}, headers=user_headers
        )

        assert response.status_code == 400
