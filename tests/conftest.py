# tests/conftest.py
from datetime import datetime

import bcrypt
import mongomock
import pytest
from flask_jwt_extended import create_access_token

from backend.app import create_app

TEST_PASSWORD = "secret123"
LONG_CONTENT = (
    "هذا محتوى تجريبي طويل بما يكفي لاجتياز التحقق من طول المقال في الاختبارات. "
    * 3
)


@pytest.fixture()
def db():
    client = mongomock.MongoClient()
    yield client["mama-algerienne-test"]
    client.close()


@pytest.fixture()
def app(db, tmp_path):
    test_config = {
        "TESTING": True,
        "JWT_SECRET_KEY": "test-secret-key-that-is-long-enough-for-hs256",
        "UPLOAD_FOLDER": str(tmp_path / "uploads"),
        "RATE_LIMIT_ENABLED": False,
        "DEFAULT_ADMIN_EMAIL": "",
        "DEFAULT_ADMIN_PASSWORD": "",
    }
    application = create_app(test_config=test_config, database=db)
    yield application


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def make_user(db):
    counter = {"value": 0}

    def factory(name="مستخدمة", role="user", is_active=True, password=TEST_PASSWORD, **extra):
        counter["value"] += 1
        now = datetime.utcnow()
        document = {
            "name": name,
            "email": extra.pop("email", f"user{counter['value']}@example.com"),
            "phone": extra.pop("phone", f"05500000{counter['value']:02d}"),
            "password": bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=4)),
            "role": role,
            "is_active": is_active,
            "avatar": None,
            "bio": "",
            "location": "",
            "preferences": {"newsletter": True, "notifications": True, "privacy": "public"},
            "stats": {"posts_count": 0, "comments_count": 0},
            "last_login": None,
            "created_at": now,
            "updated_at": now,
        }
        document.update(extra)
        document["_id"] = db.users.insert_one(document).inserted_id
        return document

    return factory


@pytest.fixture()
def auth_headers(app):
    def build(user_document):
        with app.app_context():
            token = create_access_token(identity=str(user_document["_id"]))
        return {"Authorization": f"Bearer {token}"}

    return build


@pytest.fixture()
def user(make_user):
    return make_user()


@pytest.fixture()
def admin(make_user):
    return make_user(name="المديرة", role="admin", email="admin@example.com")


@pytest.fixture()
def user_headers(auth_headers, user):
    return auth_headers(user)


@pytest.fixture()
def admin_headers(auth_headers, admin):
    return auth_headers(admin)


@pytest.fixture()
def make_article(db, admin):
    def factory(title="مقال تجريبي", **extra):
        now = datetime.utcnow()
        document = {
            "title": title,
            "slug": extra.pop("slug", f"article-{db.articles.count_documents({}) + 1}"),
            "content": LONG_CONTENT,
            "excerpt": LONG_CONTENT[:200] + "...",
            "category": "عام",
            "tags": [],
            "images": [],
            "author": admin["_id"],
            "featured": False,
            "status": "published",
            "views": 0,
            "likes": [],
            "likes_count": 0,
            "reading_time": 1,
            "comments_enabled": True,
            "comments_count": 0,
            "published_at": now,
            "created_at": now,
            "updated_at": now,
        }
        document.update(extra)
        document["_id"] = db.articles.insert_one(document).inserted_id
        return document

    return factory


@pytest.fixture()
def make_post(db, user):
    def factory(title="منشور تجريبي", author=None, **extra):
        now = datetime.utcnow()
        document = {
            "title": title,
            "content": "محتوى المنشور",
            "type": "community",
            "author": (author or user)["_id"],
            "images": [],
            "likes": [],
            "likes_count": 0,
            "views": 0,
            "tags": [],
            "category": "عام",
            "comments_count": 0,
            "featured": False,
            "pinned": False,
            "approved": True,
            "created_at": now,
            "updated_at": now,
        }
        document.update(extra)
        document["_id"] = db.posts.insert_one(document).inserted_id
        return document

    return factory


@pytest.fixture()
def make_product(db):
    def factory(name="منتج تجريبي", price=1500.0, stock_quantity=10, **extra):
        now = datetime.utcnow()
        document = {
            "name": name,
            "description": "وصف المنتج",
            "price": price,
            "category": "ملابس",
            "tags": [],
            "images": [],
            "stock_quantity": stock_quantity,
            "in_stock": stock_quantity > 0,
            "featured": False,
            "reviews": [],
            "average_rating": 0.0,
            "reviews_count": 0,
            "comments_count": 0,
            "created_at": now,
            "updated_at": now,
        }
        document.update(extra)
        document["_id"] = db.products.insert_one(document).inserted_id
        return document

    return factory
