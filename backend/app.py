import json
import math
import os
import re
import secrets
import time
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import urljoin
from uuid import uuid4

import bcrypt
from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from flask import Flask, jsonify, request, send_from_directory
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_current_user,
    jwt_required,
    verify_jwt_in_request,
)
from flask_jwt_extended.exceptions import JWTExtendedException, UserLookupError
from flask_limiter import Limiter
from flask_limiter.errors import RateLimitExceeded
from flask_limiter.util import get_remote_address
from flask_pymongo import PyMongo
from jwt.exceptions import PyJWTError
from pymongo.errors import DuplicateKeyError, PyMongoError
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.utils import secure_filename

load_dotenv()

ARTICLE_CATEGORIES = (
    "حملي",
    "طفلي",
    "بيتي",
    "كوزينتي",
    "مدرستي",
    "تحويستي",
    "صحتي",
    "ديني",
    "الاسماء",
    "عام",
)
POST_CATEGORIES = ("عام", "نصائح", "تجارب", "أسئلة", "مشاركات")
DEFAULT_CATEGORY = "عام"
ARTICLE_STATUSES = ("draft", "published", "archived")
POST_TYPES = ("community", "ad")
COMMENT_TARGET_TYPES = ("Article", "Post", "Product")
REPORT_REASONS = ("spam", "inappropriate", "offensive", "fake", "other")
USER_ROLES = ("user", "admin")
PRIVACY_LEVELS = ("public", "friends", "private")
PAYMENT_METHODS = ("cash_on_delivery", "bank_transfer", "ccp")

ORDER_STATUSES = (
    "pending",
    "confirmed",
    "processing",
    "shipped",
    "delivered",
    "cancelled",
)
ORDER_TRANSITIONS = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"processing", "cancelled"},
    "processing": {"shipped", "cancelled"},
    "shipped": {"delivered"},
    "delivered": set(),
    "cancelled": set(),
}

COMMENT_EDIT_WINDOW = timedelta(hours=24)
COMMENT_REPORT_THRESHOLD = 5
WORDS_PER_MINUTE = 200
EXCERPT_LENGTH = 200

DEFAULT_THEME = {
    "name": "default",
    "primary_color": "#d4a574",
    "secondary_color": "#f8e8d4",
    "text_color": "#2c2c2c",
    "light_text": "#666666",
    "bg_color": "#fdfbf7",
    "border_color": "#e5d5c8",
    "accent_color": "#b8860b",
    "font_family": "Cairo, sans-serif",
}
THEME_COLOR_FIELDS = (
    "primary_color",
    "secondary_color",
    "text_color",
    "light_text",
    "bg_color",
    "border_color",
    "accent_color",
)
THEME_FIELD_ALIASES = {
    "primary_color": ("primary_color", "primaryColor"),
    "secondary_color": ("secondary_color", "secondaryColor"),
    "text_color": ("text_color", "textColor"),
    "light_text": ("light_text", "lightText"),
    "bg_color": ("bg_color", "bgColor"),
    "border_color": ("border_color", "borderColor"),
    "accent_color": ("accent_color", "accentColor"),
    "font_family": ("font_family", "fontFamily"),
}
HEX_COLOR_PATTERN = re.compile(r"^#(?:[0-9a-fA-F]{3}){1,2}$")

UPLOAD_SUBFOLDERS = ("articles", "products", "posts", "avatars")
TRUTHY_VALUES = {"1", "true", "yes", "on"}


def parse_bool(value, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    normalized = str(value).strip().lower()
    if not normalized:
        return default
    return normalized in TRUTHY_VALUES


def slugify_title(value: Optional[str]) -> str:
    """Build a URL slug that keeps Arabic letters alongside latin ones."""
    lowered = str(value or "").strip().lower()
    cleaned = re.sub(r"[^a-z0-9\u0600-\u06FF\s-]", "", lowered)
    slug = re.sub(r"[\s-]+", "-", cleaned).strip("-")
    if not slug:
        slug = uuid4().hex[:12]
    return slug


def calculate_reading_time(content: Optional[str]) -> int:
    words = len(str(content or "").split())
    if not words:
        return 0
    return math.ceil(words / WORDS_PER_MINUTE)


def build_excerpt(content: Optional[str]) -> str:
    text = str(content or "").strip()
    if not text:
        return ""
    return text[:EXCERPT_LENGTH].strip() + "..."


def summarize_ratings(reviews: Iterable[Dict]) -> Tuple[float, int]:
    ratings = []
    for review in reviews or []:
        try:
            ratings.append(int(review.get("rating")))
        except (AttributeError, TypeError, ValueError):
            continue
    if not ratings:
        return 0.0, 0
    return round(sum(ratings) / len(ratings), 1), len(ratings)


def generate_order_number(now: Optional[datetime] = None) -> str:
    moment = now or datetime.utcnow()
    millis = str(int(time.time() * 1000))[-6:]
    return f"ORD-{moment.year}-{millis}{secrets.randbelow(1000):03d}"


def can_transition_order(current_status: str, next_status: str) -> bool:
    return next_status in ORDER_TRANSITIONS.get(current_status, set())


def create_app(test_config: Optional[Dict] = None, database=None) -> Flask:
    """Create and configure the Flask application.

    ``test_config`` overrides any configuration key after the environment has
    been read, and ``database`` replaces the PyMongo connection with any
    pymongo-compatible database object.
    """
    app = Flask(__name__)

    # Honor proxy headers so upload URLs and rate limiting see the real client.
    trusted_proxy_hops_raw = os.getenv("TRUSTED_PROXY_HOPS", "1")
    try:
        trusted_proxy_hops = max(0, int(trusted_proxy_hops_raw))
    except (TypeError, ValueError):
        trusted_proxy_hops = 1
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Configuration ---
    app.config["JWT_SECRET_KEY"] = os.getenv(
        "JWT_SECRET_KEY", "change-me-in-production"
    )
    try:
        token_lifetime_days = max(1, int(os.getenv("JWT_EXPIRES_DAYS", "30")))
    except (TypeError, ValueError):
        token_lifetime_days = 30
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(days=token_lifetime_days)
    app.config["MONGO_URI"] = os.getenv(
        "MONGO_URI", "mongodb://localhost:27017/mama-algerienne"
    )
    max_upload_mb = int(os.getenv("MAX_UPLOAD_SIZE_MB", "10"))
    app.config["MAX_CONTENT_LENGTH"] = max_upload_mb * 1024 * 1024
    app.config["UPLOAD_FOLDER"] = os.getenv("UPLOAD_FOLDER") or os.path.join(
        app.root_path, "uploads"
    )
    app.config["ALLOWED_IMAGE_EXTENSIONS"] = {"png", "jpg", "jpeg", "gif", "webp"}
    app.config["RATE_LIMIT_ENABLED"] = parse_bool(
        os.getenv("RATE_LIMIT_ENABLED"), default=True
    )
    app.config["RATE_LIMIT_MAX_REQUESTS"] = int(
        os.getenv("RATE_LIMIT_MAX_REQUESTS", "1000")
    )
    app.config["RATE_LIMIT_WINDOW_SECONDS"] = int(
        os.getenv("RATE_LIMIT_WINDOW_SECONDS", str(15 * 60))
    )
    app.config["APP_ENV"] = os.getenv("APP_ENV", "development")
    app.config["DEFAULT_ADMIN_EMAIL"] = os.getenv("DEFAULT_ADMIN_EMAIL", "")
    app.config["DEFAULT_ADMIN_PASSWORD"] = os.getenv("DEFAULT_ADMIN_PASSWORD", "")
    app.config["DEFAULT_ADMIN_NAME"] = (
        os.getenv("DEFAULT_ADMIN_NAME", "مدير الموقع") or "مدير الموقع"
    ).strip()
    app.config["DEFAULT_ADMIN_PHONE"] = os.getenv("DEFAULT_ADMIN_PHONE", "")

    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())
    app.json.ensure_ascii = False

    upload_directory = app.config["UPLOAD_FOLDER"]
    for subfolder in UPLOAD_SUBFOLDERS:
        os.makedirs(os.path.join(upload_directory, subfolder), exist_ok=True)

    # --- Initialize extensions ---
    allowed_origins = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://localhost:8080",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
        "http://127.0.0.1:8080",
        "https://maman-algerienne.onrender.com",
        "https://mamanalgerienne.netlify.app",
        "https://mamanalgerienne.vercel.app",
        os.getenv("FRONTEND_URL", "").strip(),
    ]
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]

    CORS(
        app,
        supports_credentials=True,
        origins=allowed_origins or "*",
        methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    jwt = JWTManager(app)
    if database is None:
        mongo = PyMongo(app)
        database = mongo.db
    db = database
    audit_logs_collection = db.audit_logs

    rate_limit_window = max(1, int(app.config["RATE_LIMIT_WINDOW_SECONDS"]))
    app.config["RATELIMIT_ENABLED"] = bool(app.config["RATE_LIMIT_ENABLED"])
    limiter = Limiter(
        key_func=get_remote_address,
        app=app,
        default_limits=[
            f"{max(1, int(app.config['RATE_LIMIT_MAX_REQUESTS']))} per {rate_limit_window} second"
        ],
        default_limits_exempt_when=lambda: request.method == "OPTIONS",
        storage_uri="memory://",
        strategy="moving-window",
    )

    try:
        db.users.create_index("email", unique=True)
        db.users.create_index("phone")
        db.users.create_index([("created_at", -1)])
        db.articles.create_index("slug", unique=True, sparse=True)
        db.articles.create_index([("category", 1), ("status", 1)])
        db.articles.create_index([("created_at", -1)])
        db.posts.create_index([("type", 1), ("created_at", -1)])
        db.posts.create_index("author")
        db.comments.create_index(
            [("target_type", 1), ("target_id", 1), ("approved", 1)]
        )
        db.comments.create_index("parent_comment")
        db.products.create_index("category")
        db.orders.create_index("order_number", unique=True)
        db.orders.create_index([("status", 1), ("created_at", -1)])
        db.themes.create_index("name", unique=True)
        db.newsletter_subscribers.create_index("email", unique=True)
        audit_logs_collection.create_index([("created_at", -1)])
        audit_logs_collection.create_index(
            [("user_email", 1), ("user_name", 1), ("action", 1)]
        )
    except Exception as exc:
        app.logger.warning("Unable to ensure database indexes: %s", exc)

    email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

    MAX_ARTICLE_IMAGES = 5
    MAX_PRODUCT_IMAGES = 5
    MAX_POST_IMAGES = 10

    # --- Auth callbacks ---

    @jwt.unauthorized_loader
    def handle_missing_token(_reason):
        return (
            jsonify({"message": "لا يوجد رمز مصادقة، الوصول مرفوض", "code": "NO_TOKEN"}),
            401,
        )

    @jwt.invalid_token_loader
    def handle_invalid_token(_reason):
        return (
            jsonify({"message": "رمز المصادقة غير صالح", "code": "INVALID_TOKEN"}),
            401,
        )

    @jwt.expired_token_loader
    def handle_expired_token(_jwt_header, _jwt_payload):
        return (
            jsonify({"message": "انتهت صلاحية رمز المصادقة", "code": "TOKEN_EXPIRED"}),
            401,
        )

    @jwt.user_lookup_loader
    def load_token_user(_jwt_header, jwt_payload):
        user_id = to_object_id(jwt_payload.get("sub"))
        if not user_id:
            return None
        return db.users.find_one({"_id": user_id})

    @jwt.user_lookup_error_loader
    def handle_unknown_token_user(_jwt_header, _jwt_payload):
        return (
            jsonify({"message": "المستخدم غير موجود", "code": "USER_NOT_FOUND"}),
            401,
        )

    # --- Request hooks and error handlers ---

    @app.before_request
    def log_request():
        app.logger.info(
            "%s %s - Origin: %s",
            request.method,
            request.path,
            request.headers.get("Origin") or "No Origin",
        )

    @app.errorhandler(RateLimitExceeded)
    def handle_rate_limit_exceeded(_error):
        current_limit = limiter.current_limit
        if current_limit is not None:
            retry_after = max(1, math.ceil(current_limit.reset_at - time.time()))
        else:
            retry_after = rate_limit_window
        app.logger.warning("Rate limit exceeded for %s", get_remote_address())
        response = jsonify(
            {
                "message": "طلبات كثيرة جداً، يرجى المحاولة لاحقاً",
                "code": "RATE_LIMIT_EXCEEDED",
                "retry_after": retry_after,
            }
        )
        response.status_code = 429
        response.headers["Retry-After"] = str(retry_after)
        return response

    @app.errorhandler(404)
    def handle_not_found(_error):
        return (
            jsonify(
                {
                    "message": "المسار غير موجود",
                    "path": request.path,
                    "method": request.method,
                }
            ),
            404,
        )

    @app.errorhandler(405)
    def handle_method_not_allowed(_error):
        return jsonify({"message": "الطريقة غير مسموح بها لهذا المسار"}), 405

    @app.errorhandler(413)
    def handle_payload_too_large(_error):
        return (
            jsonify(
                {
                    "message": f"حجم الملفات المرفوعة يتجاوز الحد المسموح ({max_upload_mb} ميغابايت)"
                }
            ),
            413,
        )

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        if isinstance(error, HTTPException):
            return jsonify({"message": error.description}), error.code
        app.logger.exception(
            "Unhandled error on %s %s", request.method, request.path
        )
        return jsonify({"message": "حدث خطأ في الخادم"}), 500

    # --- Helpers ---

    def normalize_email(value: Optional[str]) -> str:
        return str(value or "").strip().lower()

    def is_valid_email(value: Optional[str]) -> bool:
        normalized = normalize_email(value)
        return bool(normalized and email_regex.match(normalized))

    def hash_password(password: str) -> bytes:
        return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())

    def password_matches(password: str, stored_password) -> bool:
        if not stored_password:
            return False
        if isinstance(stored_password, str):
            stored_password = stored_password.encode("utf-8")
        try:
            return bcrypt.checkpw(password.encode("utf-8"), bytes(stored_password))
        except ValueError:
            return False

    def to_object_id(value) -> Optional[ObjectId]:
        if isinstance(value, ObjectId):
            return value
        if value is None:
            return None
        try:
            return ObjectId(str(value).strip())
        except (InvalidId, TypeError):
            return None

    def serialize_datetime(value) -> Optional[str]:
        if isinstance(value, datetime):
            return value.isoformat() + "Z"
        return None

    def safe_float(value, default=0.0):
        try:
            numeric = float(value)
        except (TypeError, ValueError):
            return default
        if math.isfinite(numeric):
            return numeric
        return default

    def safe_positive_int(value, default=0):
        try:
            numeric = int(float(value))
        except (TypeError, ValueError):
            return default
        return max(0, numeric)

    def read_pagination(default_limit: int, max_limit: int = 100) -> Tuple[int, int, int]:
        page = max(safe_positive_int(request.args.get("page"), 1), 1)
        limit = safe_positive_int(request.args.get("limit"), default_limit)
        limit = min(max(limit, 1), max_limit)
        return page, limit, (page - 1) * limit

    def build_pagination(page: int, limit: int, total: int) -> Dict[str, int]:
        return {
            "current": page,
            "pages": math.ceil(total / limit) if total else 0,
            "total": total,
        }

    def read_payload() -> Dict:
        payload = request.form.to_dict() if request.form else {}
        if not payload:
            payload = request.get_json(silent=True) or {}
        if not isinstance(payload, dict):
            return {}
        return payload

    def parse_json_list(value):
        if value is None:
            return []
        if isinstance(value, (list, tuple, set)):
            return [item for item in value]
        if isinstance(value, (bytes, bytearray)):
            try:
                value = value.decode("utf-8")
            except UnicodeDecodeError:
                value = ""
        if isinstance(value, str):
            candidate = value.strip()
            if not candidate:
                return []
            if candidate.startswith("["):
                try:
                    parsed = json.loads(candidate)
                    if isinstance(parsed, list):
                        return parsed
                except (json.JSONDecodeError, ValueError):
                    pass
            if "," in candidate:
                return [
                    item.strip()
                    for item in candidate.split(",")
                    if item and item.strip()
                ]
            return [candidate]
        return []

    def parse_tags(value) -> List[str]:
        tags: List[str] = []
        for item in parse_json_list(value):
            tag = str(item or "").strip()
            if tag and tag not in tags:
                tags.append(tag)
        return tags

    def escape_search(value: str):
        return re.compile(re.escape(value), re.IGNORECASE)

    def is_admin(user_document) -> bool:
        return bool(user_document) and user_document.get("role") == "admin"

    def require_active_user():
        current_user = get_current_user()
        if not current_user:
            return (
                None,
                (
                    jsonify({"message": "المستخدم غير موجود", "code": "USER_NOT_FOUND"}),
                    401,
                ),
            )
        if not current_user.get("is_active", True):
            return (
                None,
                (
                    jsonify(
                        {
                            "message": "تم تعليق حسابك، يرجى التواصل مع الإدارة",
                            "code": "ACCOUNT_SUSPENDED",
                        }
                    ),
                    403,
                ),
            )
        return current_user, None

    def require_admin_user():
        current_user, auth_error = require_active_user()
        if auth_error:
            return None, auth_error
        if not is_admin(current_user):
            return (
                None,
                (
                    jsonify(
                        {
                            "message": "صلاحيات المدير مطلوبة للوصول إلى هذا المورد",
                            "code": "ADMIN_REQUIRED",
                        }
                    ),
                    403,
                ),
            )
        return current_user, None

    def get_optional_user():
        # Public endpoints treat an expired, malformed or orphaned token as anonymous.
        try:
            verify_jwt_in_request(optional=True)
            current_user = get_current_user()
        except (UserLookupError, JWTExtendedException, PyJWTError) as exc:
            app.logger.info("Ignoring unusable token on %s: %s", request.path, exc)
            return None
        if current_user and not current_user.get("is_active", True):
            return None
        return current_user

    def sanitize_metadata(metadata: Optional[Dict]) -> Dict[str, str]:
        if not isinstance(metadata, dict):
            return {}
        sanitized: Dict[str, str] = {}
        for key, value in metadata.items():
            if value is None:
                continue
            sanitized[str(key)] = str(value)
        return sanitized

    def record_audit_log(actor, action: str, metadata: Optional[Dict] = None):
        if not action:
            return
        try:
            log_document = {
                "user_email": None,
                "user_name": "",
                "action": action,
                "metadata": sanitize_metadata(metadata),
                "created_at": datetime.utcnow(),
            }
            if isinstance(actor, dict):
                log_document["user_email"] = normalize_email(actor.get("email")) or None
                log_document["user_name"] = actor.get("name", "") or ""
                log_document["metadata"].setdefault(
                    "user_role", actor.get("role", "user")
                )
            elif actor:
                log_document["user_email"] = normalize_email(actor)
            audit_logs_collection.insert_one(log_document)
        except Exception as exc:
            app.logger.warning("Unable to record audit log: %s", exc)

    def serialize_audit_log(document):
        if not document:
            return {}
        metadata = document.get("metadata")
        return {
            "id": str(document.get("_id")),
            "user_email": document.get("user_email") or "",
            "user_name": document.get("user_name") or "",
            "action": document.get("action") or "",
            "metadata": metadata if isinstance(metadata, dict) else {},
            "created_at": serialize_datetime(document.get("created_at")),
        }

    def parse_iso_date(value: Optional[str], *, end_of_day: bool = False):
        if not value:
            return None
        candidate = str(value).strip()
        if not candidate:
            return None
        normalized = candidate.replace("Z", "+00:00")
        if re.fullmatch(r"\d{4}-\d{2}-\d{2}", candidate):
            normalized = f"{candidate}T00:00:00"
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError:
            return None
        if parsed.tzinfo is not None:
            parsed = parsed.replace(tzinfo=None) - (parsed.utcoffset() or timedelta())
        if end_of_day and re.fullmatch(r"\d{4}-\d{2}-\d{2}", candidate):
            return parsed + timedelta(days=1)
        return parsed

    # --- Uploads ---

    def allowed_image_extension(filename: str) -> bool:
        extension = os.path.splitext(filename)[1].lower().lstrip(".")
        if not extension:
            return False
        return extension in app.config["ALLOWED_IMAGE_EXTENSIONS"]

    def collect_request_images(field: str = "images"):
        if not request.files:
            return []
        image_files = request.files.getlist(field)
        if not image_files:
            fallback_file = request.files.get("image")
            if fallback_file:
                image_files = [fallback_file]
        return [
            image_file
            for image_file in image_files
            if image_file and getattr(image_file, "filename", "")
        ]

    def save_uploaded_image(image_file, folder: str):
        if not image_file or not getattr(image_file, "filename", ""):
            return None, "يرجى اختيار صورة"

        original_filename = secure_filename(image_file.filename)
        if not original_filename or not allowed_image_extension(original_filename):
            return None, "فقط الصور مسموح بها (JPEG, PNG, GIF, WEBP)"

        extension = os.path.splitext(original_filename)[1].lower()
        unique_filename = f"{uuid4().hex}{extension}"
        destination = os.path.join(app.config["UPLOAD_FOLDER"], folder, unique_filename)

        try:
            image_file.save(destination)
        except OSError as exc:
            app.logger.error("Unable to store upload %s: %s", destination, exc)
            return None, "تعذر حفظ الصورة المرفوعة، يرجى المحاولة مرة أخرى"

        return f"{folder}/{unique_filename}", None

    def save_uploaded_images(image_files, folder: str, limit: int):
        saved_paths: List[str] = []
        if not image_files:
            return saved_paths, None

        if len(image_files) > limit:
            return [], f"يمكنك رفع {limit} صور كحد أقصى"

        for image_file in image_files:
            saved_path, image_error = save_uploaded_image(image_file, folder)
            if image_error:
                remove_uploaded_file(saved_paths)
                return [], image_error
            saved_paths.append(saved_path)

        return saved_paths, None

    def remove_uploaded_file(relative_path):
        if not relative_path:
            return

        if isinstance(relative_path, (list, tuple, set)):
            for item in relative_path:
                remove_uploaded_file(item)
            return

        upload_root = os.path.realpath(app.config["UPLOAD_FOLDER"])
        target = os.path.realpath(os.path.join(upload_root, str(relative_path)))
        if os.path.commonpath([upload_root, target]) != upload_root:
            app.logger.warning("Refusing to remove file outside uploads: %s", relative_path)
            return
        try:
            os.remove(target)
        except FileNotFoundError:
            return
        except OSError as exc:
            app.logger.warning("Unable to remove upload %s: %s", relative_path, exc)

    def normalize_upload_reference(value) -> str:
        reference = str(value or "").strip()
        if "/uploads/" in reference:
            reference = reference.split("/uploads/", 1)[1]
        return reference.lstrip("/")

    def build_upload_url(relative_path: Optional[str]) -> str:
        if not relative_path:
            return ""

        sanitized = str(relative_path).strip()
        if not sanitized:
            return ""

        return urljoin(request.host_url, f"uploads/{sanitized}")

    def apply_image_changes(document, payload, folder: str, limit: int):
        """Drop requested images and append newly uploaded ones.

        Returns ``(images, removed, added, error)``; nothing is touched on disk
        for removals until the caller has persisted the new list.
        """
        current_images = [str(path) for path in document.get("images") or [] if path]
        requested_removals = {
            normalize_upload_reference(item)
            for item in parse_json_list(
                payload.get("remove_images") or payload.get("removeImages")
            )
        }
        removed = [path for path in current_images if path in requested_removals]
        remaining = [path for path in current_images if path not in requested_removals]

        added, image_error = save_uploaded_images(
            collect_request_images(), folder, limit
        )
        if image_error:
            return current_images, [], [], image_error
        return remaining + added, removed, added, None

    # --- Users ---

    def default_preferences() -> Dict:
        return {"newsletter": True, "notifications": True, "privacy": "public"}

    def build_user_document(
        name: str, email: str, phone: str, password: str, role: str = "user"
    ) -> Dict:
        now = datetime.utcnow()
        return {
            "name": name,
            "email": email,
            "phone": phone,
            "password": hash_password(password),
            "role": role if role in USER_ROLES else "user",
            "is_active": True,
            "avatar": None,
            "bio": "",
            "location": "",
            "preferences": default_preferences(),
            "stats": {"posts_count": 0, "comments_count": 0},
            "last_login": None,
            "created_at": now,
            "updated_at": now,
        }

    def serialize_author(user_document) -> Dict:
        return {
            "id": str(user_document.get("_id")),
            "name": user_document.get("name", "") or "",
            "avatar_url": build_upload_url(user_document.get("avatar")),
        }

    def fetch_user_summaries(user_ids) -> Dict[ObjectId, Dict]:
        normalized_ids = {to_object_id(user_id) for user_id in user_ids if user_id}
        normalized_ids.discard(None)
        if not normalized_ids:
            return {}
        return {
            user_document["_id"]: serialize_author(user_document)
            for user_document in db.users.find({"_id": {"$in": list(normalized_ids)}})
        }

    def build_author_map(documents, field: str = "author") -> Dict[ObjectId, Dict]:
        return fetch_user_summaries(document.get(field) for document in documents)

    def resolve_author(user_map: Optional[Dict], author_id) -> Dict:
        if user_map is None:
            user_map = fetch_user_summaries([author_id])
        summary = user_map.get(author_id)
        if summary:
            return summary
        return {
            "id": str(author_id) if author_id else None,
            "name": "مستخدم محذوف",
            "avatar_url": "",
        }

    def serialize_user_profile(user_document) -> Dict:
        if not user_document:
            return {}

        preferences = default_preferences()
        stored_preferences = user_document.get("preferences")
        if isinstance(stored_preferences, dict):
            preferences.update(stored_preferences)
        stats = user_document.get("stats") if isinstance(user_document.get("stats"), dict) else {}

        return {
            "id": str(user_document.get("_id")),
            "name": user_document.get("name", "") or "",
            "email": user_document.get("email", "") or "",
            "phone": user_document.get("phone", "") or "",
            "role": user_document.get("role", "user"),
            "is_admin": is_admin(user_document),
            "is_active": bool(user_document.get("is_active", True)),
            "avatar_url": build_upload_url(user_document.get("avatar")),
            "bio": user_document.get("bio", "") or "",
            "location": user_document.get("location", "") or "",
            "preferences": preferences,
            "stats": {
                "posts_count": int(stats.get("posts_count", 0) or 0),
                "comments_count": int(stats.get("comments_count", 0) or 0),
            },
            "last_login": serialize_datetime(user_document.get("last_login")),
            "created_at": serialize_datetime(user_document.get("created_at")),
        }

    def serialize_public_profile(user_document) -> Dict:
        profile = serialize_user_profile(user_document)
        for private_field in ("email", "phone", "preferences", "is_active", "last_login"):
            profile.pop(private_field, None)
        return profile

    def issue_token(user_document) -> str:
        return create_access_token(identity=str(user_document["_id"]))

    def adjust_user_stat(user_id, field: str, amount: int):
        if not user_id:
            return
        db.users.update_one({"_id": user_id}, {"$inc": {f"stats.{field}": amount}})

    def ensure_default_admin():
        admin_email = normalize_email(app.config.get("DEFAULT_ADMIN_EMAIL"))
        admin_password = app.config.get("DEFAULT_ADMIN_PASSWORD") or ""
        if not admin_email or not admin_password:
            return None

        existing_admin = db.users.find_one({"email": admin_email})
        if existing_admin:
            if not is_admin(existing_admin) or not existing_admin.get("is_active", True):
                db.users.update_one(
                    {"_id": existing_admin["_id"]},
                    {"$set": {"role": "admin", "is_active": True}},
                )
                app.logger.info("Existing account %s promoted to admin", admin_email)
            return existing_admin["_id"]

        admin_document = build_user_document(
            app.config.get("DEFAULT_ADMIN_NAME") or "مدير الموقع",
            admin_email,
            str(app.config.get("DEFAULT_ADMIN_PHONE") or "").strip(),
            admin_password,
            role="admin",
        )
        result = db.users.insert_one(admin_document)
        app.logger.info("Default admin account created for %s", admin_email)
        return result.inserted_id

    try:
        ensure_default_admin()
    except Exception as exc:
        app.logger.warning("Unable to ensure default admin account: %s", exc)

    # --- Likes and comment threads ---

    def toggle_like(collection, document, user_id) -> Tuple[bool, int]:
        if user_id in (document.get("likes") or []):
            collection.update_one(
                {"_id": document["_id"], "likes": user_id},
                {"$pull": {"likes": user_id}, "$inc": {"likes_count": -1}},
            )
        else:
            collection.update_one(
                {"_id": document["_id"], "likes": {"$ne": user_id}},
                {"$addToSet": {"likes": user_id}, "$inc": {"likes_count": 1}},
            )
        # ``document`` may be stale; report the state that was actually stored.
        refreshed = collection.find_one({"_id": document["_id"]}) or {}
        likes = refreshed.get("likes") or []
        return user_id in likes, len(likes)

    target_collections = {
        "Article": db.articles,
        "Post": db.posts,
        "Product": db.products,
    }

    def normalize_target_type(value) -> Optional[str]:
        candidate = str(value or "").strip().lower()
        for target_type in COMMENT_TARGET_TYPES:
            if target_type.lower() == candidate:
                return target_type
        return None

    def delete_comments_for_target(target_type: str, target_id) -> int:
        author_counts: Dict[ObjectId, int] = {}
        for comment in db.comments.find(
            {"target_type": target_type, "target_id": target_id}, {"author": 1}
        ):
            author_id = comment.get("author")
            if author_id:
                author_counts[author_id] = author_counts.get(author_id, 0) + 1
        result = db.comments.delete_many(
            {"target_type": target_type, "target_id": target_id}
        )
        for author_id, count in author_counts.items():
            adjust_user_stat(author_id, "comments_count", -count)
        return result.deleted_count

    def collect_comment_thread(comment_document) -> List[Dict]:
        thread = [comment_document]
        pending = [comment_document["_id"]]
        while pending:
            parent_id = pending.pop()
            for reply in db.comments.find({"parent_comment": parent_id}):
                thread.append(reply)
                pending.append(reply["_id"])
        return thread

    def delete_comment_thread(comment_document) -> int:
        thread = collect_comment_thread(comment_document)
        thread_ids = [comment["_id"] for comment in thread]
        result = db.comments.delete_many({"_id": {"$in": thread_ids}})

        parent_id = comment_document.get("parent_comment")
        if parent_id:
            db.comments.update_one(
                {"_id": parent_id}, {"$pull": {"replies": comment_document["_id"]}}
            )

        target_collection = target_collections.get(comment_document.get("target_type"))
        if target_collection is not None and result.deleted_count:
            target_collection.update_one(
                {"_id": comment_document.get("target_id")},
                {"$inc": {"comments_count": -result.deleted_count}},
            )
        for comment in thread:
            adjust_user_stat(comment.get("author"), "comments_count", -1)
        return result.deleted_count

    # --- Serializers ---

    def serialize_article(article_document, user_map=None, viewer=None) -> Dict:
        likes = article_document.get("likes") or []
        slug = article_document.get("slug") or ""
        article_id = str(article_document.get("_id"))
        return {
            "id": article_id,
            "title": article_document.get("title", ""),
            "slug": slug,
            "url": f"/articles/{slug or article_id}",
            "excerpt": article_document.get("excerpt", ""),
            "content": article_document.get("content", ""),
            "category": article_document.get("category", DEFAULT_CATEGORY),
            "tags": article_document.get("tags") or [],
            "images": [build_upload_url(path) for path in article_document.get("images") or []],
            "author": resolve_author(user_map, article_document.get("author")),
            "featured": bool(article_document.get("featured")),
            "status": article_document.get("status", "published"),
            "views": int(article_document.get("views", 0) or 0),
            "likes_count": len(likes),
            "is_liked": bool(viewer) and viewer["_id"] in likes,
            "reading_time": int(article_document.get("reading_time", 0) or 0),
            "comments_enabled": bool(article_document.get("comments_enabled", True)),
            "comments_count": int(article_document.get("comments_count", 0) or 0),
            "published_at": serialize_datetime(article_document.get("published_at")),
            "created_at": serialize_datetime(article_document.get("created_at")),
            "updated_at": serialize_datetime(article_document.get("updated_at")),
        }

    def serialize_post(post_document, user_map=None, viewer=None) -> Dict:
        likes = post_document.get("likes") or []
        serialized = {
            "id": str(post_document.get("_id")),
            "title": post_document.get("title", ""),
            "content": post_document.get("content", ""),
            "type": post_document.get("type", "community"),
            "category": post_document.get("category"),
            "tags": post_document.get("tags") or [],
            "images": [build_upload_url(path) for path in post_document.get("images") or []],
            "author": resolve_author(user_map, post_document.get("author")),
            "views": int(post_document.get("views", 0) or 0),
            "likes_count": len(likes),
            "is_liked": bool(viewer) and viewer["_id"] in likes,
            "comments_count": int(post_document.get("comments_count", 0) or 0),
            "featured": bool(post_document.get("featured")),
            "pinned": bool(post_document.get("pinned")),
            "approved": bool(post_document.get("approved", True)),
            "created_at": serialize_datetime(post_document.get("created_at")),
            "updated_at": serialize_datetime(post_document.get("updated_at")),
        }
        if serialized["type"] == "ad":
            ad_details = post_document.get("ad_details") or {}
            serialized["ad_details"] = {
                "link": ad_details.get("link", ""),
                "button_text": ad_details.get("button_text", "اقرأ المزيد"),
                "featured": bool(ad_details.get("featured")),
            }
        return serialized

    def serialize_comment(comment_document, user_map=None, viewer=None, replies=None) -> Dict:
        likes = comment_document.get("likes") or []
        reply_ids = comment_document.get("replies") or []
        serialized = {
            "id": str(comment_document.get("_id")),
            "content": comment_document.get("content", ""),
            "author": resolve_author(user_map, comment_document.get("author")),
            "target_type": comment_document.get("target_type"),
            "target_id": str(comment_document.get("target_id")),
            "parent_comment": str(comment_document["parent_comment"])
            if comment_document.get("parent_comment")
            else None,
            "reply_count": len(reply_ids),
            "likes_count": len(likes),
            "is_liked": bool(viewer) and viewer["_id"] in likes,
            "approved": bool(comment_document.get("approved", True)),
            "edited": bool(comment_document.get("edited")),
            "created_at": serialize_datetime(comment_document.get("created_at")),
            "updated_at": serialize_datetime(comment_document.get("updated_at")),
        }
        if replies is not None:
            serialized["replies"] = replies
        return serialized

    def serialize_moderated_comment(comment_document, user_map=None) -> Dict:
        serialized = serialize_comment(comment_document, user_map)
        serialized.update(
            {
                "reported": bool(comment_document.get("reported")),
                "report_count": int(comment_document.get("report_count", 0) or 0),
                "report_reasons": comment_document.get("report_reasons") or [],
                "edit_history": [
                    {
                        "content": entry.get("content", ""),
                        "reason": entry.get("reason", ""),
                        "edited_at": serialize_datetime(entry.get("edited_at")),
                    }
                    for entry in comment_document.get("edit_history") or []
                ],
            }
        )
        return serialized

    def serialize_product(product_document, include_reviews: bool = False) -> Dict:
        price_value = safe_float(product_document.get("price"), 0.0)
        serialized = {
            "id": str(product_document.get("_id")),
            "name": product_document.get("name", ""),
            "description": product_document.get("description", ""),
            "price": round(price_value, 2),
            "category": product_document.get("category", ""),
            "tags": product_document.get("tags") or [],
            "images": [build_upload_url(path) for path in product_document.get("images") or []],
            "stock_quantity": int(product_document.get("stock_quantity", 0) or 0),
            "in_stock": bool(product_document.get("in_stock")),
            "featured": bool(product_document.get("featured")),
            "average_rating": safe_float(product_document.get("average_rating"), 0.0),
            "reviews_count": int(product_document.get("reviews_count", 0) or 0),
            "comments_count": int(product_document.get("comments_count", 0) or 0),
            "created_at": serialize_datetime(product_document.get("created_at")),
            "updated_at": serialize_datetime(product_document.get("updated_at")),
        }
        if include_reviews:
            serialized["reviews"] = [
                {
                    "user": str(review.get("user")),
                    "name": review.get("name", ""),
                    "rating": int(review.get("rating", 0) or 0),
                    "comment": review.get("comment", ""),
                    "created_at": serialize_datetime(review.get("created_at")),
                }
                for review in product_document.get("reviews") or []
            ]
        return serialized

    def serialize_order(order_document, include_customer: bool = True) -> Dict:
        serialized = {
            "id": str(order_document.get("_id")),
            "order_number": order_document.get("order_number", ""),
            "items": [
                {
                    "product": str(item.get("product")) if item.get("product") else None,
                    "product_name": item.get("product_name", ""),
                    "price": round(safe_float(item.get("price"), 0.0), 2),
                    "quantity": int(item.get("quantity", 0) or 0),
                    "image": build_upload_url(item.get("image")),
                }
                for item in order_document.get("items") or []
            ],
            "total": round(safe_float(order_document.get("total"), 0.0), 2),
            "status": order_document.get("status", "pending"),
            "payment_method": order_document.get("payment_method", "cash_on_delivery"),
            "tracking_number": order_document.get("tracking_number") or "",
            "notes": order_document.get("notes") or "",
            "timeline": [
                {
                    "status": entry.get("status"),
                    "note": entry.get("note", ""),
                    "changed_by": str(entry["changed_by"]) if entry.get("changed_by") else None,
                    "at": serialize_datetime(entry.get("at")),
                }
                for entry in order_document.get("timeline") or []
            ],
            "created_at": serialize_datetime(order_document.get("created_at")),
            "updated_at": serialize_datetime(order_document.get("updated_at")),
        }
        if include_customer:
            serialized["customer"] = str(order_document.get("customer"))
            serialized["customer_info"] = order_document.get("customer_info") or {}
            serialized["shipping_address"] = order_document.get("shipping_address") or {}
        return serialized

    def serialize_theme(theme_document) -> Dict:
        serialized = {field: theme_document.get(field, DEFAULT_THEME[field]) for field in DEFAULT_THEME}
        serialized.update(
            {
                "id": str(theme_document["_id"]) if theme_document.get("_id") else None,
                "is_active": bool(theme_document.get("is_active")),
                "created_by": theme_document.get("created_by", "admin"),
                "created_at": serialize_datetime(theme_document.get("created_at")),
                "updated_at": serialize_datetime(theme_document.get("updated_at")),
            }
        )
        return serialized

    # --- ROUTES ---

    @app.route("/health")
    @limiter.exempt
    def health():
        database_status = "connected"
        try:
            db.command("ping")
        except Exception as exc:
            app.logger.warning("Database ping failed: %s", exc)
            database_status = "disconnected"
        return jsonify(
            {
                "status": "ok",
                "message": "Server is running",
                "timestamp": serialize_datetime(datetime.utcnow()),
                "database": database_status,
                "environment": app.config.get("APP_ENV", "development"),
            }
        )

    @app.route("/api/test")
    def api_test():
        return jsonify(
            {
                "message": "API is working",
                "timestamp": serialize_datetime(datetime.utcnow()),
                "origin": request.headers.get("Origin"),
                "user_agent": request.headers.get("User-Agent"),
                "method": request.method,
            }
        )

    @app.route("/uploads/<path:filename>")
    def serve_uploaded_file(filename: str):
        return send_from_directory(app.config["UPLOAD_FOLDER"], filename)

    # --- Auth and users ---

    @app.route("/api/auth/register", methods=["POST"])
    def register():
        payload = read_payload()
        name = str(payload.get("name", "")).strip()
        email = normalize_email(payload.get("email"))
        phone = str(payload.get("phone", "")).strip()
        password = str(payload.get("password", ""))
        confirm_password = payload.get("confirm_password", payload.get("confirmPassword"))

        if not name or not email or not phone or not password:
            return jsonify({"message": "جميع الحقول مطلوبة"}), 400
        if len(name) > 50:
            return jsonify({"message": "الاسم يجب أن يكون أقل من 50 حرف"}), 400
        if not is_valid_email(email):
            return jsonify({"message": "البريد الإلكتروني غير صحيح"}), 400
        if len(password) < 6:
            return jsonify({"message": "كلمة المرور يجب أن تكون 6 أحرف على الأقل"}), 400
        if confirm_password is not None and str(confirm_password) != password:
            return jsonify({"message": "كلمات المرور غير متطابقة"}), 400

        if db.users.find_one({"email": email}):
            return jsonify({"message": "البريد الإلكتروني مستخدم بالفعل"}), 400
        if db.users.find_one({"phone": phone}):
            return jsonify({"message": "رقم الهاتف مستخدم بالفعل"}), 400

        user_document = build_user_document(name, email, phone, password)
        insert_result = db.users.insert_one(user_document)
        user_document["_id"] = insert_result.inserted_id

        record_audit_log(
            user_document, "Registered new account", {"user_id": str(insert_result.inserted_id)}
        )

        return (
            jsonify(
                {
                    "message": "تم إنشاء الحساب بنجاح",
                    "token": issue_token(user_document),
                    "user": serialize_user_profile(user_document),
                }
            ),
            201,
        )

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        payload = read_payload()
        identifier = str(payload.get("email") or payload.get("phone") or "").strip()
        password = str(payload.get("password", ""))

        if not identifier or not password:
            return jsonify({"message": "البريد الإلكتروني وكلمة المرور مطلوبان"}), 400

        if "@" in identifier:
            user = db.users.find_one({"email": normalize_email(identifier)})
        else:
            user = db.users.find_one({"phone": identifier})

        if not user or not password_matches(password, user.get("password")):
            return (
                jsonify(
                    {
                        "message": "بيانات الدخول غير صحيحة",
                        "code": "INVALID_CREDENTIALS",
                    }
                ),
                401,
            )

        if not user.get("is_active", True):
            return (
                jsonify(
                    {
                        "message": "تم تعليق حسابك، يرجى التواصل مع الإدارة",
                        "code": "ACCOUNT_SUSPENDED",
                    }
                ),
                403,
            )

        now = datetime.utcnow()
        db.users.update_one({"_id": user["_id"]}, {"$set": {"last_login": now}})
        user["last_login"] = now

        record_audit_log(
            user,
            "Signed in",
            {"ip": request.headers.get("X-Forwarded-For", request.remote_addr)},
        )

        return jsonify(
            {
                "message": "تم تسجيل الدخول بنجاح",
                "token": issue_token(user),
                "user": serialize_user_profile(user),
            }
        )

    @app.route("/api/auth/me", methods=["GET"])
    @jwt_required()
    def current_profile():
        current_user, auth_error = require_active_user()
        if auth_error:
            return auth_error
        return jsonify({"user": serialize_user_profile(current_user)})

    @app.route("/api/auth/profile", methods=["PUT"])
    @jwt_required()
    def update_profile():
        current_user, auth_error = require_active_user()
        if auth_error:
            return auth_error

        payload = read_payload()
        updates: Dict[str, object] = {}

        if "name" in payload:
            name = str(payload.get("name") or "").strip()
            if not name:
                return jsonify({"message": "الاسم مطلوب"}), 400
            if len(name) > 50:
                return jsonify({"message": "الاسم يجب أن يكون أقل من 50 حرف"}), 400
            updates["name"] = name

        if "phone" in payload:
            phone = str(payload.get("phone") or "").strip()
            if not phone:
                return jsonify({"message": "رقم الهاتف مطلوب"}), 400
            if phone != current_user.get("phone") and db.users.find_one(
                {"phone": phone, "_id": {"$ne": current_user["_id"]}}
            ):
                return jsonify({"message": "رقم الهاتف مستخدم بالفعل"}), 400
            updates["phone"] = phone

        if "bio" in payload:
            bio = str(payload.get("bio") or "").strip()
            if len(bio) > 500:
                return jsonify({"message": "النبذة الشخصية يجب أن تكون أقل من 500 حرف"}), 400
            updates["bio"] = bio

        if "location" in payload:
            location = str(payload.get("location") or "").strip()
            if len(location) > 100:
                return jsonify({"message": "الموقع يجب أن يكون أقل من 100 حرف"}), 400
            updates["location"] = location

        if "preferences" in payload:
            raw_preferences = payload.get("preferences")
            if isinstance(raw_preferences, str):
                try:
                    raw_preferences = json.loads(raw_preferences)
                except (json.JSONDecodeError, ValueError):
                    return jsonify({"message": "تفضيلات غير صالحة"}), 400
            if not isinstance(raw_preferences, dict):
                return jsonify({"message": "تفضيلات غير صالحة"}), 400
            preferences = default_preferences()
            stored_preferences = current_user.get("preferences")
            if isinstance(stored_preferences, dict):
                preferences.update(stored_preferences)
            for key in ("newsletter", "notifications"):
                if key in raw_preferences:
                    preferences[key] = parse_bool(raw_preferences.get(key), preferences[key])
            if "privacy" in raw_preferences:
                privacy = str(raw_preferences.get("privacy") or "").strip().lower()
                if privacy not in PRIVACY_LEVELS:
                    return jsonify({"message": "مستوى الخصوصية غير صالح"}), 400
                preferences["privacy"] = privacy
            updates["preferences"] = preferences

        previous_avatar = current_user.get("avatar")
        avatar_file = request.files.get("avatar") if request.files else None
        if avatar_file and avatar_file.filename:
            saved_avatar, avatar_error = save_uploaded_image(avatar_file, "avatars")
            if avatar_error:
                return jsonify({"message": avatar_error}), 400
            updates["avatar"] = saved_avatar

        if not updates:
            return jsonify({"message": "لا توجد تغييرات لحفظها"}), 400

        updates["updated_at"] = datetime.utcnow()
        db.users.update_one({"_id": current_user["_id"]}, {"$set": updates})
        if "avatar" in updates and previous_avatar:
            remove_uploaded_file(previous_avatar)

        updated_user = db.users.find_one({"_id": current_user["_id"]})
        record_audit_log(
            updated_user,
            "Updated profile",
            {"fields": ",".join(sorted(key for key in updates if key != "updated_at"))},
        )

        return jsonify(
            {
                "message": "تم تحديث الملف الشخصي بنجاح",
                "user": serialize_user_profile(updated_user),
            }
        )

    @app.route("/api/auth/password", methods=["PUT"])
    @jwt_required()
    def change_password():
        current_user, auth_error = require_active_user()
        if auth_error:
            return auth_error

        payload = read_payload()
        current_password = str(
            payload.get("current_password") or payload.get("currentPassword") or ""
        )
        new_password = str(payload.get("new_password") or payload.get("newPassword") or "")

        if not current_password or not new_password:
            return jsonify({"message": "كلمة المرور الحالية والجديدة مطلوبتان"}), 400
        if len(new_password) < 6:
            return jsonify({"message": "كلمة المرور يجب أن تكون 6 أحرف على الأقل"}), 400
        if not password_matches(current_password, current_user.get("password")):
            return jsonify({"message": "كلمة المرور الحالية غير صحيحة"}), 400

        db.users.update_one(
            {"_id": current_user["_id"]},
            {
                "$set": {
                    "password": hash_password(new_password),
                    "updated_at": datetime.utcnow(),
                }
            },
        )
        record_audit_log(current_user, "Changed password")

        return jsonify({"message": "تم تغيير كلمة المرور بنجاح"})

    @app.route("/api/users/<user_id>", methods=["GET"])
    def public_profile(user_id: str):
        user_object_id = to_object_id(user_id)
        user_document = db.users.find_one({"_id": user_object_id}) if user_object_id else None
        if not user_document or not user_document.get("is_active", True):
            return jsonify({"message": "المستخدم غير موجود"}), 404
        return jsonify({"user": serialize_public_profile(user_document)})

    # --- Articles ---

    article_sort_orders = {
        "newest": [("created_at", -1)],
        "oldest": [("created_at", 1)],
        "views": [("views", -1), ("created_at", -1)],
        "popular": [("likes_count", -1), ("views", -1)],
        "title": [("title", 1)],
    }

    def build_unique_slug(title: str, exclude_id=None) -> str:
        base_slug = slugify_title(title) or uuid4().hex[:8]
        candidate = base_slug
        suffix = 1
        while True:
            query: Dict[str, object] = {"slug": candidate}
            if exclude_id:
                query["_id"] = {"$ne": exclude_id}
            if not db.articles.find_one(query, {"_id": 1}):
                return candidate
            candidate = f"{base_slug}-{suffix}"
            suffix += 1

    def validate_article_fields(payload, *, partial: bool = False):
        """Return ``(fields, error_message)`` for an article payload."""
        fields: Dict[str, object] = {}

        if not partial or "title" in payload:
            title = str(payload.get("title") or "").strip()
            if not title:
                return None, "العنوان والمحتوى مطلوبان"
            if len(title) > 200:
                return None, "العنوان يجب أن يكون أقل من 200 حرف"
            fields["title"] = title

        if not partial or "content" in payload:
            content = str(payload.get("content") or "").strip()
            if not content:
                return None, "العنوان والمحتوى مطلوبان"
            if len(content) < 100:
                return None, "المحتوى يجب أن يكون 100 حرف على الأقل"
            fields["content"] = content
            fields["reading_time"] = calculate_reading_time(content)

        if "excerpt" in payload:
            excerpt = str(payload.get("excerpt") or "").strip()
            if len(excerpt) > 300:
                return None, "المقتطف يجب أن يكون أقل من 300 حرف"
            if excerpt:
                fields["excerpt"] = excerpt
            elif "content" in fields:
                fields["excerpt"] = build_excerpt(fields["content"])
        elif not partial:
            fields["excerpt"] = build_excerpt(fields["content"])

        if not partial or "category" in payload:
            category = str(payload.get("category") or DEFAULT_CATEGORY).strip()
            if category not in ARTICLE_CATEGORIES:
                return None, "الفئة غير صالحة"
            fields["category"] = category

        if not partial or "tags" in payload:
            tags = parse_tags(payload.get("tags"))
            if any(len(tag) > 30 for tag in tags):
                return None, "الوسم يجب أن يكون أقل من 30 حرف"
            fields["tags"] = tags

        if not partial or "status" in payload:
            status = str(payload.get("status") or "published").strip().lower()
            if status not in ARTICLE_STATUSES:
                return None, "حالة المقال غير صالحة"
            fields["status"] = status

        if not partial or "featured" in payload:
            fields["featured"] = parse_bool(payload.get("featured"))

        if "comments_enabled" in payload or "commentsEnabled" in payload:
            fields["comments_enabled"] = parse_bool(
                payload.get("comments_enabled", payload.get("commentsEnabled")),
                default=True,
            )
        elif not partial:
            fields["comments_enabled"] = True

        return fields, None

    def find_article(identifier: str):
        article_id = to_object_id(identifier)
        if article_id:
            article = db.articles.find_one({"_id": article_id})
            if article:
                return article
        return db.articles.find_one({"slug": identifier})

    def list_articles(query: Dict, sort_order, limit: int, skip: int = 0):
        cursor = db.articles.find(query).sort(sort_order).skip(skip).limit(limit)
        return list(cursor)

    @app.route("/api/articles", methods=["GET"])
    def get_articles():
        viewer = get_optional_user()
        page, limit, skip = read_pagination(10, max_limit=50)

        query: Dict[str, object] = {"status": "published"}
        search_term = (request.args.get("search") or "").strip()
        if search_term:
            pattern = escape_search(search_term)
            query["$or"] = [
                {"title": pattern},
                {"content": pattern},
                {"excerpt": pattern},
            ]
        category = (request.args.get("category") or "").strip()
        if category and category != "all":
            query["category"] = category
        if parse_bool(request.args.get("featured")):
            query["featured"] = True
        tag = (request.args.get("tag") or "").strip()
        if tag:
            query["tags"] = tag

        sort_key = (request.args.get("sort") or "newest").strip().lower()
        sort_order = article_sort_orders.get(sort_key, article_sort_orders["newest"])

        articles = list_articles(query, sort_order, limit, skip)
        total = db.articles.count_documents(query)
        user_map = build_author_map(articles)

        return jsonify(
            {
                "articles": [
                    serialize_article(article, user_map, viewer) for article in articles
                ],
                "pagination": build_pagination(page, limit, total),
            }
        )

    @app.route("/api/articles/featured", methods=["GET"])
    def get_featured_articles():
        limit = min(max(safe_positive_int(request.args.get("limit"), 6), 1), 20)
        articles = list_articles(
            {"status": "published", "featured": True}, [("created_at", -1)], limit
        )
        user_map = build_author_map(articles)
        return jsonify(
            {"articles": [serialize_article(article, user_map) for article in articles]}
        )

    @app.route("/api/articles/popular", methods=["GET"])
    def get_popular_articles():
        limit = min(max(safe_positive_int(request.args.get("limit"), 5), 1), 20)
        articles = list_articles(
            {"status": "published"}, [("views", -1), ("likes_count", -1)], limit
        )
        user_map = build_author_map(articles)
        return jsonify(
            {"articles": [serialize_article(article, user_map) for article in articles]}
        )

    @app.route("/api/articles/category/<category>", methods=["GET"])
    def get_articles_by_category(category: str):
        if category not in ARTICLE_CATEGORIES:
            return jsonify({"message": "الفئة غير صالحة"}), 400

        page, limit, skip = read_pagination(10, max_limit=50)
        query = {"status": "published", "category": category}
        articles = list_articles(query, [("created_at", -1)], limit, skip)
        total = db.articles.count_documents(query)
        user_map = build_author_map(articles)

        return jsonify(
            {
                "category": category,
                "articles": [serialize_article(article, user_map) for article in articles],
                "pagination": build_pagination(page, limit, total),
            }
        )

    @app.route("/api/articles/<identifier>", methods=["GET"])
    def get_article(identifier: str):
        viewer = get_optional_user()
        article = find_article(identifier)
        if not article or (article.get("status") != "published" and not is_admin(viewer)):
            return jsonify({"message": "المقال غير موجود"}), 404

        db.articles.update_one({"_id": article["_id"]}, {"$inc": {"views": 1}})
        article["views"] = int(article.get("views", 0) or 0) + 1

        related = list_articles(
            {
                "status": "published",
                "category": article.get("category"),
                "_id": {"$ne": article["_id"]},
            },
            [("created_at", -1)],
            5,
        )
        user_map = build_author_map([article] + related)

        return jsonify(
            {
                "article": serialize_article(article, user_map, viewer),
                "related_articles": [
                    serialize_article(item, user_map) for item in related
                ],
            }
        )

    @app.route("/api/articles", methods=["POST"])
    @jwt_required()
    def create_article():
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = read_payload()
        fields, validation_error = validate_article_fields(payload)
        if validation_error:
            return jsonify({"message": validation_error}), 400

        images, image_error = save_uploaded_images(
            collect_request_images(), "articles", MAX_ARTICLE_IMAGES
        )
        if image_error:
            return jsonify({"message": image_error}), 400

        now = datetime.utcnow()
        article_document = {
            **fields,
            "slug": build_unique_slug(fields["title"]),
            "images": images,
            "author": admin_user["_id"],
            "views": 0,
            "likes": [],
            "likes_count": 0,
            "comments_count": 0,
            "published_at": now if fields["status"] == "published" else None,
            "created_at": now,
            "updated_at": now,
        }

        try:
            insert_result = db.articles.insert_one(article_document)
        except PyMongoError:
            remove_uploaded_file(images)
            raise
        article_document["_id"] = insert_result.inserted_id

        record_audit_log(
            admin_user,
            "Created article",
            {"article_id": str(insert_result.inserted_id), "title": fields["title"]},
        )

        return (
            jsonify(
                {
                    "message": "تم إنشاء المقال بنجاح",
                    "article": serialize_article(article_document),
                }
            ),
            201,
        )

    @app.route("/api/articles/<article_id>", methods=["PUT"])
    @jwt_required()
    def update_article(article_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        article_object_id = to_object_id(article_id)
        article = db.articles.find_one({"_id": article_object_id}) if article_object_id else None
        if not article:
            return jsonify({"message": "المقال غير موجود"}), 404

        payload = read_payload()
        fields, validation_error = validate_article_fields(payload, partial=True)
        if validation_error:
            return jsonify({"message": validation_error}), 400

        images, removed_images, added_images, image_error = apply_image_changes(
            article, payload, "articles", MAX_ARTICLE_IMAGES
        )
        if image_error:
            return jsonify({"message": image_error}), 400
        if len(images) > MAX_ARTICLE_IMAGES:
            remove_uploaded_file(added_images)
            return (
                jsonify({"message": f"يمكنك رفع {MAX_ARTICLE_IMAGES} صور كحد أقصى"}),
                400,
            )

        fields["images"] = images
        if fields.get("status") == "published" and not article.get("published_at"):
            fields["published_at"] = datetime.utcnow()
        fields["updated_at"] = datetime.utcnow()

        db.articles.update_one({"_id": article["_id"]}, {"$set": fields})
        remove_uploaded_file(removed_images)

        updated_article = db.articles.find_one({"_id": article["_id"]})
        record_audit_log(
            admin_user, "Updated article", {"article_id": str(article["_id"])}
        )

        return jsonify(
            {
                "message": "تم تحديث المقال بنجاح",
                "article": serialize_article(updated_article),
            }
        )

    @app.route("/api/articles/<article_id>", methods=["DELETE"])
    @jwt_required()
    def delete_article(article_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        article_object_id = to_object_id(article_id)
        article = db.articles.find_one({"_id": article_object_id}) if article_object_id else None
        if not article:
            return jsonify({"message": "المقال غير موجود"}), 404

        deleted_comments = delete_comments_for_target("Article", article["_id"])
        db.articles.delete_one({"_id": article["_id"]})
        remove_uploaded_file(article.get("images") or [])

        record_audit_log(
            admin_user,
            "Deleted article",
            {
                "article_id": str(article["_id"]),
                "title": article.get("title", ""),
                "deleted_comments": deleted_comments,
            },
        )

        return jsonify(
            {"message": "تم حذف المقال بنجاح", "deleted_comments": deleted_comments}
        )

    @app.route("/api/articles/<article_id>/like", methods=["POST"])
    @jwt_required()
    def like_article(article_id: str):
        current_user, auth_error = require_active_user()
        if auth_error:
            return auth_error

        article_object_id = to_object_id(article_id)
        article = db.articles.find_one({"_id": article_object_id}) if article_object_id else None
        if not article:
            return jsonify({"message": "المقال غير موجود"}), 404

        liked, likes_count = toggle_like(db.articles, article, current_user["_id"])
        return jsonify(
            {
                "message": "تم الإعجاب بالمقال" if liked else "تم إلغاء الإعجاب",
                "liked": liked,
                "likes_count": likes_count,
            }
        )

    # --- Posts ---

    post_sort_order = [("pinned", -1), ("featured", -1), ("created_at", -1)]

    def find_post(post_id: str):
        post_object_id = to_object_id(post_id)
        if not post_object_id:
            return None
        return db.posts.find_one({"_id": post_object_id})

    def can_manage_post(user_document, post_document) -> bool:
        if not user_document:
            return False
        return is_admin(user_document) or post_document.get("author") == user_document["_id"]

    def validate_post_fields(payload, *, partial: bool = False):
        fields: Dict[str, object] = {}

        if not partial or "title" in payload:
            title = str(payload.get("title") or "").strip()
            if not title:
                return None, "العنوان والمحتوى مطلوبان"
            if len(title) > 200:
                return None, "العنوان يجب أن يكون أقل من 200 حرف"
            fields["title"] = title

        if not partial or "content" in payload:
            content = str(payload.get("content") or "").strip()
            if not content:
                return None, "العنوان والمحتوى مطلوبان"
            if len(content) > 5000:
                return None, "المحتوى يجب أن يكون أقل من 5000 حرف"
            fields["content"] = content

        if not partial or "category" in payload:
            category = str(payload.get("category") or DEFAULT_CATEGORY).strip()
            if category not in POST_CATEGORIES:
                return None, "الفئة غير صالحة"
            fields["category"] = category

        if not partial or "tags" in payload:
            fields["tags"] = parse_tags(payload.get("tags"))

        return fields, None

    def read_ad_details(payload, existing: Optional[Dict] = None) -> Dict:
        ad_details = dict(existing or {})
        link = payload.get("link", payload.get("ad_link"))
        if link is not None or "link" not in ad_details:
            ad_details["link"] = str(link or "").strip()
        button_text = payload.get("button_text", payload.get("buttonText"))
        if button_text is not None or "button_text" not in ad_details:
            ad_details["button_text"] = str(button_text or "").strip() or "اقرأ المزيد"
        ad_featured = payload.get("ad_featured", payload.get("featured"))
        if ad_featured is not None or "featured" not in ad_details:
            ad_details["featured"] = parse_bool(ad_featured)
        return ad_details

    def create_post_document(author, fields: Dict, post_type: str, images: List[str]):
        now = datetime.utcnow()
        return {
            **fields,
            "type": post_type,
            "author": author["_id"],
            "images": images,
            "likes": [],
            "likes_count": 0,
            "views": 0,
            "comments_count": 0,
            "featured": False,
            "pinned": False,
            "approved": True,
            "created_at": now,
            "updated_at": now,
        }

    @app.route("/api/posts", methods=["GET"])
    def get_posts():
        viewer = get_optional_user()
        page, limit, skip = read_pagination(10, max_limit=50)

        query: Dict[str, object] = {"approved": True}
        post_type = (request.args.get("type") or "").strip().lower()
        if post_type in POST_TYPES:
            query["type"] = post_type
        category = (request.args.get("category") or "").strip()
        if category and category != "all":
            query["category"] = category
        if parse_bool(request.args.get("featured")):
            query["featured"] = True

        posts = list(
            db.posts.find(query).sort(post_sort_order).skip(skip).limit(limit)
        )
        total = db.posts.count_documents(query)
        user_map = build_author_map(posts)

        return jsonify(
            {
                "posts": [serialize_post(post, user_map, viewer) for post in posts],
                "pagination": build_pagination(page, limit, total),
            }
        )

    @app.route("/api/posts/user/<user_id>", methods=["GET"])
    def get_user_posts(user_id: str):
        viewer = get_optional_user()
        author_id = to_object_id(user_id)
        if not author_id:
            return jsonify({"message": "المستخدم غير موجود"}), 404

        page, limit, skip = read_pagination(10, max_limit=50)
        query: Dict[str, object] = {"author": author_id}
        if not viewer or (viewer["_id"] != author_id and not is_admin(viewer)):
            query["approved"] = True

        posts = list(
            db.posts.find(query).sort("created_at", -1).skip(skip).limit(limit)
        )
        total = db.posts.count_documents(query)
        user_map = build_author_map(posts)

        return jsonify(
            {
                "posts": [serialize_post(post, user_map, viewer) for post in posts],
                "pagination": build_pagination(page, limit, total),
            }
        )

    @app.route("/api/sponsor-ads", methods=["GET"])
    def get_sponsor_ads():
        limit = min(max(safe_positive_int(request.args.get("limit"), 5), 1), 20)
        ads = list(
            db.posts.find({"type": "ad", "approved": True})
            .sort([("ad_details.featured", -1), ("created_at", -1)])
            .limit(limit)
        )
        user_map = build_author_map(ads)
        return jsonify({"ads": [serialize_post(ad, user_map) for ad in ads]})

    @app.route("/api/posts/<post_id>", methods=["GET"])
    def get_post(post_id: str):
        viewer = get_optional_user()
        post = find_post(post_id)
        if not post or (not post.get("approved", True) and not can_manage_post(viewer, post)):
            return jsonify({"message": "المنشور غير موجود"}), 404

        if not viewer or viewer["_id"] != post.get("author"):
            db.posts.update_one({"_id": post["_id"]}, {"$inc": {"views": 1}})
            post["views"] = int(post.get("views", 0) or 0) + 1

        return jsonify({"post": serialize_post(post, None, viewer)})

    @app.route("/api/posts/community", methods=["POST"])
    @jwt_required()
    def create_community_post():
        current_user, auth_error = require_active_user()
        if auth_error:
            return auth_error

        payload = read_payload()
        fields, validation_error = validate_post_fields(payload)
        if validation_error:
            return jsonify({"message": validation_error}), 400

        images, image_error = save_uploaded_images(
            collect_request_images(), "posts", MAX_POST_IMAGES
        )
        if image_error:
            return jsonify({"message": image_error}), 400

        post_document = create_post_document(current_user, fields, "community", images)
        insert_result = db.posts.insert_one(post_document)
        post_document["_id"] = insert_result.inserted_id
        adjust_user_stat(current_user["_id"], "posts_count", 1)

        return (
            jsonify(
                {
                    "message": "تم نشر المنشور بنجاح",
                    "post": serialize_post(post_document, None, current_user),
                }
            ),
            201,
        )

    @app.route("/api/posts/ad", methods=["POST"])
    @jwt_required()
    def create_ad_post():
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = read_payload()
        fields, validation_error = validate_post_fields(payload)
        if validation_error:
            return jsonify({"message": validation_error}), 400

        images, image_error = save_uploaded_images(
            collect_request_images(), "posts", MAX_POST_IMAGES
        )
        if image_error:
            return jsonify({"message": image_error}), 400

        post_document = create_post_document(admin_user, fields, "ad", images)
        post_document["ad_details"] = read_ad_details(payload)
        post_document["featured"] = post_document["ad_details"]["featured"]
        insert_result = db.posts.insert_one(post_document)
        post_document["_id"] = insert_result.inserted_id
        adjust_user_stat(admin_user["_id"], "posts_count", 1)

        record_audit_log(
            admin_user,
            "Created sponsor ad",
            {"post_id": str(insert_result.inserted_id), "title": fields["title"]},
        )

        return (
            jsonify(
                {
                    "message": "تم إنشاء الإعلان بنجاح",
                    "post": serialize_post(post_document, None, admin_user),
                }
            ),
            201,
        )

    @app.route("/api/posts/<post_id>", methods=["PUT"])
    @jwt_required()
    def update_post(post_id: str):
        current_user, auth_error = require_active_user()
        if auth_error:
            return auth_error

        post = find_post(post_id)
        if not post:
            return jsonify({"message": "المنشور غير موجود"}), 404
        if not can_manage_post(current_user, post):
            return jsonify({"message": "غير مسموح لك بتعديل هذا المنشور"}), 403

        payload = read_payload()
        fields, validation_error = validate_post_fields(payload, partial=True)
        if validation_error:
            return jsonify({"message": validation_error}), 400

        if is_admin(current_user):
            if "featured" in payload:
                fields["featured"] = parse_bool(payload.get("featured"))
            if post.get("type") == "ad":
                fields["ad_details"] = read_ad_details(payload, post.get("ad_details"))

        images, removed_images, added_images, image_error = apply_image_changes(
            post, payload, "posts", MAX_POST_IMAGES
        )
        if image_error:
            return jsonify({"message": image_error}), 400
        if len(images) > MAX_POST_IMAGES:
            remove_uploaded_file(added_images)
            return (
                jsonify({"message": f"يمكنك رفع {MAX_POST_IMAGES} صور كحد أقصى"}),
                400,
            )

        fields["images"] = images
        fields["updated_at"] = datetime.utcnow()
        db.posts.update_one({"_id": post["_id"]}, {"$set": fields})
        remove_uploaded_file(removed_images)

        updated_post = db.posts.find_one({"_id": post["_id"]})
        return jsonify(
            {
                "message": "تم تحديث المنشور بنجاح",
                "post": serialize_post(updated_post, None, current_user),
            }
        )

    @app.route("/api/posts/<post_id>", methods=["DELETE"])
    @jwt_required()
    def delete_post(post_id: str):
        current_user, auth_error = require_active_user()
        if auth_error:
            return auth_error

        post = find_post(post_id)
        if not post:
            return jsonify({"message": "المنشور غير موجود"}), 404
        if not can_manage_post(current_user, post):
            return jsonify({"message": "غير مسموح لك بحذف هذا المنشور"}), 403

        deleted_comments = delete_comments_for_target("Post", post["_id"])
        db.posts.delete_one({"_id": post["_id"]})
        remove_uploaded_file(post.get("images") or [])
        adjust_user_stat(post.get("author"), "posts_count", -1)

        if is_admin(current_user) and post.get("author") != current_user["_id"]:
            record_audit_log(
                current_user,
                "Deleted post",
                {"post_id": str(post["_id"]), "title": post.get("title", "")},
            )

        return jsonify(
            {"message": "تم حذف المنشور بنجاح", "deleted_comments": deleted_comments}
        )

    @app.route("/api/posts/<post_id>/like", methods=["POST"])
    @jwt_required()
    def like_post(post_id: str):
        current_user, auth_error = require_active_user()
        if auth_error:
            return auth_error

        post = find_post(post_id)
        if not post or not post.get("approved", True):
            return jsonify({"message": "المنشور غير موجود"}), 404

        liked, likes_count = toggle_like(db.posts, post, current_user["_id"])
        return jsonify(
            {
                "message": "تم الإعجاب بالمنشور" if liked else "تم إلغاء الإعجاب",
                "liked": liked,
                "likes_count": likes_count,
            }
        )

    # --- Comments ---

    comment_sort_orders = {
        "newest": [("created_at", -1)],
        "oldest": [("created_at", 1)],
        "popular": [("likes_count", -1), ("created_at", -1)],
    }

    def find_comment(comment_id: str):
        comment_object_id = to_object_id(comment_id)
        if not comment_object_id:
            return None
        return db.comments.find_one({"_id": comment_object_id})

    def find_comment_target(target_type: str, target_id):
        target_collection = target_collections.get(target_type)
        if target_collection is None or not target_id:
            return None
        target = target_collection.find_one({"_id": target_id})
        if not target:
            return None
        if target_type == "Article" and target.get("status") != "published":
            return None
        if target_type == "Post" and not target.get("approved", True):
            return None
        return target

    def build_reply_tree(comments, replies, user_map, viewer):
        children: Dict[ObjectId, List[Dict]] = {}
        for reply in replies:
            children.setdefault(reply.get("parent_comment"), []).append(reply)

        def serialize_branch(comment_document, depth=0):
            nested = []
            if depth < 20:
                nested = [
                    serialize_branch(child, depth + 1)
                    for child in children.get(comment_document["_id"], [])
                ]
            return serialize_comment(comment_document, user_map, viewer, nested)

        return [serialize_branch(comment) for comment in comments]

    @app.route("/api/comments/<target_type>/<target_id>", methods=["GET"])
    def get_comments(target_type: str, target_id: str):
        viewer = get_optional_user()
        normalized_type = normalize_target_type(target_type)
        if not normalized_type:
            return jsonify({"message": "نوع الهدف غير صالح"}), 400
        target_object_id = to_object_id(target_id)
        if not target_object_id:
            return jsonify({"message": "العنصر غير موجود"}), 404

        page, limit, skip = read_pagination(20, max_limit=100)
        sort_key = (request.args.get("sort") or "newest").strip().lower()
        sort_order = comment_sort_orders.get(sort_key, comment_sort_orders["newest"])

        query = {
            "target_type": normalized_type,
            "target_id": target_object_id,
            "parent_comment": None,
            "approved": True,
        }
        comments = list(db.comments.find(query).sort(sort_order).skip(skip).limit(limit))
        total = db.comments.count_documents(query)

        replies = list(
            db.comments.find(
                {
                    "target_type": normalized_type,
                    "target_id": target_object_id,
                    "parent_comment": {"$ne": None},
                    "approved": True,
                }
            ).sort("created_at", 1)
        )
        user_map = build_author_map(comments + replies)

        return jsonify(
            {
                "comments": build_reply_tree(comments, replies, user_map, viewer),
                "pagination": build_pagination(page, limit, total),
            }
        )

    @app.route("/api/comments/user/<user_id>", methods=["GET"])
    def get_user_comments(user_id: str):
        author_id = to_object_id(user_id)
        if not author_id:
            return jsonify({"message": "المستخدم غير موجود"}), 404

        page, limit, skip = read_pagination(20, max_limit=100)
        query = {"author": author_id, "approved": True}
        comments = list(
            db.comments.find(query).sort("created_at", -1).skip(skip).limit(limit)
        )
        total = db.comments.count_documents(query)
        user_map = build_author_map(comments)

        return jsonify(
            {
                "comments": [serialize_comment(comment, user_map) for comment in comments],
                "pagination": build_pagination(page, limit, total),
            }
        )

    @app.route("/api/comments", methods=["POST"])
    @jwt_required()
    def create_comment():
        current_user, auth_error = require_active_user()
        if auth_error:
            return auth_error

        payload = read_payload()
        content = str(payload.get("content") or "").strip()
        target_type = normalize_target_type(
            payload.get("target_type", payload.get("targetType"))
        )
        target_id = to_object_id(payload.get("target_id", payload.get("targetId")))
        parent_reference = payload.get(
            "parent_comment_id", payload.get("parentCommentId", payload.get("parent_comment"))
        )

        if not content:
            return jsonify({"message": "محتوى التعليق مطلوب"}), 400
        if len(content) > 1000:
            return jsonify({"message": "التعليق يجب أن يكون أقل من 1000 حرف"}), 400
        if not target_type or not target_id:
            return jsonify({"message": "نوع ومعرف الهدف مطلوبان"}), 400

        target = find_comment_target(target_type, target_id)
        if not target:
            return jsonify({"message": "العنصر المراد التعليق عليه غير موجود"}), 404
        if target_type == "Article" and not target.get("comments_enabled", True):
            return jsonify({"message": "التعليقات معطلة لهذا المقال"}), 400

        parent_comment = None
        if parent_reference:
            parent_comment = find_comment(str(parent_reference))
            if not parent_comment:
                return jsonify({"message": "التعليق الأصلي غير موجود"}), 400
            if (
                parent_comment.get("target_type") != target_type
                or parent_comment.get("target_id") != target_id
            ):
                return jsonify({"message": "التعليق الأصلي لا ينتمي لنفس العنصر"}), 400

        now = datetime.utcnow()
        comment_document = {
            "content": content,
            "author": current_user["_id"],
            "target_type": target_type,
            "target_id": target_id,
            "parent_comment": parent_comment["_id"] if parent_comment else None,
            "replies": [],
            "likes": [],
            "likes_count": 0,
            "approved": True,
            "reported": False,
            "report_count": 0,
            "report_reasons": [],
            "reported_by": [],
            "edited": False,
            "edit_history": [],
            "metadata": {
                "ip_address": request.remote_addr or "",
                "user_agent": request.headers.get("User-Agent", ""),
                "source": "web",
            },
            "created_at": now,
            "updated_at": now,
        }
        insert_result = db.comments.insert_one(comment_document)
        comment_document["_id"] = insert_result.inserted_id

        if parent_comment:
            db.comments.update_one(
                {"_id": parent_comment["_id"]},
                {"$addToSet": {"replies": insert_result.inserted_id}},
            )
        target_collections[target_type].update_one(
            {"_id": target_id}, {"$inc": {"comments_count": 1}}
        )
        adjust_user_stat(current_user["_id"], "comments_count", 1)

        return (
            jsonify(
                {
                    "message": "تم إضافة التعليق بنجاح",
                    "comment": serialize_comment(comment_document, None, current_user, []),
                }
            ),
            201,
        )

    @app.route("/api/comments/<comment_id>", methods=["PUT"])
    @jwt_required()
    def update_comment(comment_id: str):
        current_user, auth_error = require_active_user()
        if auth_error:
            return auth_error

        comment = find_comment(comment_id)
        if not comment:
            return jsonify({"message": "التعليق غير موجود"}), 404

        is_author = comment.get("author") == current_user["_id"]
        if not is_author and not is_admin(current_user):
            return jsonify({"message": "غير مسموح لك بتعديل هذا التعليق"}), 403
        if not is_admin(current_user):
            created_at = comment.get("created_at") or datetime.utcnow()
            if datetime.utcnow() - created_at > COMMENT_EDIT_WINDOW:
                return (
                    jsonify({"message": "لا يمكن تعديل التعليق بعد مرور 24 ساعة"}),
                    400,
                )

        payload = read_payload()
        content = str(payload.get("content") or "").strip()
        if not content:
            return jsonify({"message": "محتوى التعليق مطلوب"}), 400
        if len(content) > 1000:
            return jsonify({"message": "التعليق يجب أن يكون أقل من 1000 حرف"}), 400

        now = datetime.utcnow()
        db.comments.update_one(
            {"_id": comment["_id"]},
            {
                "$set": {"content": content, "edited": True, "updated_at": now},
                "$push": {
                    "edit_history": {
                        "content": comment.get("content", ""),
                        "edited_at": now,
                        "reason": str(payload.get("reason") or "").strip(),
                    }
                },
            },
        )
        updated_comment = db.comments.find_one({"_id": comment["_id"]})

        return jsonify(
            {
                "message": "تم تحديث التعليق بنجاح",
                "comment": serialize_comment(updated_comment, None, current_user),
            }
        )

    @app.route("/api/comments/<comment_id>", methods=["DELETE"])
    @jwt_required()
    def delete_comment(comment_id: str):
        current_user, auth_error = require_active_user()
        if auth_error:
            return auth_error

        comment = find_comment(comment_id)
        if not comment:
            return jsonify({"message": "التعليق غير موجود"}), 404
        if comment.get("author") != current_user["_id"] and not is_admin(current_user):
            return jsonify({"message": "غير مسموح لك بحذف هذا التعليق"}), 403

        deleted_count = delete_comment_thread(comment)
        return jsonify({"message": "تم حذف التعليق بنجاح", "deleted_count": deleted_count})

    @app.route("/api/comments/<comment_id>/like", methods=["POST"])
    @jwt_required()
    def like_comment(comment_id: str):
        current_user, auth_error = require_active_user()
        if auth_error:
            return auth_error

        comment = find_comment(comment_id)
        if not comment or not comment.get("approved", True):
            return jsonify({"message": "التعليق غير موجود"}), 404

        liked, likes_count = toggle_like(db.comments, comment, current_user["_id"])
        return jsonify(
            {
                "message": "تم الإعجاب بالتعليق" if liked else "تم إلغاء الإعجاب",
                "liked": liked,
                "likes_count": likes_count,
            }
        )

    @app.route("/api/comments/<comment_id>/report", methods=["POST"])
    @jwt_required()
    def report_comment(comment_id: str):
        current_user, auth_error = require_active_user()
        if auth_error:
            return auth_error

        comment = find_comment(comment_id)
        if not comment:
            return jsonify({"message": "التعليق غير موجود"}), 404
        if comment.get("author") == current_user["_id"]:
            return jsonify({"message": "لا يمكنك الإبلاغ عن تعليقك"}), 400

        payload = read_payload()
        reason = str(payload.get("reason") or "").strip().lower()
        if reason not in REPORT_REASONS:
            reason = "other"

        result = db.comments.update_one(
            {"_id": comment["_id"], "reported_by": {"$ne": current_user["_id"]}},
            {
                "$addToSet": {
                    "reported_by": current_user["_id"],
                    "report_reasons": reason,
                },
                "$inc": {"report_count": 1},
            },
        )
        if not result.modified_count:
            return jsonify({"message": "لقد قمت بالإبلاغ عن هذا التعليق مسبقاً"}), 400

        reported_comment = db.comments.find_one({"_id": comment["_id"]}) or {}
        hidden = int(reported_comment.get("report_count", 0) or 0) >= COMMENT_REPORT_THRESHOLD
        if hidden and not reported_comment.get("reported"):
            # Flagged for moderation only once the threshold is reached.
            db.comments.update_one(
                {"_id": comment["_id"]},
                {"$set": {"approved": False, "reported": True}},
            )
            app.logger.info(
                "Comment %s hidden after %s reports",
                comment["_id"],
                reported_comment.get("report_count"),
            )

        return jsonify({"message": "تم الإبلاغ عن التعليق، شكراً لك", "hidden": hidden})

    # --- Products ---

    product_sort_orders = {
        "newest": [("created_at", -1)],
        "price_asc": [("price", 1)],
        "price_desc": [("price", -1)],
        "rating": [("average_rating", -1), ("reviews_count", -1)],
    }

    def find_product(product_id: str):
        product_object_id = to_object_id(product_id)
        if not product_object_id:
            return None
        return db.products.find_one({"_id": product_object_id})

    def validate_product_fields(payload, *, partial: bool = False):
        fields: Dict[str, object] = {}

        if not partial or "name" in payload:
            name = str(payload.get("name") or "").strip()
            if not name:
                return None, "الاسم والوصف والسعر والفئة مطلوبة"
            if len(name) > 200:
                return None, "اسم المنتج يجب أن يكون أقل من 200 حرف"
            fields["name"] = name

        if not partial or "description" in payload:
            description = str(payload.get("description") or "").strip()
            if not description:
                return None, "الاسم والوصف والسعر والفئة مطلوبة"
            fields["description"] = description

        if not partial or "price" in payload:
            raw_price = payload.get("price")
            if raw_price is None or str(raw_price).strip() == "":
                return None, "الاسم والوصف والسعر والفئة مطلوبة"
            price = safe_float(raw_price, None)
            if price is None or price < 0:
                return None, "السعر يجب أن يكون رقماً موجباً"
            fields["price"] = round(price, 2)

        if not partial or "category" in payload:
            category = str(payload.get("category") or "").strip()
            if not category:
                return None, "الاسم والوصف والسعر والفئة مطلوبة"
            fields["category"] = category

        if not partial or "tags" in payload:
            fields["tags"] = parse_tags(payload.get("tags"))

        stock_raw = payload.get("stock_quantity", payload.get("stockQuantity"))
        if stock_raw is not None or not partial:
            try:
                stock_quantity = int(float(stock_raw if stock_raw is not None else 0))
            except (TypeError, ValueError):
                return None, "الكمية المتوفرة يجب أن تكون رقماً صحيحاً"
            if stock_quantity < 0:
                return None, "الكمية المتوفرة لا يمكن أن تكون سالبة"
            fields["stock_quantity"] = stock_quantity
            fields["in_stock"] = stock_quantity > 0

        if not partial or "featured" in payload:
            fields["featured"] = parse_bool(payload.get("featured"))

        return fields, None

    def reserve_stock(order_items) -> Optional[str]:
        """Decrement stock for every item or for none; returns an error message."""
        reserved: List[Tuple[ObjectId, int]] = []
        for item in order_items:
            result = db.products.update_one(
                {"_id": item["product"], "stock_quantity": {"$gte": item["quantity"]}},
                {"$inc": {"stock_quantity": -item["quantity"]}},
            )
            if not result.modified_count:
                for product_id, quantity in reserved:
                    db.products.update_one(
                        {"_id": product_id},
                        {"$inc": {"stock_quantity": quantity}, "$set": {"in_stock": True}},
                    )
                return f"الكمية المطلوبة من {item['product_name']} غير متوفرة"
            reserved.append((item["product"], item["quantity"]))
            db.products.update_one(
                {"_id": item["product"], "stock_quantity": {"$lte": 0}},
                {"$set": {"in_stock": False}},
            )
        return None

    def release_stock(order_items):
        for item in order_items or []:
            product_id = item.get("product")
            quantity = int(item.get("quantity", 0) or 0)
            if not product_id or quantity <= 0:
                continue
            db.products.update_one(
                {"_id": product_id},
                {"$inc": {"stock_quantity": quantity}, "$set": {"in_stock": True}},
            )

    @app.route("/api/products", methods=["GET"])
    def get_products():
        page, limit, skip = read_pagination(12, max_limit=100)

        query: Dict[str, object] = {"in_stock": True}
        category = (request.args.get("category") or "").strip()
        if category and category != "all":
            query["category"] = category
        if parse_bool(request.args.get("featured")):
            query["featured"] = True
        search_term = (request.args.get("search") or "").strip()
        if search_term:
            pattern = escape_search(search_term)
            query["$or"] = [{"name": pattern}, {"description": pattern}, {"tags": pattern}]

        price_filter: Dict[str, float] = {}
        min_price = safe_float(request.args.get("min_price"), None)
        max_price = safe_float(request.args.get("max_price"), None)
        if min_price is not None:
            price_filter["$gte"] = min_price
        if max_price is not None:
            price_filter["$lte"] = max_price
        if price_filter:
            query["price"] = price_filter

        sort_key = (request.args.get("sort") or "newest").strip().lower()
        sort_order = product_sort_orders.get(sort_key, product_sort_orders["newest"])

        products = list(db.products.find(query).sort(sort_order).skip(skip).limit(limit))
        total = db.products.count_documents(query)

        return jsonify(
            {
                "products": [serialize_product(product) for product in products],
                "pagination": build_pagination(page, limit, total),
            }
        )

    @app.route("/api/products/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        product = find_product(product_id)
        if not product:
            return jsonify({"message": "المنتج غير موجود"}), 404
        return jsonify({"product": serialize_product(product, include_reviews=True)})

    @app.route("/api/products", methods=["POST"])
    @jwt_required()
    def create_product():
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = read_payload()
        fields, validation_error = validate_product_fields(payload)
        if validation_error:
            return jsonify({"message": validation_error}), 400

        images, image_error = save_uploaded_images(
            collect_request_images(), "products", MAX_PRODUCT_IMAGES
        )
        if image_error:
            return jsonify({"message": image_error}), 400

        now = datetime.utcnow()
        product_document = {
            **fields,
            "images": images,
            "reviews": [],
            "average_rating": 0.0,
            "reviews_count": 0,
            "comments_count": 0,
            "created_at": now,
            "updated_at": now,
        }
        insert_result = db.products.insert_one(product_document)
        product_document["_id"] = insert_result.inserted_id

        record_audit_log(
            admin_user,
            "Created product",
            {"product_id": str(insert_result.inserted_id), "name": fields["name"]},
        )

        return (
            jsonify(
                {
                    "message": "تم إنشاء المنتج بنجاح",
                    "product": serialize_product(product_document),
                }
            ),
            201,
        )

    @app.route("/api/products/<product_id>", methods=["PUT"])
    @jwt_required()
    def update_product(product_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        product = find_product(product_id)
        if not product:
            return jsonify({"message": "المنتج غير موجود"}), 404

        payload = read_payload()
        fields, validation_error = validate_product_fields(payload, partial=True)
        if validation_error:
            return jsonify({"message": validation_error}), 400

        images, removed_images, added_images, image_error = apply_image_changes(
            product, payload, "products", MAX_PRODUCT_IMAGES
        )
        if image_error:
            return jsonify({"message": image_error}), 400
        if len(images) > MAX_PRODUCT_IMAGES:
            remove_uploaded_file(added_images)
            return (
                jsonify({"message": f"يمكنك رفع {MAX_PRODUCT_IMAGES} صور كحد أقصى"}),
                400,
            )

        fields["images"] = images
        fields["updated_at"] = datetime.utcnow()
        db.products.update_one({"_id": product["_id"]}, {"$set": fields})
        remove_uploaded_file(removed_images)

        updated_product = db.products.find_one({"_id": product["_id"]})
        record_audit_log(
            admin_user, "Updated product", {"product_id": str(product["_id"])}
        )

        return jsonify(
            {
                "message": "تم تحديث المنتج بنجاح",
                "product": serialize_product(updated_product),
            }
        )

    @app.route("/api/products/<product_id>", methods=["DELETE"])
    @jwt_required()
    def delete_product(product_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        product = find_product(product_id)
        if not product:
            return jsonify({"message": "المنتج غير موجود"}), 404

        deleted_comments = delete_comments_for_target("Product", product["_id"])
        db.products.delete_one({"_id": product["_id"]})
        remove_uploaded_file(product.get("images") or [])

        record_audit_log(
            admin_user,
            "Deleted product",
            {"product_id": str(product["_id"]), "name": product.get("name", "")},
        )

        return jsonify(
            {"message": "تم حذف المنتج بنجاح", "deleted_comments": deleted_comments}
        )

    def refresh_product_rating(product_id):
        product = db.products.find_one({"_id": product_id}) or {}
        average_rating, reviews_count = summarize_ratings(product.get("reviews") or [])
        db.products.update_one(
            {"_id": product_id},
            {
                "$set": {
                    "average_rating": average_rating,
                    "reviews_count": reviews_count,
                    "updated_at": datetime.utcnow(),
                }
            },
        )
        return db.products.find_one({"_id": product_id})

    @app.route("/api/products/<product_id>/reviews", methods=["POST"])
    @jwt_required()
    def add_product_review(product_id: str):
        current_user, auth_error = require_active_user()
        if auth_error:
            return auth_error

        product = find_product(product_id)
        if not product:
            return jsonify({"message": "المنتج غير موجود"}), 404

        payload = read_payload()
        try:
            rating = int(payload.get("rating"))
        except (TypeError, ValueError):
            rating = 0
        if rating < 1 or rating > 5:
            return jsonify({"message": "التقييم يجب أن يكون بين 1 و 5"}), 400
        comment = str(payload.get("comment") or "").strip()
        if len(comment) > 500:
            return jsonify({"message": "التعليق يجب أن يكون أقل من 500 حرف"}), 400

        review = {
            "user": current_user["_id"],
            "name": current_user.get("name", ""),
            "rating": rating,
            "comment": comment,
            "created_at": datetime.utcnow(),
        }
        db.products.update_one(
            {"_id": product["_id"]}, {"$pull": {"reviews": {"user": current_user["_id"]}}}
        )
        db.products.update_one({"_id": product["_id"]}, {"$push": {"reviews": review}})
        updated_product = refresh_product_rating(product["_id"])

        return (
            jsonify(
                {
                    "message": "تم إضافة التقييم بنجاح",
                    "product": serialize_product(updated_product, include_reviews=True),
                }
            ),
            201,
        )

    @app.route("/api/products/<product_id>/reviews", methods=["DELETE"])
    @jwt_required()
    def delete_product_review(product_id: str):
        current_user, auth_error = require_active_user()
        if auth_error:
            return auth_error

        product = find_product(product_id)
        if not product:
            return jsonify({"message": "المنتج غير موجود"}), 404

        result = db.products.update_one(
            {"_id": product["_id"]}, {"$pull": {"reviews": {"user": current_user["_id"]}}}
        )
        if not result.modified_count:
            return jsonify({"message": "لم تقم بتقييم هذا المنتج"}), 404

        updated_product = refresh_product_rating(product["_id"])
        return jsonify(
            {
                "message": "تم حذف التقييم بنجاح",
                "product": serialize_product(updated_product, include_reviews=True),
            }
        )

    # --- Orders ---

    def normalize_shipping_address(raw_address) -> Dict[str, str]:
        if isinstance(raw_address, str):
            try:
                raw_address = json.loads(raw_address)
            except (json.JSONDecodeError, ValueError):
                raw_address = {}
        if not isinstance(raw_address, dict):
            raw_address = {}

        def read_field(*keys):
            for key in keys:
                value = raw_address.get(key)
                if value is not None and str(value).strip():
                    return str(value).strip()
            return ""

        return {
            "full_name": read_field("full_name", "fullName", "name"),
            "phone": read_field("phone"),
            "wilaya": read_field("wilaya", "state"),
            "city": read_field("city"),
            "street": read_field("street", "address", "line1"),
            "postal_code": read_field("postal_code", "postalCode", "zip"),
        }

    def normalize_order_items(raw_items):
        """Merge requested lines per product; returns ``(lines, error_message)``."""
        if not isinstance(raw_items, list) or not raw_items:
            return None, "يجب إضافة منتج واحد على الأقل"

        quantities: Dict[ObjectId, int] = {}
        for entry in raw_items:
            if not isinstance(entry, dict):
                return None, "عناصر الطلب غير صالحة"
            product_id = to_object_id(
                entry.get("product")
                or entry.get("product_id")
                or entry.get("productId")
                or entry.get("id")
            )
            if not product_id:
                return None, "معرف المنتج غير صالح"
            quantity = safe_positive_int(entry.get("quantity"), 1)
            if quantity < 1:
                return None, "الكمية يجب أن تكون 1 على الأقل"
            quantities[product_id] = quantities.get(product_id, 0) + quantity

        order_items = []
        for product_id, quantity in quantities.items():
            product = db.products.find_one({"_id": product_id})
            if not product:
                return None, "المنتج غير موجود"
            if int(product.get("stock_quantity", 0) or 0) < quantity:
                return None, f"الكمية المطلوبة من {product.get('name', '')} غير متوفرة"
            images = product.get("images") or []
            order_items.append(
                {
                    "product": product_id,
                    "product_name": product.get("name", ""),
                    "price": round(safe_float(product.get("price"), 0.0), 2),
                    "quantity": quantity,
                    "image": images[0] if images else None,
                }
            )
        return order_items, None

    def find_order(order_identifier: str):
        order_object_id = to_object_id(order_identifier)
        if order_object_id:
            order = db.orders.find_one({"_id": order_object_id})
            if order:
                return order
        return db.orders.find_one({"order_number": order_identifier})

    def build_timeline_entry(status: str, note: str, actor) -> Dict:
        return {
            "status": status,
            "note": note,
            "changed_by": actor["_id"] if actor else None,
            "at": datetime.utcnow(),
        }

    def list_orders_response(query: Dict, include_customer: bool):
        page, limit, skip = read_pagination(10, max_limit=100)
        orders = list(
            db.orders.find(query)
            .sort([("created_at", -1), ("_id", -1)])
            .skip(skip)
            .limit(limit)
        )
        total = db.orders.count_documents(query)
        return jsonify(
            {
                "orders": [serialize_order(order, include_customer) for order in orders],
                "pagination": build_pagination(page, limit, total),
            }
        )

    @app.route("/api/orders", methods=["POST"])
    @jwt_required()
    def create_order():
        current_user, auth_error = require_active_user()
        if auth_error:
            return auth_error

        payload = request.get_json(silent=True) or {}
        order_items, items_error = normalize_order_items(payload.get("items"))
        if items_error:
            return jsonify({"message": items_error}), 400

        shipping_address = normalize_shipping_address(
            payload.get("shipping_address") or payload.get("shippingAddress")
        )
        if not shipping_address["street"] or not shipping_address["city"]:
            return jsonify({"message": "العنوان والمدينة مطلوبان"}), 400
        shipping_address["full_name"] = shipping_address["full_name"] or current_user.get("name", "")
        shipping_address["phone"] = shipping_address["phone"] or current_user.get("phone", "")

        payment_method = (
            str(payload.get("payment_method") or payload.get("paymentMethod") or "cash_on_delivery")
            .strip()
            .lower()
        )
        if payment_method not in PAYMENT_METHODS:
            return jsonify({"message": "طريقة الدفع غير صالحة"}), 400

        stock_error = reserve_stock(order_items)
        if stock_error:
            return jsonify({"message": stock_error}), 400

        now = datetime.utcnow()
        order_document = {
            "order_number": generate_order_number(now),
            "customer": current_user["_id"],
            "customer_info": {
                "name": current_user.get("name", ""),
                "email": current_user.get("email", ""),
                "phone": current_user.get("phone", ""),
            },
            "items": order_items,
            "total": round(sum(item["price"] * item["quantity"] for item in order_items), 2),
            "shipping_address": shipping_address,
            "payment_method": payment_method,
            "notes": str(payload.get("notes") or "").strip()[:500],
            "tracking_number": "",
            "status": "pending",
            "timeline": [build_timeline_entry("pending", "تم إنشاء الطلب", current_user)],
            "created_at": now,
            "updated_at": now,
        }
        insert_result = None
        try:
            for _ in range(5):
                try:
                    insert_result = db.orders.insert_one(order_document)
                    break
                except DuplicateKeyError:
                    order_document.pop("_id", None)
                    order_document["order_number"] = generate_order_number(now)
            if insert_result is None:
                raise PyMongoError("Unable to allocate a unique order number")
        except PyMongoError:
            release_stock(order_items)
            raise
        order_document["_id"] = insert_result.inserted_id

        record_audit_log(
            current_user,
            "Placed order",
            {
                "order_number": order_document["order_number"],
                "total": order_document["total"],
            },
        )

        return (
            jsonify(
                {
                    "message": "تم إنشاء الطلب بنجاح",
                    "order": serialize_order(order_document),
                }
            ),
            201,
        )

    @app.route("/api/orders/user", methods=["GET"])
    @app.route("/api/orders/me", methods=["GET"])
    @jwt_required()
    def list_my_orders():
        current_user, auth_error = require_active_user()
        if auth_error:
            return auth_error
        return list_orders_response({"customer": current_user["_id"]}, True)

    @app.route("/api/orders/admin", methods=["GET"])
    @jwt_required()
    def list_all_orders():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        query: Dict[str, object] = {}
        status = (request.args.get("status") or "").strip().lower()
        if status in ORDER_STATUSES:
            query["status"] = status
        return list_orders_response(query, True)

    @app.route("/api/orders/admin/stats", methods=["GET"])
    @jwt_required()
    def order_stats():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        status_counts = {status: 0 for status in ORDER_STATUSES}
        total_revenue = 0.0
        billable_orders = 0
        for order in db.orders.find({}, {"status": 1, "total": 1}):
            status = order.get("status", "pending")
            status_counts[status] = status_counts.get(status, 0) + 1
            if status != "cancelled":
                total_revenue += safe_float(order.get("total"), 0.0)
                billable_orders += 1

        return jsonify(
            {
                "stats": {
                    "total_orders": sum(status_counts.values()),
                    "by_status": status_counts,
                    "total_revenue": round(total_revenue, 2),
                    "average_order_value": round(total_revenue / billable_orders, 2)
                    if billable_orders
                    else 0.0,
                }
            }
        )

    @app.route("/api/orders/<order_id>", methods=["GET"])
    @jwt_required()
    def get_order(order_id: str):
        current_user, auth_error = require_active_user()
        if auth_error:
            return auth_error

        order = find_order(order_id)
        if not order:
            return jsonify({"message": "الطلب غير موجود"}), 404
        if order.get("customer") != current_user["_id"] and not is_admin(current_user):
            return jsonify({"message": "غير مسموح لك بعرض هذا الطلب"}), 403

        return jsonify({"order": serialize_order(order)})

    @app.route("/api/orders/<order_id>/status", methods=["PATCH"])
    @jwt_required()
    def update_order_status(order_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        order = find_order(order_id)
        if not order:
            return jsonify({"message": "الطلب غير موجود"}), 404

        payload = request.get_json(silent=True) or {}
        next_status = str(payload.get("status") or "").strip().lower()
        if next_status not in ORDER_STATUSES:
            return jsonify({"message": "حالة الطلب غير صالحة"}), 400

        current_status = order.get("status", "pending")
        if not can_transition_order(current_status, next_status):
            return (
                jsonify(
                    {
                        "message": f"لا يمكن تغيير حالة الطلب من {current_status} إلى {next_status}"
                    }
                ),
                400,
            )

        note = str(payload.get("note") or "").strip()
        updates: Dict[str, object] = {"status": next_status, "updated_at": datetime.utcnow()}
        tracking_number = payload.get("tracking_number", payload.get("trackingNumber"))
        if tracking_number is not None:
            updates["tracking_number"] = str(tracking_number).strip()

        result = db.orders.update_one(
            {"_id": order["_id"], "status": current_status},
            {
                "$set": updates,
                "$push": {"timeline": build_timeline_entry(next_status, note, admin_user)},
            },
        )
        if not result.modified_count:
            return jsonify({"message": "تم تعديل الطلب من طرف آخر، يرجى إعادة المحاولة"}), 409
        if next_status == "cancelled":
            release_stock(order.get("items"))

        record_audit_log(
            admin_user,
            "Updated order status",
            {
                "order_number": order.get("order_number", ""),
                "from": current_status,
                "to": next_status,
            },
        )

        updated_order = db.orders.find_one({"_id": order["_id"]})
        return jsonify(
            {"message": "تم تحديث حالة الطلب بنجاح", "order": serialize_order(updated_order)}
        )

    @app.route("/api/orders/<order_id>/cancel", methods=["PATCH"])
    @jwt_required()
    def cancel_order(order_id: str):
        current_user, auth_error = require_active_user()
        if auth_error:
            return auth_error

        order = find_order(order_id)
        if not order:
            return jsonify({"message": "الطلب غير موجود"}), 404
        if order.get("customer") != current_user["_id"]:
            return jsonify({"message": "غير مسموح لك بإلغاء هذا الطلب"}), 403
        if order.get("status") != "pending":
            return jsonify({"message": "لا يمكن إلغاء الطلب بعد تأكيده"}), 400

        payload = request.get_json(silent=True) or {}
        note = str(payload.get("reason") or payload.get("note") or "").strip() or "ألغي من طرف الزبون"
        result = db.orders.update_one(
            {"_id": order["_id"], "status": "pending"},
            {
                "$set": {"status": "cancelled", "updated_at": datetime.utcnow()},
                "$push": {"timeline": build_timeline_entry("cancelled", note, current_user)},
            },
        )
        if not result.modified_count:
            return jsonify({"message": "لا يمكن إلغاء الطلب بعد تأكيده"}), 400
        release_stock(order.get("items"))

        updated_order = db.orders.find_one({"_id": order["_id"]})
        return jsonify(
            {"message": "تم إلغاء الطلب بنجاح", "order": serialize_order(updated_order)}
        )

    @app.route("/api/orders/<order_id>", methods=["DELETE"])
    @jwt_required()
    def delete_order(order_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        order = find_order(order_id)
        if not order:
            return jsonify({"message": "الطلب غير موجود"}), 404

        db.orders.delete_one({"_id": order["_id"]})
        if order.get("status") != "cancelled":
            release_stock(order.get("items"))

        record_audit_log(
            admin_user,
            "Deleted order",
            {"order_number": order.get("order_number", ""), "status": order.get("status", "")},
        )

        return jsonify({"message": "تم حذف الطلب بنجاح"})

    # --- Admin ---

    def serialize_admin_user(user_document) -> Dict:
        profile = serialize_user_profile(user_document)
        profile["updated_at"] = serialize_datetime(user_document.get("updated_at"))
        return profile

    @app.route("/api/admin/dashboard", methods=["GET"])
    @jwt_required()
    def admin_dashboard():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        week_ago = datetime.utcnow() - timedelta(days=7)
        total_views = 0
        category_counts: Dict[str, int] = {}
        for article in db.articles.find({}, {"views": 1, "category": 1}):
            total_views += int(article.get("views", 0) or 0)
            category = article.get("category") or DEFAULT_CATEGORY
            category_counts[category] = category_counts.get(category, 0) + 1
        popular_category = (
            max(category_counts.items(), key=lambda entry: entry[1])[0]
            if category_counts
            else None
        )

        revenue = 0.0
        for order in db.orders.find({"status": {"$ne": "cancelled"}}, {"total": 1}):
            revenue += safe_float(order.get("total"), 0.0)

        recent_articles = list(db.articles.find().sort("created_at", -1).limit(5))
        recent_users = list(db.users.find().sort("created_at", -1).limit(5))
        user_map = build_author_map(recent_articles)

        return jsonify(
            {
                "counts": {
                    "articles": db.articles.count_documents({}),
                    "products": db.products.count_documents({}),
                    "posts": db.posts.count_documents({}),
                    "users": db.users.count_documents({}),
                    "comments": db.comments.count_documents({}),
                    "orders": db.orders.count_documents({}),
                },
                "stats": {
                    "total_views": total_views,
                    "pending_comments": db.comments.count_documents({"approved": False}),
                    "new_users_this_week": db.users.count_documents(
                        {"created_at": {"$gte": week_ago}}
                    ),
                    "popular_category": popular_category,
                    "pending_orders": db.orders.count_documents({"status": "pending"}),
                    "revenue": round(revenue, 2),
                },
                "recent_articles": [
                    serialize_article(article, user_map) for article in recent_articles
                ],
                "recent_users": [serialize_admin_user(user) for user in recent_users],
            }
        )

    @app.route("/api/admin/articles/<article_id>", methods=["GET"])
    @jwt_required()
    def admin_get_article(article_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        article_object_id = to_object_id(article_id)
        article = db.articles.find_one({"_id": article_object_id}) if article_object_id else None
        if not article:
            return jsonify({"message": "المقال غير موجود"}), 404
        return jsonify({"article": serialize_article(article)})

    @app.route("/api/admin/products/<product_id>", methods=["GET"])
    @jwt_required()
    def admin_get_product(product_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        product = find_product(product_id)
        if not product:
            return jsonify({"message": "المنتج غير موجود"}), 404
        return jsonify({"product": serialize_product(product, include_reviews=True)})

    @app.route("/api/admin/posts/<post_id>", methods=["GET"])
    @jwt_required()
    def admin_get_post(post_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        post = find_post(post_id)
        if not post:
            return jsonify({"message": "المنشور غير موجود"}), 404
        return jsonify({"post": serialize_post(post)})

    @app.route("/api/admin/users", methods=["GET"])
    @jwt_required()
    def admin_list_users():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        page, limit, skip = read_pagination(20, max_limit=100)
        query: Dict[str, object] = {}
        search_term = (request.args.get("search") or "").strip()
        if search_term:
            pattern = escape_search(search_term)
            query["$or"] = [{"name": pattern}, {"email": pattern}, {"phone": pattern}]
        role = (request.args.get("role") or "").strip().lower()
        if role in USER_ROLES:
            query["role"] = role

        users = list(db.users.find(query).sort("created_at", -1).skip(skip).limit(limit))
        total = db.users.count_documents(query)

        return jsonify(
            {
                "users": [serialize_admin_user(user) for user in users],
                "pagination": build_pagination(page, limit, total),
            }
        )

    def find_user(user_id: str):
        user_object_id = to_object_id(user_id)
        if not user_object_id:
            return None
        return db.users.find_one({"_id": user_object_id})

    @app.route("/api/admin/users/<user_id>/toggle", methods=["PATCH"])
    @jwt_required()
    def admin_toggle_user(user_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        target_user = find_user(user_id)
        if not target_user:
            return jsonify({"message": "المستخدم غير موجود"}), 404
        if target_user["_id"] == admin_user["_id"]:
            return jsonify({"message": "لا يمكنك تعليق حسابك الخاص"}), 400

        is_active = not target_user.get("is_active", True)
        db.users.update_one(
            {"_id": target_user["_id"]},
            {"$set": {"is_active": is_active, "updated_at": datetime.utcnow()}},
        )
        record_audit_log(
            admin_user,
            "Reactivated user" if is_active else "Suspended user",
            {"target_email": target_user.get("email", "")},
        )

        updated_user = db.users.find_one({"_id": target_user["_id"]})
        return jsonify(
            {
                "message": "تم تفعيل الحساب" if is_active else "تم تعليق الحساب",
                "user": serialize_admin_user(updated_user),
            }
        )

    @app.route("/api/admin/users/<user_id>/role", methods=["PUT"])
    @jwt_required()
    def admin_update_user_role(user_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        desired_role = str(payload.get("role", "")).strip().lower()
        if desired_role not in USER_ROLES:
            return jsonify({"message": "الدور يجب أن يكون user أو admin"}), 400

        target_user = find_user(user_id)
        if not target_user:
            return jsonify({"message": "المستخدم غير موجود"}), 404
        if target_user["_id"] == admin_user["_id"] and desired_role != "admin":
            return jsonify({"message": "لا يمكنك إزالة صلاحيات المدير من حسابك"}), 400

        target_email = normalize_email(target_user.get("email"))
        default_admin_email = normalize_email(app.config.get("DEFAULT_ADMIN_EMAIL"))
        if default_admin_email and target_email == default_admin_email and desired_role != "admin":
            return jsonify({"message": "المدير الافتراضي يجب أن يبقى مديراً"}), 400

        db.users.update_one(
            {"_id": target_user["_id"]},
            {"$set": {"role": desired_role, "updated_at": datetime.utcnow()}},
        )
        record_audit_log(
            admin_user,
            "Updated user role",
            {"target_email": target_email, "new_role": desired_role},
        )

        updated_user = db.users.find_one({"_id": target_user["_id"]})
        return jsonify(
            {"message": "تم تحديث الدور بنجاح", "user": serialize_admin_user(updated_user)}
        )

    @app.route("/api/admin/users/<user_id>", methods=["DELETE"])
    @jwt_required()
    def admin_delete_user(user_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        target_user = find_user(user_id)
        if not target_user:
            return jsonify({"message": "المستخدم غير موجود"}), 404
        if target_user["_id"] == admin_user["_id"]:
            return jsonify({"message": "لا يمكنك حذف حسابك الخاص"}), 400
        if is_admin(target_user):
            return jsonify({"message": "لا يمكن حذف حساب مدير آخر"}), 400

        db.users.delete_one({"_id": target_user["_id"]})
        remove_uploaded_file(target_user.get("avatar"))

        record_audit_log(
            admin_user,
            "Deleted user",
            {
                "target_email": target_user.get("email", ""),
                "display_name": target_user.get("name", ""),
            },
        )

        return jsonify(
            {"message": "تم حذف المستخدم بنجاح", "user": {"id": str(target_user["_id"])}}
        )

    comment_moderation_filters = {
        "pending": {"approved": False},
        "approved": {"approved": True},
        "reported": {"reported": True},
        "all": {},
    }

    @app.route("/api/admin/comments", methods=["GET"])
    @jwt_required()
    def admin_list_comments():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        status = (request.args.get("status") or "all").strip().lower()
        query = dict(comment_moderation_filters.get(status, {}))
        page, limit, skip = read_pagination(20, max_limit=100)

        comments = list(db.comments.find(query).sort("created_at", -1).skip(skip).limit(limit))
        total = db.comments.count_documents(query)
        user_map = build_author_map(comments)

        return jsonify(
            {
                "comments": [
                    serialize_moderated_comment(comment, user_map) for comment in comments
                ],
                "pagination": build_pagination(page, limit, total),
            }
        )

    @app.route("/api/admin/comments/<comment_id>/approve", methods=["PATCH"])
    @jwt_required()
    def admin_toggle_comment_approval(comment_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        comment = find_comment(comment_id)
        if not comment:
            return jsonify({"message": "التعليق غير موجود"}), 404

        approved = not comment.get("approved", True)
        updates: Dict[str, object] = {"approved": approved, "updated_at": datetime.utcnow()}
        if approved:
            updates.update({"reported": False, "report_count": 0, "report_reasons": []})
        db.comments.update_one({"_id": comment["_id"]}, {"$set": updates})

        record_audit_log(
            admin_user,
            "Approved comment" if approved else "Hid comment",
            {"comment_id": str(comment["_id"])},
        )

        updated_comment = db.comments.find_one({"_id": comment["_id"]})
        return jsonify(
            {
                "message": "تم قبول التعليق" if approved else "تم إخفاء التعليق",
                "comment": serialize_moderated_comment(updated_comment),
            }
        )

    @app.route("/api/admin/comments/<comment_id>", methods=["DELETE"])
    @jwt_required()
    def admin_delete_comment(comment_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        comment = find_comment(comment_id)
        if not comment:
            return jsonify({"message": "التعليق غير موجود"}), 404

        deleted_count = delete_comment_thread(comment)
        record_audit_log(
            admin_user,
            "Deleted comment",
            {"comment_id": str(comment["_id"]), "deleted_count": deleted_count},
        )
        return jsonify({"message": "تم حذف التعليق بنجاح", "deleted_count": deleted_count})

    @app.route("/api/admin/posts/<post_id>/approve", methods=["PATCH"])
    @jwt_required()
    def admin_toggle_post_approval(post_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        post = find_post(post_id)
        if not post:
            return jsonify({"message": "المنشور غير موجود"}), 404

        approved = not post.get("approved", True)
        db.posts.update_one(
            {"_id": post["_id"]},
            {"$set": {"approved": approved, "updated_at": datetime.utcnow()}},
        )
        record_audit_log(
            admin_user,
            "Approved post" if approved else "Hid post",
            {"post_id": str(post["_id"])},
        )

        updated_post = db.posts.find_one({"_id": post["_id"]})
        return jsonify(
            {
                "message": "تم قبول المنشور" if approved else "تم إخفاء المنشور",
                "post": serialize_post(updated_post),
            }
        )

    @app.route("/api/admin/posts/<post_id>/pin", methods=["PATCH"])
    @jwt_required()
    def admin_toggle_post_pin(post_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        post = find_post(post_id)
        if not post:
            return jsonify({"message": "المنشور غير موجود"}), 404

        pinned = not post.get("pinned", False)
        db.posts.update_one(
            {"_id": post["_id"]},
            {"$set": {"pinned": pinned, "updated_at": datetime.utcnow()}},
        )
        record_audit_log(
            admin_user,
            "Pinned post" if pinned else "Unpinned post",
            {"post_id": str(post["_id"])},
        )

        updated_post = db.posts.find_one({"_id": post["_id"]})
        return jsonify(
            {
                "message": "تم تثبيت المنشور" if pinned else "تم إلغاء تثبيت المنشور",
                "post": serialize_post(updated_post),
            }
        )

    def build_date_filter(start_param, end_param) -> Dict[str, datetime]:
        start_date = parse_iso_date(start_param)
        end_date = parse_iso_date(end_param, end_of_day=True)
        created_filter: Dict[str, datetime] = {}
        if start_date:
            created_filter["$gte"] = start_date
        if end_date:
            created_filter["$lt"] = end_date
        return created_filter

    @app.route("/api/admin/logs", methods=["GET"])
    @jwt_required()
    def admin_list_logs():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        search_term = (request.args.get("search") or "").strip()
        page, limit, skip = read_pagination(50, max_limit=200)

        query: Dict[str, object] = {}
        if search_term:
            pattern = escape_search(search_term)
            query["$or"] = [
                {"user_email": pattern},
                {"user_name": pattern},
                {"action": pattern},
            ]
        created_filter = build_date_filter(
            request.args.get("start") or request.args.get("from"),
            request.args.get("end") or request.args.get("to"),
        )
        if created_filter:
            query["created_at"] = created_filter

        cursor = (
            audit_logs_collection.find(query)
            .sort("created_at", -1)
            .skip(skip)
            .limit(limit)
        )
        logs = [serialize_audit_log(document) for document in cursor]
        total = audit_logs_collection.count_documents(query)

        return jsonify({"logs": logs, "pagination": build_pagination(page, limit, total)})

    @app.route("/api/admin/logs", methods=["DELETE"])
    @jwt_required()
    def admin_delete_logs():
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        created_filter = build_date_filter(
            payload.get("from") or payload.get("start"),
            payload.get("to") or payload.get("end"),
        )
        delete_query: Dict[str, object] = {}
        if created_filter:
            delete_query["created_at"] = created_filter

        result = audit_logs_collection.delete_many(delete_query)

        record_audit_log(
            admin_user,
            "Deleted audit logs",
            {
                "count": str(result.deleted_count),
                "range": "filtered" if delete_query else "all",
            },
        )

        return jsonify(
            {
                "message": f"تم حذف {result.deleted_count} سجل",
                "deleted": result.deleted_count,
            }
        )

    # --- Themes ---

    def read_theme_fields(payload, *, partial: bool = True):
        fields: Dict[str, object] = {}
        for field_name, aliases in THEME_FIELD_ALIASES.items():
            raw_value = next(
                (payload.get(alias) for alias in aliases if payload.get(alias) is not None),
                None,
            )
            if raw_value is None:
                if not partial:
                    fields[field_name] = DEFAULT_THEME[field_name]
                continue
            value = str(raw_value).strip()
            if field_name in THEME_COLOR_FIELDS:
                if not HEX_COLOR_PATTERN.match(value):
                    return None, f"قيمة اللون غير صالحة: {field_name}"
                value = value.lower()
            elif not value or len(value) > 100:
                return None, "نوع الخط غير صالح"
            fields[field_name] = value
        return fields, None

    def get_active_theme():
        theme = db.themes.find_one({"is_active": True})
        if theme:
            return theme
        return dict(DEFAULT_THEME, is_active=True, created_by="system")

    def activate_theme(theme_id):
        db.themes.update_many(
            {"_id": {"$ne": theme_id}, "is_active": True},
            {"$set": {"is_active": False, "updated_at": datetime.utcnow()}},
        )
        db.themes.update_one(
            {"_id": theme_id},
            {"$set": {"is_active": True, "updated_at": datetime.utcnow()}},
        )

    def find_theme(theme_id: str):
        theme_object_id = to_object_id(theme_id)
        if not theme_object_id:
            return None
        return db.themes.find_one({"_id": theme_object_id})

    @app.route("/api/theme", methods=["GET"])
    @app.route("/api/admin/theme", methods=["GET"])
    def get_theme():
        return jsonify({"theme": serialize_theme(get_active_theme())})

    @app.route("/api/admin/theme", methods=["PUT"])
    @jwt_required()
    def update_active_theme():
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        fields, validation_error = read_theme_fields(payload)
        if validation_error:
            return jsonify({"message": validation_error}), 400

        now = datetime.utcnow()
        theme = db.themes.find_one({"is_active": True})
        if theme:
            fields["updated_at"] = now
            db.themes.update_one({"_id": theme["_id"]}, {"$set": fields})
            theme_id = theme["_id"]
        else:
            theme = db.themes.find_one({"name": DEFAULT_THEME["name"]})
            if theme:
                fields["updated_at"] = now
                db.themes.update_one({"_id": theme["_id"]}, {"$set": fields})
                theme_id = theme["_id"]
            else:
                theme_document = {
                    **DEFAULT_THEME,
                    **fields,
                    "is_active": True,
                    "created_by": "admin",
                    "created_at": now,
                    "updated_at": now,
                }
                theme_id = db.themes.insert_one(theme_document).inserted_id
        activate_theme(theme_id)

        record_audit_log(
            admin_user,
            "Updated site theme",
            {key: value for key, value in fields.items() if key != "updated_at"},
        )

        return jsonify(
            {
                "message": "تم تحديث المظهر بنجاح",
                "theme": serialize_theme(db.themes.find_one({"_id": theme_id})),
            }
        )

    @app.route("/api/admin/themes", methods=["GET"])
    @jwt_required()
    def list_themes():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        themes = db.themes.find().sort([("is_active", -1), ("created_at", -1)])
        return jsonify({"themes": [serialize_theme(theme) for theme in themes]})

    @app.route("/api/admin/themes", methods=["POST"])
    @jwt_required()
    def create_theme():
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        name = str(payload.get("name") or "").strip()
        if not name:
            return jsonify({"message": "اسم المظهر مطلوب"}), 400
        if len(name) > 50:
            return jsonify({"message": "اسم المظهر يجب أن يكون أقل من 50 حرف"}), 400
        if db.themes.find_one({"name": name}):
            return jsonify({"message": "يوجد مظهر بهذا الاسم مسبقاً"}), 400

        fields, validation_error = read_theme_fields(payload, partial=False)
        if validation_error:
            return jsonify({"message": validation_error}), 400

        make_active = parse_bool(payload.get("is_active", payload.get("isActive")))
        now = datetime.utcnow()
        theme_document = {
            **fields,
            "name": name,
            "is_active": False,
            "created_by": "admin",
            "created_at": now,
            "updated_at": now,
        }
        theme_id = db.themes.insert_one(theme_document).inserted_id
        if make_active:
            activate_theme(theme_id)

        record_audit_log(
            admin_user, "Created theme", {"name": name, "active": make_active}
        )

        return (
            jsonify(
                {
                    "message": "تم إنشاء المظهر بنجاح",
                    "theme": serialize_theme(db.themes.find_one({"_id": theme_id})),
                }
            ),
            201,
        )

    @app.route("/api/admin/themes/<theme_id>/activate", methods=["PATCH"])
    @jwt_required()
    def activate_theme_route(theme_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        theme = find_theme(theme_id)
        if not theme:
            return jsonify({"message": "المظهر غير موجود"}), 404

        activate_theme(theme["_id"])
        record_audit_log(admin_user, "Activated theme", {"name": theme.get("name", "")})

        return jsonify(
            {
                "message": "تم تفعيل المظهر بنجاح",
                "theme": serialize_theme(db.themes.find_one({"_id": theme["_id"]})),
            }
        )

    @app.route("/api/admin/themes/<theme_id>", methods=["DELETE"])
    @jwt_required()
    def delete_theme(theme_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        theme = find_theme(theme_id)
        if not theme:
            return jsonify({"message": "المظهر غير موجود"}), 404
        if theme.get("is_active"):
            return jsonify({"message": "لا يمكن حذف المظهر النشط"}), 400

        db.themes.delete_one({"_id": theme["_id"]})
        record_audit_log(admin_user, "Deleted theme", {"name": theme.get("name", "")})

        return jsonify({"message": "تم حذف المظهر بنجاح"})

    # --- Site ---

    @app.route("/api/contact", methods=["POST"])
    def submit_contact_message():
        payload = read_payload()
        name = str(payload.get("name") or "").strip()
        email = normalize_email(payload.get("email"))
        message = str(payload.get("message") or "").strip()
        subject = str(payload.get("subject") or "").strip()

        if not name or not email or not message:
            return jsonify({"message": "الاسم والبريد الإلكتروني والرسالة مطلوبة"}), 400
        if not is_valid_email(email):
            return jsonify({"message": "البريد الإلكتروني غير صحيح"}), 400
        if len(message) > 5000:
            return jsonify({"message": "الرسالة طويلة جداً"}), 400

        db.contact_messages.insert_one(
            {
                "name": name[:100],
                "email": email,
                "subject": subject[:200],
                "message": message,
                "ip_address": request.remote_addr or "",
                "created_at": datetime.utcnow(),
            }
        )
        app.logger.info("Contact message received from %s", email)

        return jsonify({"message": "تم إرسال رسالتك بنجاح، سنتواصل معك قريباً"}), 201

    @app.route("/api/newsletter", methods=["POST"])
    def subscribe_newsletter():
        payload = read_payload()
        email = normalize_email(payload.get("email"))
        if not email:
            return jsonify({"message": "البريد الإلكتروني مطلوب"}), 400
        if not is_valid_email(email):
            return jsonify({"message": "البريد الإلكتروني غير صحيح"}), 400

        result = db.newsletter_subscribers.update_one(
            {"email": email},
            {"$setOnInsert": {"created_at": datetime.utcnow()}},
            upsert=True,
        )
        if result.upserted_id is None:
            return jsonify({"message": "أنت مشترك بالفعل في النشرة البريدية"})
        return jsonify({"message": "تم الاشتراك في النشرة البريدية بنجاح"}), 201

    return app
