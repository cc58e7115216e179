#!/usr/bin/env python3
"""
Property Alignment Labeler - A web API for labeling how sentences express ontology properties.

Features:
- Ontology properties (e.g. DBpedia relations) with domain/range metadata
- Sentence traversal with count, ordered id list and paginated batch reads
- Alignment labels (p(D,R), p(D,?), p(?,R), p(?,?), none) with subject/object spans
- One label per (sentence, user), written as an upsert
- Atomic label_count increment/decrement procedures plus a direct update
- SQLite persistence
- Multi-user support with session-based authentication
- Profiles with label totals and a leaderboard
- Role-based admin mode: property visibility, statistics and export

Usage:
    cd property-alignment-labeler
    uvicorn app:app --reload --port 8000
    # API docs at http://localhost:8000/docs

Environment Variables:
    LABELER_DB_PATH=labels.db  - SQLite database file
    ADMIN_EMAIL=admin@local.auth  - Email that gets the admin role (on startup and on registration)
    SESSION_EXPIRY_DAYS=30  - Session cookie lifetime
    EXPORT_DEFAULT_MIN_LABELS=1  - Default minimum label count per sentence for exports
"""

import csv
import io
import sqlite3
import secrets
import hashlib
import os
from pathlib import Path
from typing import Optional
from datetime import datetime, timedelta
from contextlib import asynccontextmanager, contextmanager

from fastapi import FastAPI, HTTPException, Query, Request, Response, Depends
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field

from annotator.labels import LABEL_DESCRIPTIONS, LABEL_TITLES, SPAN_RULES, LabelKind, Span, tokenize, validate_label

# Paths - relative to this file's directory
APP_DIR = Path(__file__).parent.resolve()
DB_PATH = Path(os.environ.get("LABELER_DB_PATH", str(APP_DIR / "labels.db")))

# Configuration
ADMIN_EMAIL = os.environ.get("ADMIN_EMAIL", "admin@local.auth").strip().lower()
SESSION_EXPIRY_DAYS = int(os.environ.get("SESSION_EXPIRY_DAYS", "30"))
EXPORT_DEFAULT_MIN_LABELS = int(os.environ.get("EXPORT_DEFAULT_MIN_LABELS", "1"))
MIN_PASSWORD_LENGTH = 6
MAX_BATCH_LIMIT = 200
DEFAULT_IRI_PREFIX = "http://dbpedia.org/ontology/"

# Role constants
ROLE_ADMIN = "admin"
ROLE_ANNOTATOR = "annotator"

# Admin statistics: sentences labeled at least K times
REDUNDANCY_LEVELS = (1, 2, 3, 5)
TOP_CONTRIBUTORS = 10

EXPORT_FIELDS = [
    "sentence_id", "sentence_text", "property_id", "user_id", "label",
    "subject_start", "subject_end", "object_start", "object_end", "created_at",
]


# ============================================================================
# API Documentation
# ============================================================================

API_DESCRIPTION = """
# Property Alignment Labeler API

A multi-user annotation backend for judging how well a sentence expresses an
ontology property `p(D, R)` with domain `D` and range `R`.

## Labels

Each user gives each sentence at most one label:

| label | meaning | subject span | object span |
|---|---|---|---|
| `pdr` | Full alignment p(D, R) | required | required |
| `pd` | Property and domain aligned p(D, ?) | required | forbidden |
| `pr` | Property and range aligned p(?, R) | forbidden | required |
| `p` | Property expressed, D&R do not align p(?, ?) | optional | optional |
| `n` | No alignment | forbidden | forbidden |

Spans are inclusive token indices into the whitespace-tokenized sentence.

## Sentence traversal

Sentences of a property can be filtered to unlabeled ones (`unlabeled_only`)
and ordered by `id` or by `label_count` (ties broken by id). Clients read
the count, the ordered id list, and batches at an offset with the same
parameters. A batch can also be requested by explicit `ids`, which pins it to
an id list read earlier even after counts have changed.

## Label counters

`label_count` on a sentence counts labels from all users. It is changed only
through `/api/rpc/increment_label_count` and `/api/rpc/decrement_label_count`,
which update the row in a single statement. `PATCH /api/sentences/{id}` is a
direct write kept for clients whose procedure call failed; such clients read
the live value with `GET /api/sentences/{id}` first.

## Authentication

Most endpoints require authentication via session cookie. Use `/api/auth/register`
or `/api/auth/login` to obtain a session.

## Admin Mode

Set `ADMIN_EMAIL=email` to give that account the admin role. Admins see hidden
properties and have access to `/api/admin/` for visibility, statistics and export.
"""

TAGS_METADATA = [
    {
        "name": "Authentication",
        "description": "User registration, login, logout, password change and session management.",
    },
    {
        "name": "Properties",
        "description": "Ontology properties and the current user's progress on them.",
    },
    {
        "name": "Sentences",
        "description": "Sentence counts, ordered id lists and paginated batches for traversal.",
    },
    {
        "name": "Labels",
        "description": "Read, upsert and remove the current user's alignment labels.",
    },
    {
        "name": "Counters",
        "description": "Atomic and direct updates of a sentence's label_count.",
    },
    {
        "name": "Profile",
        "description": "User profile, label totals and leaderboard.",
    },
    {
        "name": "Admin",
        "description": "Admin-only endpoints for property visibility, statistics and export. Requires admin role.",
    },
    {
        "name": "System",
        "description": "System information endpoints (label kinds, health).",
    },
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    init_db()
    yield


app = FastAPI(
    title="Property Alignment Labeler API",
    description=API_DESCRIPTION,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=TAGS_METADATA,
    lifespan=lifespan,
    license_info={
        "name": "MIT",
        "url": "https://opensource.org/licenses/MIT",
    },
)


# ============================================================================
# Database Setup
# ============================================================================

def init_db():
    """Initialize SQLite database."""
    with get_db() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT UNIQUE NOT NULL,
                password_hash TEXT,
                display_name TEXT,
                role TEXT NOT NULL DEFAULT 'annotator',
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                last_seen TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS sessions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                token TEXT UNIQUE NOT NULL,
                user_id INTEGER NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                expires_at TIMESTAMP NOT NULL,
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_sessions_token ON sessions(token);
            CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user_id);

            CREATE TABLE IF NOT EXISTS profiles (
                user_id INTEGER PRIMARY KEY,
                display_name TEXT,
                email TEXT,
                total_labels INTEGER NOT NULL DEFAULT 0,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS properties (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT UNIQUE NOT NULL,
                iri TEXT,
                domain TEXT,
                "range" TEXT,
                sentence_count INTEGER NOT NULL DEFAULT 0,
                is_active INTEGER NOT NULL DEFAULT 1,
                description TEXT,
                domain_link TEXT,
                range_link TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS sentences (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                property_id INTEGER NOT NULL,
                text TEXT NOT NULL,
                label_count INTEGER DEFAULT 0,
                FOREIGN KEY (property_id) REFERENCES properties(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_sentences_property
                ON sentences(property_id, label_count, id);

            CREATE TABLE IF NOT EXISTS labels (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                sentence_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                property_id INTEGER NOT NULL,
                label TEXT NOT NULL CHECK (label IN ('pdr', 'pd', 'pr', 'p', 'n')),
                subject_start INTEGER,
                subject_end INTEGER,
                object_start INTEGER,
                object_end INTEGER,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE (sentence_id, user_id),
                FOREIGN KEY (sentence_id) REFERENCES sentences(id) ON DELETE CASCADE,
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
                FOREIGN KEY (property_id) REFERENCES properties(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_labels_user_property ON labels(user_id, property_id);
        """)

        if ADMIN_EMAIL:
            bootstrap_admin_user(conn)


def bootstrap_admin_user(conn):
    """Grant the admin role to ADMIN_EMAIL if that account exists."""
    row = conn.execute(
        "SELECT id, role FROM users WHERE email = ?",
        (ADMIN_EMAIL,)
    ).fetchone()

    if row:
        if row["role"] != ROLE_ADMIN:
            conn.execute("UPDATE users SET role = ? WHERE id = ?", (ROLE_ADMIN, row["id"]))
            print(f"User '{ADMIN_EMAIL}' promoted to admin role.")
    else:
        print(f"Admin user '{ADMIN_EMAIL}' not found. Will be granted admin role on registration.")


@contextmanager
def get_db():
    """Database connection context manager."""
    conn = sqlite3.connect(DB_PATH, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


# ============================================================================
# Corpus Import
# ============================================================================

def import_corpus(
    conn,
    corpus: dict,
    descriptions: Optional[dict] = None,
    replace: bool = False,
    iri_prefix: str = DEFAULT_IRI_PREFIX,
) -> dict:
    """
    Import a corpus document into the database.

    `corpus` maps property names to {"domain", "range", "texts": [...]}.
    `descriptions` is keyed by full property IRI and may carry
    "description", "domain" and "range" (lists of reference links).
    With `replace`, existing labels, sentences and properties are deleted
    first. Properties whose name already exists are skipped.
    """
    if not isinstance(corpus, dict):
        raise ValueError("Corpus must be a JSON object keyed by property name")
    descriptions = descriptions or {}

    if replace:
        print("Clearing existing data...")
        conn.execute("DELETE FROM labels")
        conn.execute("DELETE FROM sentences")
        conn.execute("DELETE FROM properties")
        conn.execute("UPDATE profiles SET total_labels = 0")

    imported = {"properties": 0, "sentences": 0, "skipped": []}
    for name, entry in corpus.items():
        if not isinstance(entry, dict) or not isinstance(entry.get("texts"), list):
            print(f"Skipping {name}: expected an object with a 'texts' list")
            imported["skipped"].append(name)
            continue

        iri = f"{iri_prefix}{name}"
        meta = descriptions.get(iri) or {}
        texts = [t for t in entry["texts"] if isinstance(t, str) and t.strip()]

        try:
            cursor = conn.execute("""
                INSERT INTO properties
                (name, iri, domain, "range", sentence_count, description, domain_link, range_link)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                name,
                iri,
                entry.get("domain"),
                entry.get("range"),
                len(texts),
                meta.get("description") or "",
                (meta.get("domain") or [""])[0],
                (meta.get("range") or [""])[0],
            ))
        except sqlite3.IntegrityError:
            print(f"Skipping {name}: property already exists")
            imported["skipped"].append(name)
            continue

        property_id = cursor.lastrowid
        conn.executemany(
            "INSERT INTO sentences (property_id, text, label_count) VALUES (?, ?, 0)",
            [(property_id, text) for text in texts]
        )
        imported["properties"] += 1
        imported["sentences"] += len(texts)
        print(f"Loaded {name} ({len(texts)} sentences)")

    return imported


# ============================================================================
# Authentication Helpers
# ============================================================================

def hash_password(password: str) -> str:
    """Hash a password using SHA-256 with salt."""
    salt = secrets.token_hex(16)
    hashed = hashlib.sha256((salt + password).encode()).hexdigest()
    return f"{salt}:{hashed}"


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash."""
    if not password_hash or ':' not in password_hash:
        return False
    salt, hashed = password_hash.split(':', 1)
    return secrets.compare_digest(hashlib.sha256((salt + password).encode()).hexdigest(), hashed)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def create_session(user_id: int) -> str:
    """Create a new session for a user."""
    token = secrets.token_urlsafe(32)
    expires_at = datetime.now() + timedelta(days=SESSION_EXPIRY_DAYS)

    with get_db() as conn:
        conn.execute("""
            INSERT INTO sessions (token, user_id, expires_at)
            VALUES (?, ?, ?)
        """, (token, user_id, expires_at))

        conn.execute("""
            UPDATE users SET last_seen = CURRENT_TIMESTAMP WHERE id = ?
        """, (user_id,))

    return token


def get_user_from_session(token: str) -> Optional[dict]:
    """Get user from session token."""
    if not token:
        return None

    with get_db() as conn:
        row = conn.execute("""
            SELECT u.id, u.email, u.display_name, u.role, u.created_at
            FROM sessions s
            JOIN users u ON s.user_id = u.id
            WHERE s.token = ? AND s.expires_at > ?
        """, (token, datetime.now())).fetchone()

        if row:
            conn.execute("""
                UPDATE users SET last_seen = CURRENT_TIMESTAMP WHERE id = ?
            """, (row["id"],))
            return dict(row)

    return None


def delete_session(token: str):
    """Delete a session."""
    with get_db() as conn:
        conn.execute("DELETE FROM sessions WHERE token = ?", (token,))


def set_session_cookie(response: Response, token: str):
    response.set_cookie(
        key="session",
        value=token,
        httponly=True,
        max_age=SESSION_EXPIRY_DAYS * 24 * 60 * 60,
        samesite="lax"
    )


async def get_current_user(request: Request) -> dict:
    """Dependency to get current user from session cookie."""
    token = request.cookies.get("session")
    user = get_user_from_session(token)
    if not user:
        raise HTTPException(401, "Not authenticated. Please log in.")
    return user


async def require_admin(user: dict = Depends(get_current_user)) -> dict:
    """Dependency to require admin role."""
    if user.get("role") != ROLE_ADMIN:
        raise HTTPException(403, "Admin access required.")
    return user


# ============================================================================
# Pydantic Models
# ============================================================================

class UserCreate(BaseModel):
    """Request body for user registration."""
    email: str = Field(..., min_length=3, pattern=r"^[^@\s]+@[^@\s]+$", description="Email address")
    password: str = Field(..., min_length=MIN_PASSWORD_LENGTH, description="Password (min 6 characters)")
    display_name: Optional[str] = Field(None, description="Display name (defaults to the email)")


class UserLogin(BaseModel):
    """Request body for user login."""
    email: str = Field(..., description="Email address")
    password: str = Field(..., description="Password")


class PasswordUpdate(BaseModel):
    """Request body for changing the current user's password."""
    password: str = Field(..., min_length=MIN_PASSWORD_LENGTH, description="New password (min 6 characters)")


class UserResponse(BaseModel):
    """Response containing user information."""
    id: int = Field(..., description="User ID")
    email: str = Field(..., description="Email address")
    display_name: Optional[str] = Field(None, description="Display name")
    role: str = Field(ROLE_ANNOTATOR, description="User role (admin or annotator)")


class PropertyResponse(BaseModel):
    """An ontology property with the requesting user's progress."""
    id: int
    name: str
    iri: Optional[str] = None
    domain: Optional[str] = None
    range: Optional[str] = None
    sentence_count: int = 0
    is_active: bool = True
    description: Optional[str] = None
    domain_link: Optional[str] = None
    range_link: Optional[str] = None
    labeled: int = Field(0, description="Labels the requesting user has on this property")


class PropertyUpdate(BaseModel):
    """Admin edit of a property."""
    is_active: Optional[bool] = Field(None, description="Whether annotators can see the property")
    description: Optional[str] = Field(None, description="Free-text description")


class SentenceResponse(BaseModel):
    id: int
    property_id: int
    text: str
    label_count: int = 0


class LabelCountUpdate(BaseModel):
    """Direct label_count write."""
    label_count: int = Field(..., ge=0)


class CounterRequest(BaseModel):
    """Body of the counter procedures."""
    sentence_id: int


class LabelUpsert(BaseModel):
    """A label to insert or overwrite for the current user."""
    sentence_id: int = Field(..., description="Sentence being labeled")
    property_id: int = Field(..., description="Property the sentence belongs to")
    label: LabelKind = Field(..., description="Label kind: pdr, pd, pr, p or n")
    subject_start: Optional[int] = Field(None, ge=0)
    subject_end: Optional[int] = Field(None, ge=0)
    object_start: Optional[int] = Field(None, ge=0)
    object_end: Optional[int] = Field(None, ge=0)


class LabelResponse(BaseModel):
    id: int
    sentence_id: int
    user_id: int
    property_id: int
    label: str
    subject_start: Optional[int] = None
    subject_end: Optional[int] = None
    object_start: Optional[int] = None
    object_end: Optional[int] = None
    created_at: Optional[str] = None
    sentence_text: Optional[str] = None
    label_count: Optional[int] = None


class ProfileUpdate(BaseModel):
    display_name: str = Field(..., min_length=1, max_length=100)


# ============================================================================
# Query Helpers
# ============================================================================

def row_to_property(row) -> dict:
    data = dict(row)
    data["is_active"] = bool(data.get("is_active", 1))
    data.setdefault("labeled", 0)
    return data


def get_property_or_404(conn, property_id: int, user: dict):
    """Fetch a property; hidden properties are invisible to non-admins."""
    row = conn.execute("SELECT * FROM properties WHERE id = ?", (property_id,)).fetchone()
    if not row or (not row["is_active"] and user.get("role") != ROLE_ADMIN):
        raise HTTPException(404, f"Property not found: {property_id}")
    return row


def sentence_filter(property_id: int, unlabeled_only: bool, order: str) -> tuple[str, list, str]:
    """WHERE clause, params and ORDER BY for a traversal query."""
    where = "property_id = ?"
    params = [property_id]
    if unlabeled_only:
        where += " AND label_count = 0"
    if order == "label_count":
        # Ascending label_count with NULLs last, ties broken by id
        order_by = "label_count IS NULL, label_count ASC, id ASC"
    else:
        order_by = "id ASC"
    return where, params, order_by


def parse_spans(body: LabelUpsert) -> tuple[Optional[Span], Optional[Span]]:
    spans = []
    for role, start, end in (
        ("subject", body.subject_start, body.subject_end),
        ("object", body.object_start, body.object_end),
    ):
        if (start is None) != (end is None):
            raise HTTPException(400, f"{role}_start and {role}_end must both be set or both be null")
        try:
            spans.append(Span.from_bounds(start, end))
        except ValueError as e:
            raise HTTPException(400, f"Invalid {role} span: {e}")
    return spans[0], spans[1]


def fetch_label_row(conn, sentence_id: int, user_id: int):
    return conn.execute("""
        SELECT l.*, s.text AS sentence_text, s.label_count
        FROM labels l
        JOIN sentences s ON s.id = l.sentence_id
        WHERE l.sentence_id = ? AND l.user_id = ?
    """, (sentence_id, user_id)).fetchone()


def ensure_profile(conn, user: dict):
    conn.execute("""
        INSERT OR IGNORE INTO profiles (user_id, display_name, email)
        VALUES (?, ?, ?)
    """, (user["id"], user.get("display_name"), user["email"]))


# ============================================================================
# API Endpoints - Root
# ============================================================================

@app.get("/", include_in_schema=False)
async def root():
    """Point browsers at the API documentation."""
    return RedirectResponse("/docs")


@app.get(
    "/api/health",
    tags=["System"],
    summary="Health check",
)
async def health():
    with get_db() as conn:
        conn.execute("SELECT 1").fetchone()
    return {"status": "ok"}


@app.get(
    "/api/label-kinds",
    tags=["System"],
    summary="Get label kinds",
    description="The five alignment labels with their titles and span requirements. Public.",
)
async def get_label_kinds():
    return {
        "kinds": [
            {
                "id": kind.value,
                "title": LABEL_TITLES[kind],
                "description": LABEL_DESCRIPTIONS[kind],
                "subject": SPAN_RULES[kind][0],
                "object": SPAN_RULES[kind][1],
            }
            for kind in LabelKind
        ]
    }


# ============================================================================
# API Endpoints - Authentication
# ============================================================================

@app.post(
    "/api/auth/register",
    tags=["Authentication"],
    summary="Register a new user",
    description="Create a new account. Returns a session cookie on success. If ADMIN_EMAIL matches, the user gets the admin role.",
    response_model=UserResponse,
)
async def register(user: UserCreate, response: Response):
    """Register a new user."""
    email = normalize_email(user.email)

    with get_db() as conn:
        existing = conn.execute(
            "SELECT id FROM users WHERE email = ?",
            (email,)
        ).fetchone()

        if existing:
            raise HTTPException(400, "Email already registered")

        role = ROLE_ADMIN if email == ADMIN_EMAIL else ROLE_ANNOTATOR
        display_name = user.display_name or email

        cursor = conn.execute("""
            INSERT INTO users (email, password_hash, display_name, role)
            VALUES (?, ?, ?, ?)
        """, (email, hash_password(user.password), display_name, role))
        user_id = cursor.lastrowid

        conn.execute("""
            INSERT INTO profiles (user_id, display_name, email) VALUES (?, ?, ?)
        """, (user_id, display_name, email))

    set_session_cookie(response, create_session(user_id))
    return UserResponse(id=user_id, email=email, display_name=display_name, role=role)


@app.post(
    "/api/auth/login",
    tags=["Authentication"],
    summary="Log in",
    description="Authenticate with email and password. Returns a session cookie on success.",
)
async def login(user: UserLogin, response: Response):
    """Log in a user."""
    email = normalize_email(user.email)

    with get_db() as conn:
        row = conn.execute(
            "SELECT id, email, password_hash, display_name, role FROM users WHERE email = ?",
            (email,)
        ).fetchone()

        if not row or not verify_password(user.password, row["password_hash"]):
            raise HTTPException(401, "Invalid email or password")

    set_session_cookie(response, create_session(row["id"]))
    return {
        "status": "logged_in",
        "id": row["id"],
        "email": row["email"],
        "display_name": row["display_name"],
        "role": row["role"],
    }


@app.post(
    "/api/auth/logout",
    tags=["Authentication"],
    summary="Log out",
    description="Invalidate the current session and clear the session cookie.",
)
async def logout(request: Request, response: Response):
    """Log out the current user."""
    token = request.cookies.get("session")
    if token:
        delete_session(token)
    response.delete_cookie("session")
    return {"status": "logged_out"}


@app.put(
    "/api/auth/password",
    tags=["Authentication"],
    summary="Change password",
)
async def update_password(body: PasswordUpdate, user: dict = Depends(get_current_user)):
    """Change the current user's password."""
    with get_db() as conn:
        conn.execute(
            "UPDATE users SET password_hash = ? WHERE id = ?",
            (hash_password(body.password), user["id"])
        )
    return {"status": "password_updated"}


@app.get(
    "/api/me",
    tags=["Authentication"],
    summary="Get current user",
    response_model=UserResponse,
)
async def get_me(user: dict = Depends(get_current_user)):
    """Get current user info."""
    return UserResponse(
        id=user["id"],
        email=user["email"],
        display_name=user.get("display_name"),
        role=user.get("role", ROLE_ANNOTATOR),
    )


# ============================================================================
# API Endpoints - Properties
# ============================================================================

@app.get(
    "/api/properties",
    tags=["Properties"],
    summary="List properties",
    description="Properties ordered by name, with the requesting user's label count. Hidden properties are only listed for admins.",
)
async def list_properties(user: dict = Depends(get_current_user)):
    query = """
        SELECT p.*,
               (SELECT COUNT(*) FROM labels l
                WHERE l.property_id = p.id AND l.user_id = ?) AS labeled
        FROM properties p
    """
    if user.get("role") != ROLE_ADMIN:
        query += " WHERE p.is_active = 1"
    query += " ORDER BY p.name"

    with get_db() as conn:
        rows = conn.execute(query, (user["id"],)).fetchall()
    return {"properties": [row_to_property(r) for r in rows]}


@app.get(
    "/api/properties/{property_id}",
    tags=["Properties"],
    summary="Get a property",
    response_model=PropertyResponse,
)
async def get_property(property_id: int, user: dict = Depends(get_current_user)):
    with get_db() as conn:
        row = get_property_or_404(conn, property_id, user)
        labeled = conn.execute(
            "SELECT COUNT(*) FROM labels WHERE property_id = ? AND user_id = ?",
            (property_id, user["id"])
        ).fetchone()[0]
    data = row_to_property(row)
    data["labeled"] = labeled
    return data


# ============================================================================
# API Endpoints - Sentences
# ============================================================================

@app.get(
    "/api/properties/{property_id}/sentences/count",
    tags=["Sentences"],
    summary="Count sentences",
)
async def count_sentences(
    property_id: int,
    unlabeled_only: bool = Query(False, description="Only sentences with label_count = 0"),
    order: str = Query("id", pattern="^(id|label_count)$"),
    user: dict = Depends(get_current_user),
):
    with get_db() as conn:
        get_property_or_404(conn, property_id, user)
        where, params, _ = sentence_filter(property_id, unlabeled_only, order)
        count = conn.execute(f"SELECT COUNT(*) FROM sentences WHERE {where}", params).fetchone()[0]
    return {"property_id": property_id, "count": count}


@app.get(
    "/api/properties/{property_id}/sentences/ids",
    tags=["Sentences"],
    summary="List sentence ids in traversal order",
)
async def list_sentence_ids(
    property_id: int,
    unlabeled_only: bool = Query(False),
    order: str = Query("id", pattern="^(id|label_count)$"),
    user: dict = Depends(get_current_user),
):
    with get_db() as conn:
        get_property_or_404(conn, property_id, user)
        where, params, order_by = sentence_filter(property_id, unlabeled_only, order)
        rows = conn.execute(
            f"SELECT id FROM sentences WHERE {where} ORDER BY {order_by}", params
        ).fetchall()
    return {"property_id": property_id, "ids": [r["id"] for r in rows]}


@app.get(
    "/api/properties/{property_id}/sentences",
    tags=["Sentences"],
    summary="Fetch a batch of sentences",
    description=(
        "Sentences at [offset, offset + limit) in traversal order. When `ids` is given, "
        "returns those sentences of the property in the order requested instead, "
        "so a client can page over an id list it already holds."
    ),
)
async def fetch_sentences(
    property_id: int,
    unlabeled_only: bool = Query(False),
    order: str = Query("id", pattern="^(id|label_count)$"),
    offset: int = Query(0, ge=0),
    limit: int = Query(10, ge=1, le=MAX_BATCH_LIMIT),
    ids: Optional[list[int]] = Query(None, description="Explicit sentence ids, in order"),
    user: dict = Depends(get_current_user),
):
    with get_db() as conn:
        get_property_or_404(conn, property_id, user)
        if ids:
            if len(ids) > MAX_BATCH_LIMIT:
                raise HTTPException(400, f"At most {MAX_BATCH_LIMIT} ids per request")
            placeholders = ",".join("?" * len(ids))
            found = {r["id"]: dict(r) for r in conn.execute(f"""
                SELECT id, property_id, text, label_count FROM sentences
                WHERE property_id = ? AND id IN ({placeholders})
            """, [property_id] + ids).fetchall()}
            sentences = [found[i] for i in ids if i in found]
        else:
            where, params, order_by = sentence_filter(property_id, unlabeled_only, order)
            rows = conn.execute(f"""
                SELECT id, property_id, text, label_count FROM sentences
                WHERE {where} ORDER BY {order_by}
                LIMIT ? OFFSET ?
            """, params + [limit, offset]).fetchall()
            sentences = [dict(r) for r in rows]
    return {
        "property_id": property_id,
        "offset": offset,
        "limit": limit,
        "sentences": sentences,
    }


@app.get(
    "/api/sentences/{sentence_id}",
    tags=["Sentences"],
    summary="Get a sentence",
    description="Current row of a single sentence, including its live label_count.",
    response_model=SentenceResponse,
)
async def get_sentence(sentence_id: int, user: dict = Depends(get_current_user)):
    with get_db() as conn:
        row = conn.execute(
            "SELECT id, property_id, text, label_count FROM sentences WHERE id = ?", (sentence_id,)
        ).fetchone()
    if not row:
        raise HTTPException(404, f"Sentence not found: {sentence_id}")
    data = dict(row)
    data["label_count"] = data["label_count"] or 0
    return data


@app.patch(
    "/api/sentences/{sentence_id}",
    tags=["Counters"],
    summary="Set label_count directly",
    description="Non-atomic write of label_count. Concurrent writers can overwrite each other; prefer the rpc procedures.",
    response_model=SentenceResponse,
)
async def set_label_count(sentence_id: int, body: LabelCountUpdate, user: dict = Depends(get_current_user)):
    with get_db() as conn:
        cursor = conn.execute(
            "UPDATE sentences SET label_count = ? WHERE id = ?",
            (body.label_count, sentence_id)
        )
        if cursor.rowcount == 0:
            raise HTTPException(404, f"Sentence not found: {sentence_id}")
        row = conn.execute(
            "SELECT id, property_id, text, label_count FROM sentences WHERE id = ?", (sentence_id,)
        ).fetchone()
    return dict(row)


@app.post(
    "/api/rpc/increment_label_count",
    tags=["Counters"],
    summary="Atomically increment label_count",
)
async def increment_label_count(body: CounterRequest, user: dict = Depends(get_current_user)):
    return adjust_label_count(body.sentence_id, 1)


@app.post(
    "/api/rpc/decrement_label_count",
    tags=["Counters"],
    summary="Atomically decrement label_count",
    description="Decrements label_count, never below zero.",
)
async def decrement_label_count(body: CounterRequest, user: dict = Depends(get_current_user)):
    return adjust_label_count(body.sentence_id, -1)


def adjust_label_count(sentence_id: int, delta: int) -> dict:
    """Single-statement counter update."""
    with get_db() as conn:
        cursor = conn.execute("""
            UPDATE sentences SET label_count = MAX(0, COALESCE(label_count, 0) + ?)
            WHERE id = ?
        """, (delta, sentence_id))
        if cursor.rowcount == 0:
            raise HTTPException(404, f"Sentence not found: {sentence_id}")
        count = conn.execute(
            "SELECT label_count FROM sentences WHERE id = ?", (sentence_id,)
        ).fetchone()[0]
    return {"sentence_id": sentence_id, "label_count": count}


# ============================================================================
# API Endpoints - Labels
# ============================================================================

@app.get(
    "/api/properties/{property_id}/labels/mine",
    tags=["Labels"],
    summary="Ids of sentences I have labeled",
)
async def my_labeled_ids(property_id: int, user: dict = Depends(get_current_user)):
    with get_db() as conn:
        get_property_or_404(conn, property_id, user)
        rows = conn.execute(
            "SELECT sentence_id FROM labels WHERE property_id = ? AND user_id = ?",
            (property_id, user["id"])
        ).fetchall()
    return {"property_id": property_id, "sentence_ids": [r["sentence_id"] for r in rows]}


@app.get(
    "/api/properties/{property_id}/labels/mine/count",
    tags=["Labels"],
    summary="Count my labels on a property",
)
async def my_label_count(property_id: int, user: dict = Depends(get_current_user)):
    with get_db() as conn:
        get_property_or_404(conn, property_id, user)
        count = conn.execute(
            "SELECT COUNT(*) FROM labels WHERE property_id = ? AND user_id = ?",
            (property_id, user["id"])
        ).fetchone()[0]
    return {"property_id": property_id, "count": count}


@app.get(
    "/api/sentences/{sentence_id}/label",
    tags=["Labels"],
    summary="Get my label for a sentence",
    response_model=LabelResponse,
)
async def get_my_label(sentence_id: int, user: dict = Depends(get_current_user)):
    with get_db() as conn:
        row = fetch_label_row(conn, sentence_id, user["id"])
    if not row:
        raise HTTPException(404, "No label for this sentence")
    return dict(row)


@app.put(
    "/api/labels",
    tags=["Labels"],
    summary="Upsert my label",
    description="""
Insert or overwrite the current user's label for a sentence. The pair
(sentence_id, user_id) identifies the label; saving again edits it in place.

`created` is true when no label existed before this call. It does not change
`label_count`; clients adjust the counter through the rpc procedures.
    """,
)
async def upsert_label(body: LabelUpsert, user: dict = Depends(get_current_user)):
    subject, obj = parse_spans(body)

    with get_db() as conn:
        sentence = conn.execute(
            "SELECT id, property_id, text FROM sentences WHERE id = ?",
            (body.sentence_id,)
        ).fetchone()
        if not sentence:
            raise HTTPException(404, f"Sentence not found: {body.sentence_id}")
        if sentence["property_id"] != body.property_id:
            raise HTTPException(400, "Sentence does not belong to this property")

        issue = validate_label(body.label, subject, obj, token_count=len(tokenize(sentence["text"])))
        if issue:
            raise HTTPException(400, issue.message)

        existing = conn.execute(
            "SELECT id FROM labels WHERE sentence_id = ? AND user_id = ?",
            (body.sentence_id, user["id"])
        ).fetchone()

        conn.execute("""
            INSERT INTO labels
            (sentence_id, user_id, property_id, label, subject_start, subject_end, object_start, object_end)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (sentence_id, user_id) DO UPDATE SET
                property_id = excluded.property_id,
                label = excluded.label,
                subject_start = excluded.subject_start,
                subject_end = excluded.subject_end,
                object_start = excluded.object_start,
                object_end = excluded.object_end
        """, (
            body.sentence_id, user["id"], body.property_id, body.label.value,
            body.subject_start, body.subject_end, body.object_start, body.object_end,
        ))

        created = existing is None
        if created:
            ensure_profile(conn, user)
            conn.execute(
                "UPDATE profiles SET total_labels = total_labels + 1 WHERE user_id = ?",
                (user["id"],)
            )

        row = fetch_label_row(conn, body.sentence_id, user["id"])

    return {"status": "saved", "created": created, "label": dict(row)}


@app.delete(
    "/api/sentences/{sentence_id}/label",
    tags=["Labels"],
    summary="Remove my label for a sentence",
    description="Deletes the label. Does not change label_count; use the decrement procedure.",
)
async def delete_my_label(sentence_id: int, user: dict = Depends(get_current_user)):
    with get_db() as conn:
        cursor = conn.execute(
            "DELETE FROM labels WHERE sentence_id = ? AND user_id = ?",
            (sentence_id, user["id"])
        )
        if cursor.rowcount == 0:
            raise HTTPException(404, "No label for this sentence")
        conn.execute(
            "UPDATE profiles SET total_labels = MAX(0, total_labels - 1) WHERE user_id = ?",
            (user["id"],)
        )
    return {"status": "deleted", "sentence_id": sentence_id}


@app.get(
    "/api/labels/mine",
    tags=["Labels"],
    summary="My label history",
    description="The current user's labels joined with their sentence text, optionally filtered.",
)
async def list_my_labels(
    property_id: Optional[int] = Query(None),
    label: Optional[LabelKind] = Query(None, description="Filter by label kind"),
    search: Optional[str] = Query(None, description="Case-insensitive substring of the sentence text"),
    order: str = Query("newest", pattern="^(newest|oldest)$"),
    user: dict = Depends(get_current_user),
):
    query = """
        SELECT l.*, s.text AS sentence_text, s.label_count
        FROM labels l
        JOIN sentences s ON s.id = l.sentence_id
        WHERE l.user_id = ?
    """
    params = [user["id"]]

    if property_id is not None:
        query += " AND l.property_id = ?"
        params.append(property_id)
    if label is not None:
        query += " AND l.label = ?"
        params.append(label.value)
    if search:
        query += " AND LOWER(s.text) LIKE ?"
        params.append(f"%{search.lower()}%")

    direction = "DESC" if order == "newest" else "ASC"
    query += f" ORDER BY l.created_at {direction}, l.id {direction}"

    with get_db() as conn:
        rows = conn.execute(query, params).fetchall()
    return {"count": len(rows), "labels": [dict(r) for r in rows]}


# ============================================================================
# API Endpoints - Profile
# ============================================================================

@app.get(
    "/api/profile",
    tags=["Profile"],
    summary="Get my profile",
    description="Profile with label totals and progress over visible properties.",
)
async def get_profile(user: dict = Depends(get_current_user)):
    with get_db() as conn:
        ensure_profile(conn, user)
        profile = conn.execute("SELECT * FROM profiles WHERE user_id = ?", (user["id"],)).fetchone()
        progress = conn.execute("""
            SELECT p.id, p.sentence_count,
                   (SELECT COUNT(*) FROM labels l
                    WHERE l.property_id = p.id AND l.user_id = ?) AS labeled
            FROM properties p
            WHERE p.is_active = 1
        """, (user["id"],)).fetchall()

    total_labels = sum(r["labeled"] for r in progress)
    total_sentences = sum(r["sentence_count"] for r in progress)
    return {
        "user_id": user["id"],
        "email": user["email"],
        "display_name": profile["display_name"],
        "total_labels": profile["total_labels"],
        "stats": {
            "labels": total_labels,
            "sentences": total_sentences,
            "overall_progress": round(total_labels / total_sentences * 100) if total_sentences else 0,
            "properties_started": sum(1 for r in progress if r["labeled"] > 0),
            "properties_completed": sum(
                1 for r in progress if r["sentence_count"] > 0 and r["labeled"] >= r["sentence_count"]
            ),
        },
    }


@app.put(
    "/api/profile",
    tags=["Profile"],
    summary="Update my profile",
    description="Change the display name. Also resyncs total_labels with the real label count.",
)
async def update_profile(body: ProfileUpdate, user: dict = Depends(get_current_user)):
    with get_db() as conn:
        ensure_profile(conn, user)
        total = conn.execute(
            "SELECT COUNT(*) FROM labels WHERE user_id = ?", (user["id"],)
        ).fetchone()[0]
        conn.execute(
            "UPDATE users SET display_name = ? WHERE id = ?",
            (body.display_name, user["id"])
        )
        conn.execute("""
            UPDATE profiles
            SET display_name = ?, total_labels = ?, updated_at = CURRENT_TIMESTAMP
            WHERE user_id = ?
        """, (body.display_name, total, user["id"]))
    return {"user_id": user["id"], "display_name": body.display_name, "total_labels": total}


@app.get(
    "/api/leaderboard",
    tags=["Profile"],
    summary="Get the leaderboard",
    description="Profiles ordered by total_labels. Totals are denormalized and may lag behind the label table.",
)
async def get_leaderboard(
    limit: int = Query(10, ge=1, le=100),
    user: dict = Depends(get_current_user),
):
    with get_db() as conn:
        rows = conn.execute("""
            SELECT user_id, display_name, total_labels FROM profiles
            WHERE total_labels > 0
            ORDER BY total_labels DESC, user_id ASC
            LIMIT ?
        """, (limit,)).fetchall()
        total_annotators = conn.execute(
            "SELECT COUNT(*) FROM profiles WHERE total_labels > 0"
        ).fetchone()[0]

    entries = [
        {
            "rank": i + 1,
            "user_id": r["user_id"],
            "display_name": r["display_name"],
            "total_labels": r["total_labels"],
            "is_current_user": r["user_id"] == user["id"],
        }
        for i, r in enumerate(rows)
    ]
    return {"entries": entries, "total_annotators": total_annotators}


# ============================================================================
# API Endpoints - Admin
# ============================================================================

@app.get(
    "/api/admin/stats",
    tags=["Admin"],
    summary="Labeling statistics",
    description="Totals, coverage, redundancy (sentences labeled at least K times) and top contributors.",
)
async def admin_stats(admin: dict = Depends(require_admin)):
    with get_db() as conn:
        total = conn.execute("SELECT COUNT(*) FROM sentences").fetchone()[0]
        labeled = conn.execute("SELECT COUNT(*) FROM sentences WHERE label_count > 0").fetchone()[0]
        redundancy = {
            str(k): conn.execute(
                "SELECT COUNT(*) FROM sentences WHERE label_count >= ?", (k,)
            ).fetchone()[0]
            for k in REDUNDANCY_LEVELS
        }
        top = conn.execute("""
            SELECT l.user_id, u.email, u.display_name, COUNT(*) AS count
            FROM labels l
            JOIN users u ON u.id = l.user_id
            GROUP BY l.user_id
            ORDER BY count DESC, l.user_id ASC
            LIMIT ?
        """, (TOP_CONTRIBUTORS,)).fetchall()

    return {
        "total_sentences": total,
        "labeled_sentences": labeled,
        "coverage": round(labeled / total * 100) if total else 0,
        "redundancy": redundancy,
        "top_users": [
            {**dict(r), "is_current_user": r["user_id"] == admin["id"]}
            for r in top
        ],
    }


@app.put(
    "/api/admin/properties/{property_id}",
    tags=["Admin"],
    summary="Update a property",
    description="Toggle visibility or edit the description of a property.",
    response_model=PropertyResponse,
)
async def admin_update_property(property_id: int, body: PropertyUpdate, admin: dict = Depends(require_admin)):
    with get_db() as conn:
        get_property_or_404(conn, property_id, admin)
        if body.is_active is not None:
            conn.execute(
                "UPDATE properties SET is_active = ? WHERE id = ?",
                (1 if body.is_active else 0, property_id)
            )
        if body.description is not None:
            conn.execute(
                "UPDATE properties SET description = ? WHERE id = ?",
                (body.description, property_id)
            )
        row = conn.execute("SELECT * FROM properties WHERE id = ?", (property_id,)).fetchone()
    return row_to_property(row)


def export_records(conn, property_id: Optional[int], min_labels: int) -> list[dict]:
    """Labels joined with sentence text, for sentences labeled at least `min_labels` times."""
    query = """
        SELECT l.sentence_id, s.text AS sentence_text, l.property_id, l.user_id, l.label,
               l.subject_start, l.subject_end, l.object_start, l.object_end, l.created_at
        FROM labels l
        JOIN sentences s ON s.id = l.sentence_id
        WHERE 1=1
    """
    params = []
    if property_id is not None:
        query += " AND l.property_id = ?"
        params.append(property_id)
    if min_labels > 0:
        query += " AND s.label_count >= ?"
        params.append(min_labels)
    query += " ORDER BY l.property_id, l.sentence_id, l.user_id"
    return [dict(r) for r in conn.execute(query, params).fetchall()]


def export_to_csv(records: list) -> str:
    """Convert export records to CSV format."""
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=EXPORT_FIELDS)
    writer.writeheader()
    writer.writerows(records)
    return output.getvalue()


@app.get(
    "/api/admin/export",
    tags=["Admin"],
    summary="Export labels",
    description="""
Export labels for one property or all of them.

**Filters:**
- `property_id`: Only this property (default: all properties)
- `min_labels`: Only sentences with at least this many labels (0 disables the filter)

**Output Formats:**
- `json`: Structured JSON (default)
- `csv`: One row per label
    """,
)
async def admin_export(
    property_id: Optional[int] = Query(None),
    min_labels: int = Query(EXPORT_DEFAULT_MIN_LABELS, ge=0),
    format: str = Query("json", pattern="^(json|csv)$"),
    admin: dict = Depends(require_admin),
):
    with get_db() as conn:
        name = "all_properties"
        if property_id is not None:
            row = get_property_or_404(conn, property_id, admin)
            name = "".join(c if c.isalnum() else "_" for c in row["name"])
        records = export_records(conn, property_id, min_labels)

    if format == "csv":
        return Response(
            content=export_to_csv(records),
            media_type="text/csv",
            headers={
                "Content-Disposition": f"attachment; filename={name}_min{min_labels}_labels.csv"
            }
        )
    return {
        "format": format,
        "filters": {"property_id": property_id, "min_labels": min_labels},
        "count": len(records),
        "labels": records,
    }
