"""
API client for the Property Alignment Labeler backend.

Wraps all HTTP calls to the FastAPI backend, handling authentication
and response parsing.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

import httpx

from .labels import LabelKind, Span
from .traversal import SentenceQuery

logger = logging.getLogger(__name__)

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"
USER_UPDATED = "USER_UPDATED"


@dataclass
class APIConfig:
    """Configuration for the API client."""
    base_url: str = "http://127.0.0.1:8000"
    email: str = ""
    password: str = ""
    timeout: float = 30.0


@dataclass
class User:
    """Authenticated user."""
    id: int
    email: str
    metadata: dict = field(default_factory=dict)

    @property
    def is_admin(self) -> bool:
        return self.metadata.get("role") == "admin"

    @classmethod
    def from_json(cls, data: dict) -> "User":
        return cls(
            id=data["id"],
            email=data["email"],
            metadata={
                "display_name": data.get("display_name"),
                "role": data.get("role", "annotator"),
            },
        )


@dataclass
class Property:
    """An ontology property with the current user's progress on it."""
    id: int
    name: str
    domain: Optional[str] = None
    range: Optional[str] = None
    iri: Optional[str] = None
    sentence_count: int = 0
    is_active: bool = True
    description: Optional[str] = None
    domain_link: Optional[str] = None
    range_link: Optional[str] = None
    labeled: int = 0

    @property
    def is_complete(self) -> bool:
        return self.sentence_count > 0 and self.labeled >= self.sentence_count

    @classmethod
    def from_json(cls, data: dict) -> "Property":
        return cls(
            id=data["id"],
            name=data["name"],
            domain=data.get("domain"),
            range=data.get("range"),
            iri=data.get("iri"),
            sentence_count=data.get("sentence_count") or 0,
            is_active=bool(data.get("is_active", True)),
            description=data.get("description"),
            domain_link=data.get("domain_link"),
            range_link=data.get("range_link"),
            labeled=data.get("labeled") or 0,
        )


@dataclass
class Sentence:
    """A sentence record as held in the buffer."""
    id: int
    text: str
    label_count: int = 0
    property_id: Optional[int] = None

    @classmethod
    def from_json(cls, data: dict) -> "Sentence":
        return cls(
            id=data["id"],
            text=data["text"],
            label_count=data.get("label_count") or 0,
            property_id=data.get("property_id"),
        )


@dataclass
class Label:
    """One user's alignment label for one sentence."""
    sentence_id: int
    property_id: int
    kind: LabelKind
    subject: Optional[Span] = None
    object: Optional[Span] = None
    id: Optional[int] = None
    user_id: Optional[int] = None
    created_at: Optional[str] = None
    sentence_text: Optional[str] = None

    def to_payload(self) -> dict:
        return {
            "sentence_id": self.sentence_id,
            "property_id": self.property_id,
            "label": LabelKind(self.kind).value,
            "subject_start": self.subject.start if self.subject else None,
            "subject_end": self.subject.end if self.subject else None,
            "object_start": self.object.start if self.object else None,
            "object_end": self.object.end if self.object else None,
        }

    @classmethod
    def from_json(cls, data: dict) -> "Label":
        return cls(
            id=data.get("id"),
            sentence_id=data["sentence_id"],
            property_id=data["property_id"],
            user_id=data.get("user_id"),
            kind=LabelKind(data["label"]),
            subject=Span.from_bounds(data.get("subject_start"), data.get("subject_end")),
            object=Span.from_bounds(data.get("object_start"), data.get("object_end")),
            created_at=data.get("created_at"),
            sentence_text=data.get("sentence_text"),
        )


class LabelerApiClient:
    """
    Client for the Property Alignment Labeler API.

    Handles authentication via session cookies and provides typed methods
    for the sentence, label and counter endpoints. Pass `http_client` to
    reuse an existing httpx.Client (the test suite passes a FastAPI
    TestClient).
    """

    def __init__(self, config: Optional[APIConfig] = None, http_client: Optional[httpx.Client] = None):
        self.config = config or APIConfig()
        self._client = http_client or httpx.Client(
            base_url=self.config.base_url,
            timeout=self.config.timeout,
            follow_redirects=True,
        )
        self._owns_client = http_client is None
        self._user: Optional[User] = None
        self._listeners: list[Callable] = []

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    def on_auth_change(self, callback: Callable[[str, Optional[User]], None]) -> Callable[[], None]:
        """Register `callback(event, user)`; returns a function that unregisters it."""
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _emit(self, event: str, user: Optional[User]) -> None:
        for callback in list(self._listeners):
            callback(event, user)

    def sign_up(self, email: str, password: str, display_name: Optional[str] = None) -> User:
        """Create an account; the new session is signed in."""
        response = self._client.post(
            "/api/auth/register",
            json={"email": email, "password": password, "display_name": display_name},
        )
        response.raise_for_status()
        self._user = User.from_json(response.json())
        self._emit(SIGNED_IN, self._user)
        return self._user

    def sign_in(self, email: str, password: str) -> User:
        response = self._client.post(
            "/api/auth/login",
            json={"email": email, "password": password},
        )
        response.raise_for_status()
        self._user = User.from_json(response.json())
        self._emit(SIGNED_IN, self._user)
        return self._user

    def sign_out(self) -> None:
        response = self._client.post("/api/auth/logout")
        response.raise_for_status()
        self._user = None
        self._emit(SIGNED_OUT, None)

    def current_user(self) -> Optional[User]:
        """Get the signed-in user, or None if the session is not authenticated."""
        response = self._client.get("/api/me")
        if response.status_code == 401:
            self._user = None
            return None
        response.raise_for_status()
        self._user = User.from_json(response.json())
        return self._user

    def ensure_auth(self) -> User:
        """Sign in with the configured credentials unless a session already exists."""
        if self._user is not None:
            return self._user
        user = self.current_user()
        if user is not None:
            return user
        return self.sign_in(self.config.email, self.config.password)

    def update_password(self, new_password: str) -> None:
        response = self._client.put("/api/auth/password", json={"password": new_password})
        response.raise_for_status()
        self._emit(USER_UPDATED, self._user)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    def list_properties(self) -> list[Property]:
        """Visible properties (all of them for admins) with the user's progress."""
        response = self._client.get("/api/properties")
        response.raise_for_status()
        return [Property.from_json(p) for p in response.json()["properties"]]

    def get_property(self, property_id: int) -> Optional[Property]:
        response = self._client.get(f"/api/properties/{property_id}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return Property.from_json(response.json())

    def count_labeled(self, property_id: int) -> int:
        """Number of labels the current user has on this property."""
        response = self._client.get(f"/api/properties/{property_id}/labels/mine/count")
        response.raise_for_status()
        return response.json()["count"]

    # ------------------------------------------------------------------
    # Sentences
    # ------------------------------------------------------------------

    def count_sentences(self, property_id: int, query: SentenceQuery) -> int:
        response = self._client.get(
            f"/api/properties/{property_id}/sentences/count",
            params=query.params(),
        )
        response.raise_for_status()
        return response.json()["count"]

    def list_sentence_ids(self, property_id: int, query: SentenceQuery) -> list[int]:
        response = self._client.get(
            f"/api/properties/{property_id}/sentences/ids",
            params=query.params(),
        )
        response.raise_for_status()
        return response.json()["ids"]

    def fetch_sentence_batch(
        self,
        property_id: int,
        query: SentenceQuery,
        offset: int,
        limit: int,
        ids: Optional[list[int]] = None,
    ) -> list[Sentence]:
        """
        Sentences at [offset, offset + limit) in traversal order.

        With `ids`, the batch is exactly those sentences in that order
        (missing ones omitted) and the live filter is not re-applied.
        """
        params = query.params()
        params.update({"offset": offset, "limit": limit})
        if ids is not None:
            if not ids:
                return []
            params["ids"] = list(ids)
        response = self._client.get(f"/api/properties/{property_id}/sentences", params=params)
        response.raise_for_status()
        return [Sentence.from_json(s) for s in response.json()["sentences"]]

    def fetch_sentence(self, sentence_id: int) -> Optional[Sentence]:
        """A single sentence with its current label_count, or None."""
        response = self._client.get(f"/api/sentences/{sentence_id}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return Sentence.from_json(response.json())

    def fetch_user_labeled_ids(self, property_id: int) -> set[int]:
        response = self._client.get(f"/api/properties/{property_id}/labels/mine")
        response.raise_for_status()
        return set(response.json()["sentence_ids"])

    # ------------------------------------------------------------------
    # Labels
    # ------------------------------------------------------------------

    def fetch_label(self, sentence_id: int) -> Optional[Label]:
        """The current user's label for a sentence, or None."""
        response = self._client.get(f"/api/sentences/{sentence_id}/label")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return Label.from_json(response.json())

    def upsert_label(self, label: Label) -> tuple[Label, bool]:
        """Insert or overwrite the user's label. Returns (label, created)."""
        response = self._client.put("/api/labels", json=label.to_payload())
        response.raise_for_status()
        data = response.json()
        return Label.from_json(data["label"]), data["created"]

    def delete_label(self, sentence_id: int) -> bool:
        """Remove the user's label. Returns False if there was none."""
        response = self._client.delete(f"/api/sentences/{sentence_id}/label")
        if response.status_code == 404:
            return False
        response.raise_for_status()
        return True

    def list_my_labels(
        self,
        property_id: Optional[int] = None,
        kind: Optional[str] = None,
        search: Optional[str] = None,
        order: str = "newest",
    ) -> list[Label]:
        params = {"order": order}
        if property_id is not None:
            params["property_id"] = property_id
        if kind:
            params["label"] = kind
        if search:
            params["search"] = search
        response = self._client.get("/api/labels/mine", params=params)
        response.raise_for_status()
        return [Label.from_json(l) for l in response.json()["labels"]]

    # ------------------------------------------------------------------
    # Counter procedures
    # ------------------------------------------------------------------

    def adjust_label_count(self, sentence_id: int, delta: int) -> int:
        """Atomically add +1 or -1 to a sentence's label_count. Returns the new count."""
        if delta not in (1, -1):
            raise ValueError(f"delta must be +1 or -1, got {delta}")
        procedure = "increment_label_count" if delta > 0 else "decrement_label_count"
        response = self._client.post(f"/api/rpc/{procedure}", json={"sentence_id": sentence_id})
        response.raise_for_status()
        return response.json()["label_count"]

    def set_label_count(self, sentence_id: int, label_count: int) -> None:
        """Direct, non-atomic write of label_count."""
        response = self._client.patch(f"/api/sentences/{sentence_id}", json={"label_count": label_count})
        response.raise_for_status()

    # ------------------------------------------------------------------
    # Profile, leaderboard, admin
    # ------------------------------------------------------------------

    def get_profile(self) -> dict:
        response = self._client.get("/api/profile")
        response.raise_for_status()
        return response.json()

    def update_profile(self, display_name: str) -> dict:
        response = self._client.put("/api/profile", json={"display_name": display_name})
        response.raise_for_status()
        self._emit(USER_UPDATED, self._user)
        return response.json()

    def get_leaderboard(self, limit: int = 10) -> dict:
        response = self._client.get("/api/leaderboard", params={"limit": limit})
        response.raise_for_status()
        return response.json()

    def get_admin_stats(self) -> dict:
        response = self._client.get("/api/admin/stats")
        response.raise_for_status()
        return response.json()

    def update_property(
        self,
        property_id: int,
        is_active: Optional[bool] = None,
        description: Optional[str] = None,
    ) -> Property:
        payload = {}
        if is_active is not None:
            payload["is_active"] = is_active
        if description is not None:
            payload["description"] = description
        response = self._client.put(f"/api/admin/properties/{property_id}", json=payload)
        response.raise_for_status()
        return Property.from_json(response.json())

    def export_labels(self, property_id: Optional[int] = None, min_labels: int = 1, format: str = "json"):
        """Export labels. JSON returns the parsed document, CSV the raw text."""
        params = {"min_labels": min_labels, "format": format}
        if property_id is not None:
            params["property_id"] = property_id
        response = self._client.get("/api/admin/export", params=params)
        response.raise_for_status()
        if format == "csv":
            return response.text
        return response.json()

    def close(self) -> None:
        """Close the HTTP client."""
        if self._owns_client:
            self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
