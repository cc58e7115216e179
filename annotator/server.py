#!/usr/bin/env python3
"""
Property Alignment Labeler MCP Server

Provides tools for labeling how sentences express ontology properties via
chat interfaces. Uses the FastMCP framework for MCP protocol implementation.
"""

import json
import logging
import os
from pathlib import Path
from typing import Optional

import httpx
from mcp.server.fastmcp import FastMCP

from .api_client import APIConfig, LabelerApiClient
from .buffer import BATCH_SIZE
from .labels import LabelKind, PickMode
from .session import SessionManager
from .traversal import TraversalMode
from .workflow import AnnotationSession
from . import formatting as fmt

logger = logging.getLogger(__name__)


# Configuration from environment
API_BASE_URL = os.environ.get("LABELER_API_URL", "http://127.0.0.1:8000")
API_EMAIL = os.environ.get("LABELER_EMAIL", "")
API_PASSWORD = os.environ.get("LABELER_PASSWORD", "")
STATE_FILE = Path(os.environ.get("LABELER_STATE_FILE", "labeler_state.json"))
FETCH_BATCH_SIZE = int(os.environ.get("LABELER_BATCH_SIZE", str(BATCH_SIZE)))
API_TIMEOUT = float(os.environ.get("LABELER_TIMEOUT", "30"))
MIN_PASSWORD_LENGTH = 6


# Initialize MCP server
mcp = FastMCP(
    name="property-alignment-labeler",
    instructions="""
    Property Alignment Labeler - Label how well sentences express ontology properties.

    Use these tools to:
    1. Sign in (sign_in, sign_up) and pick a property (list_properties, select_property)
    2. Walk sentences (show_sentence, next_sentence, next_unlabeled, set_mode)
    3. Mark subject/object spans (arm_span, click_token, clear_span)
    4. Choose a label (set_label_kind) and save it (save_label)
    5. Review and edit past labels (my_labels, edit_label)

    Typical workflow:
    1. Call select_property to open the first property you have not finished
    2. Read the sentence and decide whether it expresses p(D, R)
    3. Arm the subject span, click its first and last token, same for the object
    4. Call set_label_kind with pdr, pd, pr, p or n
    5. Call save_label; the next sentence is shown
    """
)


# Shared state
_api_client: Optional[LabelerApiClient] = None
_session_manager: Optional[SessionManager] = None
_workflow: Optional[AnnotationSession] = None


def get_api_client() -> LabelerApiClient:
    """Get or create the API client."""
    global _api_client
    if _api_client is None:
        config = APIConfig(
            base_url=API_BASE_URL,
            email=API_EMAIL,
            password=API_PASSWORD,
            timeout=API_TIMEOUT,
        )
        _api_client = LabelerApiClient(config)
    return _api_client


def get_session() -> SessionManager:
    """Get or create the session manager."""
    global _session_manager
    if _session_manager is None:
        _session_manager = SessionManager(STATE_FILE)
    return _session_manager


def get_workflow() -> AnnotationSession:
    """Get or create the annotation session, subscribed to auth changes."""
    global _workflow
    if _workflow is None:
        client = get_api_client()
        _workflow = AnnotationSession(client, get_session().state, batch_size=FETCH_BATCH_SIZE)
        client.on_auth_change(_workflow.handle_auth_change)
    return _workflow


def _auth_error() -> Optional[dict]:
    """Sign in with configured credentials if needed; an error dict if that fails."""
    try:
        get_api_client().ensure_auth()
    except httpx.HTTPError as e:
        logger.warning("Authentication failed: %s", e)
        return {"error": "Not signed in. Use sign_in or sign_up first."}
    return None


def _http_error(action: str, e: httpx.HTTPError) -> dict:
    if isinstance(e, httpx.HTTPStatusError):
        try:
            detail = e.response.json().get("detail", e.response.text)
        except ValueError:
            detail = e.response.text
        message = f"Could not {action}: {detail}"
    else:
        message = f"Could not {action}: {e}"
    logger.error(message)
    return {"error": message, "display": fmt.format_error(message)}


def _sentence_view() -> dict:
    """Current sentence, draft and progress."""
    workflow = get_workflow()
    if workflow.error:
        return {"error": workflow.error, "display": fmt.format_error(workflow.error)}

    sentence = workflow.current_sentence()
    draft = workflow.draft
    if sentence is not None and (draft is None or draft.sentence_id != sentence.id):
        draft = workflow.start_draft()
    progress = workflow.progress()

    prop = None
    if workflow.property_id is not None:
        try:
            prop = get_api_client().get_property(workflow.property_id)
        except httpx.HTTPError as e:
            logger.warning("Could not load property %s: %s", workflow.property_id, e)

    result = {"progress": progress, "sentence": None}
    if sentence is not None:
        result["sentence"] = {
            "id": sentence.id,
            "text": sentence.text,
            "label_count": sentence.label_count,
            "tokens": [{"index": i, "text": t} for i, t in enumerate(draft.tokens)],
        }
        result["draft"] = _draft_state(draft)
    result["display"] = fmt.format_sentence_display(sentence, draft, progress, prop)
    return result


def _draft_state(draft) -> dict:
    return {
        "sentence_id": draft.sentence_id,
        "label": draft.kind.value if draft.kind else None,
        "subject": [draft.subject.start, draft.subject.end] if draft.subject else None,
        "object": [draft.object.start, draft.object.end] if draft.object else None,
        "picking": draft.mode.value,
        "existing": draft.existing,
    }


def _require_draft():
    workflow = get_workflow()
    if workflow.draft is None:
        workflow.start_draft()
    return workflow.draft


# =============================================================================
# MCP Tools - Authentication
# =============================================================================

@mcp.tool()
def sign_in(email: str, password: str) -> dict:
    """
    Sign in with email and password.

    Returns:
        The signed-in user, or error if the credentials are wrong.
    """
    try:
        user = get_api_client().sign_in(email.strip(), password)
    except httpx.HTTPError as e:
        return _http_error("sign in", e)
    return {"status": "signed_in", "user_id": user.id, "email": user.email, "is_admin": user.is_admin}


@mcp.tool()
def sign_up(email: str, password: str, display_name: Optional[str] = None) -> dict:
    """
    Create an account and sign in.

    Args:
        email: Email address
        password: Password (min 6 characters)
        display_name: Optional display name
    """
    if len(password) < MIN_PASSWORD_LENGTH:
        return {"error": f"Password must be at least {MIN_PASSWORD_LENGTH} characters"}
    try:
        user = get_api_client().sign_up(email.strip(), password, display_name)
    except httpx.HTTPError as e:
        return _http_error("sign up", e)
    return {"status": "signed_up", "user_id": user.id, "email": user.email, "is_admin": user.is_admin}


@mcp.tool()
def sign_out() -> dict:
    """Sign out and drop the loaded sentences."""
    try:
        get_api_client().sign_out()
    except httpx.HTTPError as e:
        return _http_error("sign out", e)
    return {"status": "signed_out"}


@mcp.tool()
def whoami() -> dict:
    """Get the signed-in user."""
    try:
        user = get_api_client().current_user()
    except httpx.HTTPError as e:
        return _http_error("load user", e)
    if user is None:
        return {"signed_in": False}
    return {
        "signed_in": True,
        "user_id": user.id,
        "email": user.email,
        "display_name": user.metadata.get("display_name"),
        "is_admin": user.is_admin,
    }


@mcp.tool()
def change_password(new_password: str, confirm_password: str) -> dict:
    """
    Change the signed-in user's password.

    Args:
        new_password: New password (min 6 characters)
        confirm_password: Must match new_password
    """
    if new_password != confirm_password:
        return {"error": "Passwords do not match"}
    if len(new_password) < MIN_PASSWORD_LENGTH:
        return {"error": f"Password must be at least {MIN_PASSWORD_LENGTH} characters"}
    error = _auth_error()
    if error:
        return error
    try:
        get_api_client().update_password(new_password)
    except httpx.HTTPError as e:
        return _http_error("change password", e)
    return {"status": "password_updated"}


# =============================================================================
# MCP Tools - Properties and traversal
# =============================================================================

@mcp.tool()
def list_properties() -> dict:
    """
    List properties with your labeling progress on each.

    Returns:
        Properties with id, name, domain, range, sentence_count and labeled.
    """
    error = _auth_error()
    if error:
        return error
    try:
        properties = get_api_client().list_properties()
    except httpx.HTTPError as e:
        return _http_error("list properties", e)

    current = get_workflow().property_id
    return {
        "properties": [
            {
                "id": p.id,
                "name": p.name,
                "domain": p.domain,
                "range": p.range,
                "sentence_count": p.sentence_count,
                "labeled": p.labeled,
                "complete": p.is_complete,
            }
            for p in properties
        ],
        "display": fmt.format_property_list(properties, current),
    }


@mcp.tool()
def select_property(property_id: Optional[int] = None, mode: Optional[str] = None) -> dict:
    """
    Open a property for labeling.

    Without property_id, reopens the last property if it is still listed,
    otherwise the first property you have not finished.

    Args:
        property_id: Property to open
        mode: Traversal mode (unlabeled, least_labeled, all)
    """
    error = _auth_error()
    if error:
        return error
    if mode is not None and mode not in {m.value for m in TraversalMode}:
        return {"error": f"Mode must be one of {', '.join(m.value for m in TraversalMode)}"}

    if property_id is None:
        try:
            properties = get_api_client().list_properties()
        except httpx.HTTPError as e:
            return _http_error("list properties", e)
        if not properties:
            return {"error": "No properties available"}
        remembered = get_session().state.property_id
        ids = [p.id for p in properties]
        if remembered in ids:
            property_id = remembered
        else:
            incomplete = [p for p in properties if not p.is_complete]
            property_id = (incomplete or properties)[0].id

    session = get_session()
    workflow = get_workflow()
    workflow.load(property_id, mode)
    session.set_property(property_id)
    session.set_mode(workflow.mode)
    return _sentence_view()


@mcp.tool()
def next_property() -> dict:
    """Open the property after the current one in the list (wraps around)."""
    error = _auth_error()
    if error:
        return error
    try:
        properties = get_api_client().list_properties()
    except httpx.HTTPError as e:
        return _http_error("list properties", e)
    if not properties:
        return {"error": "No properties available"}

    ids = [p.id for p in properties]
    current = get_workflow().property_id
    position = ids.index(current) if current in ids else -1
    return select_property(ids[(position + 1) % len(ids)])


@mcp.tool()
def set_mode(mode: str) -> dict:
    """
    Change the traversal mode and restart at the first sentence.

    Args:
        mode: unlabeled (label_count = 0, by id), least_labeled (by label_count), or all (by id)
    """
    if mode not in {m.value for m in TraversalMode}:
        return {"error": f"Mode must be one of {', '.join(m.value for m in TraversalMode)}"}
    workflow = get_workflow()
    get_session().set_mode(TraversalMode(mode))
    if workflow.property_id is None:
        workflow.mode = TraversalMode(mode)
        return {"status": "mode_set", "mode": mode, "note": "Select a property to start"}
    error = _auth_error()
    if error:
        return error
    workflow.set_mode(TraversalMode(mode))
    return _sentence_view()


@mcp.tool()
def show_sentence() -> dict:
    """Show the current sentence with indexed tokens and the label being built."""
    if get_workflow().index is None:
        return {"error": "No property loaded. Use select_property first."}
    return _sentence_view()


@mcp.tool()
def next_sentence() -> dict:
    """Move to the next sentence (wraps to the first)."""
    workflow = get_workflow()
    if workflow.index is None:
        return {"error": "No property loaded. Use select_property first."}
    workflow.next()
    return _sentence_view()


@mcp.tool()
def prev_sentence() -> dict:
    """Move to the previous sentence (wraps to the last)."""
    workflow = get_workflow()
    if workflow.index is None:
        return {"error": "No property loaded. Use select_property first."}
    workflow.prev()
    return _sentence_view()


@mcp.tool()
def go_to_sentence(position: int) -> dict:
    """
    Jump to a position in the traversal.

    Args:
        position: 1-based position, as shown in "Sentence N of M"
    """
    workflow = get_workflow()
    if workflow.index is None:
        return {"error": "No property loaded. Use select_property first."}
    if not workflow.go_to(position - 1):
        return {"error": f"Position must be between 1 and {workflow.total}"}
    return _sentence_view()


@mcp.tool()
def next_unlabeled() -> dict:
    """Skip forward to the next sentence you have not labeled (wraps around)."""
    workflow = get_workflow()
    if workflow.index is None:
        return {"error": "No property loaded. Use select_property first."}
    if workflow.next_unlabeled().exhausted:
        return {"status": "all_labeled", "display": "🎉 No other unlabeled sentences."}
    return _sentence_view()


@mcp.tool()
def prev_unlabeled() -> dict:
    """Skip backward to the previous sentence you have not labeled (wraps around)."""
    workflow = get_workflow()
    if workflow.index is None:
        return {"error": "No property loaded. Use select_property first."}
    if workflow.prev_unlabeled().exhausted:
        return {"status": "all_labeled", "display": "🎉 No other unlabeled sentences."}
    return _sentence_view()


# =============================================================================
# MCP Tools - Building a label
# =============================================================================

@mcp.tool()
def arm_span(role: str) -> dict:
    """
    Start picking the subject or object span.

    The next click_token sets a one-token span, the click after that
    extends it to the clicked token. Arming the same role again cancels.

    Args:
        role: "subject" or "object"
    """
    if role not in (PickMode.SUBJECT.value, PickMode.OBJECT.value):
        return {"error": "Role must be 'subject' or 'object'"}
    draft = _require_draft()
    if draft is None:
        return {"error": "No sentence to label. Use select_property first."}
    draft.arm(PickMode(role))
    return {"draft": _draft_state(draft)}


@mcp.tool()
def click_token(index: int) -> dict:
    """
    Click a token while a span is armed.

    Args:
        index: Token index (shown as subscript in the display)
    """
    draft = _require_draft()
    if draft is None:
        return {"error": "No sentence to label. Use select_property first."}
    if draft.mode == PickMode.IDLE:
        return {"error": "No span armed. Use arm_span first."}
    try:
        draft.click(index)
    except IndexError as e:
        return {"error": str(e)}
    return {
        "draft": _draft_state(draft),
        "display": fmt.format_indexed_tokens(draft.tokens, draft.subject, draft.object),
    }


@mcp.tool()
def clear_span(role: str) -> dict:
    """
    Clear the subject or object span.

    Args:
        role: "subject" or "object"
    """
    draft = _require_draft()
    if draft is None:
        return {"error": "No sentence to label. Use select_property first."}
    if role == PickMode.SUBJECT.value:
        draft.clear_subject()
    elif role == PickMode.OBJECT.value:
        draft.clear_object()
    else:
        return {"error": "Role must be 'subject' or 'object'"}
    return {"draft": _draft_state(draft)}


@mcp.tool()
def set_label_kind(kind: str) -> dict:
    """
    Choose the label. Choosing the current label again deselects it.

    Args:
        kind: pdr, pd, pr, p or n (see labeling_guide)
    """
    if kind not in {k.value for k in LabelKind}:
        return {"error": f"Label must be one of {', '.join(k.value for k in LabelKind)}"}
    draft = _require_draft()
    if draft is None:
        return {"error": "No sentence to label. Use select_property first."}
    draft.select_kind(LabelKind(kind))
    return {"draft": _draft_state(draft)}


@mcp.tool()
def save_label() -> dict:
    """
    Save the label being built.

    Validates the spans against the chosen label, upserts it, updates the
    sentence's label count, and moves to the next sentence.
    """
    error = _auth_error()
    if error:
        return error
    workflow = get_workflow()
    result = workflow.save()
    display = fmt.format_save_result(result, workflow.progress())
    if not result.ok:
        return {"error": result.issue.message if result.issue else result.error, "display": display}

    get_session().mark_saved()
    view = _sentence_view()
    view["saved"] = {
        "sentence_id": result.label.sentence_id,
        "label": result.label.kind.value,
        "created": result.created,
        "label_count": result.counter.label_count if result.counter else None,
        "counter_method": result.counter.method if result.counter else None,
    }
    view["display"] = display + "\n\n" + view["display"]
    return view


@mcp.tool()
def remove_label(sentence_id: Optional[int] = None) -> dict:
    """
    Delete your label from a sentence.

    Args:
        sentence_id: Sentence to clear (default: the current sentence)
    """
    error = _auth_error()
    if error:
        return error
    result = get_workflow().remove_label(sentence_id)
    if not result.ok:
        return {"error": result.issue.message if result.issue else result.error}
    return {
        "status": "removed",
        "label_count": result.counter.label_count if result.counter else None,
    }


# =============================================================================
# MCP Tools - History
# =============================================================================

@mcp.tool()
def my_labels(
    property_id: Optional[int] = None,
    kind: Optional[str] = None,
    search: Optional[str] = None,
    order: str = "newest",
) -> dict:
    """
    List your saved labels.

    Args:
        property_id: Only labels on this property
        kind: Only this label (pdr, pd, pr, p, n)
        search: Case-insensitive text the sentence must contain
        order: newest or oldest
    """
    if kind is not None and kind not in {k.value for k in LabelKind}:
        return {"error": f"Label must be one of {', '.join(k.value for k in LabelKind)}"}
    if order not in ("newest", "oldest"):
        return {"error": "Order must be 'newest' or 'oldest'"}
    error = _auth_error()
    if error:
        return error
    try:
        labels = get_api_client().list_my_labels(property_id, kind, search, order)
    except httpx.HTTPError as e:
        return _http_error("load labels", e)
    get_session().set_view("history")
    return {
        "count": len(labels),
        "labels": [
            {
                "sentence_id": l.sentence_id,
                "property_id": l.property_id,
                "label": l.kind.value,
                "sentence_text": l.sentence_text,
                "created_at": l.created_at,
            }
            for l in labels
        ],
        "display": fmt.format_label_history(labels),
    }


@mcp.tool()
def edit_label(sentence_id: int) -> dict:
    """
    Open one of your saved labels for editing.

    Use arm_span/click_token/set_label_kind to change it, then save_label.

    Args:
        sentence_id: Sentence whose label to edit
    """
    error = _auth_error()
    if error:
        return error
    try:
        label = get_api_client().fetch_label(sentence_id)
    except httpx.HTTPError as e:
        return _http_error("load label", e)
    if label is None:
        return {"error": f"You have no label on sentence {sentence_id}"}
    draft = get_workflow().edit_label(label)
    return {
        "draft": _draft_state(draft),
        "sentence_text": label.sentence_text,
        "display": fmt.format_indexed_tokens(draft.tokens, draft.subject, draft.object),
    }


# =============================================================================
# MCP Tools - Profile and leaderboard
# =============================================================================

@mcp.tool()
def profile() -> dict:
    """Get your profile and overall progress."""
    error = _auth_error()
    if error:
        return error
    try:
        data = get_api_client().get_profile()
    except httpx.HTTPError as e:
        return _http_error("load profile", e)
    get_session().set_view("profile")
    data["display"] = fmt.format_profile(data)
    return data


@mcp.tool()
def update_display_name(display_name: str) -> dict:
    """
    Change your display name.

    Args:
        display_name: New name shown on the leaderboard
    """
    if not display_name.strip():
        return {"error": "Display name cannot be empty"}
    error = _auth_error()
    if error:
        return error
    try:
        return get_api_client().update_profile(display_name.strip())
    except httpx.HTTPError as e:
        return _http_error("update profile", e)


@mcp.tool()
def leaderboard(limit: int = 10) -> dict:
    """Get the annotators with the most labels."""
    error = _auth_error()
    if error:
        return error
    try:
        data = get_api_client().get_leaderboard(limit)
    except httpx.HTTPError as e:
        return _http_error("load leaderboard", e)
    data["display"] = fmt.format_leaderboard(data)
    return data


# =============================================================================
# MCP Tools - Admin
# =============================================================================

@mcp.tool()
def admin_stats() -> dict:
    """Get coverage, redundancy and top contributors (admin only)."""
    error = _auth_error()
    if error:
        return error
    try:
        stats = get_api_client().get_admin_stats()
    except httpx.HTTPError as e:
        return _http_error("load statistics", e)
    get_session().set_view("admin")
    stats["display"] = fmt.format_admin_stats(stats)
    return stats


@mcp.tool()
def set_property_visibility(property_id: int, is_active: bool) -> dict:
    """
    Show or hide a property for annotators (admin only).

    Args:
        property_id: Property to change
        is_active: True to show, False to hide
    """
    error = _auth_error()
    if error:
        return error
    try:
        prop = get_api_client().update_property(property_id, is_active=is_active)
    except httpx.HTTPError as e:
        return _http_error("update property", e)
    return {"id": prop.id, "name": prop.name, "is_active": prop.is_active}


@mcp.tool()
def set_property_description(property_id: int, description: str) -> dict:
    """
    Edit a property's description (admin only).

    Args:
        property_id: Property to change
        description: New description
    """
    error = _auth_error()
    if error:
        return error
    try:
        prop = get_api_client().update_property(property_id, description=description)
    except httpx.HTTPError as e:
        return _http_error("update property", e)
    return {"id": prop.id, "name": prop.name, "description": prop.description}


@mcp.tool()
def export_labels(
    output_path: str,
    property_id: Optional[int] = None,
    min_labels: int = 1,
    format: str = "json",
) -> dict:
    """
    Export labels to a file (admin only).

    Args:
        output_path: File to write
        property_id: Only this property (default: all)
        min_labels: Only sentences with at least this many labels
        format: json or csv
    """
    if format not in ("json", "csv"):
        return {"error": "Format must be 'json' or 'csv'"}
    error = _auth_error()
    if error:
        return error
    try:
        data = get_api_client().export_labels(property_id, min_labels, format)
    except httpx.HTTPError as e:
        return _http_error("export labels", e)

    path = Path(output_path)
    with open(path, "w") as f:
        if format == "csv":
            f.write(data)
        else:
            json.dump(data, f, indent=2)

    count = data["count"] if format == "json" else max(0, len(data.splitlines()) - 1)
    return {"status": "exported", "path": str(path), "format": format, "count": count}


# =============================================================================
# MCP Tools - Preferences
# =============================================================================

@mcp.tool()
def set_theme(theme: Optional[str] = None) -> dict:
    """
    Set the display theme.

    Args:
        theme: light or dark (default: toggle)
    """
    session = get_session()
    try:
        if theme is None:
            session.toggle_theme()
        else:
            session.set_theme(theme)
    except ValueError as e:
        return {"error": str(e)}
    return {"theme": session.state.theme}


@mcp.tool()
def set_view(view: str) -> dict:
    """
    Switch the active view.

    Args:
        view: labeling, history, profile or admin
    """
    try:
        get_session().set_view(view)
    except ValueError as e:
        return {"error": str(e)}
    return {"active_view": view}


@mcp.tool()
def get_session_stats() -> dict:
    """Get preferences and labels saved in this session."""
    stats = get_session().get_session_summary()
    stats["display"] = fmt.format_session_stats(stats)
    return stats


@mcp.tool()
def labeling_guide() -> dict:
    """Explain the five labels and which spans each needs."""
    return {"display": fmt.format_label_guide()}


# =============================================================================
# Entry Point
# =============================================================================

def main():
    """Run the MCP server."""
    # stdout carries the MCP protocol
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    mcp.run()


if __name__ == "__main__":
    main()
