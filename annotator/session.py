"""
Persisted preferences and session counters.

Holds the process-wide UI state (theme, active view, last property and
traversal mode) so it survives restarts. Loaded once from a JSON state
file, or defaulted, and passed to whatever needs it.
"""

import json
import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from pathlib import Path
from typing import Optional

from .traversal import TraversalMode

logger = logging.getLogger(__name__)

THEMES = ("light", "dark")
VIEWS = ("labeling", "history", "profile", "admin")


@dataclass
class Preferences:
    """User-facing state that outlives a single annotation session."""
    theme: str = "light"
    active_view: str = "labeling"
    property_id: Optional[int] = None
    mode: str = TraversalMode.UNLABELED.value

    # Session stats
    labels_saved: int = 0
    session_started: Optional[str] = None

    @property
    def traversal_mode(self) -> TraversalMode:
        return TraversalMode(self.mode)


class SessionManager:
    """
    Manages persistent preferences.

    State is saved to a JSON file so it survives server restarts.
    """

    def __init__(self, state_file: Optional[Path] = None):
        self.state_file = state_file or Path("labeler_state.json")
        self._state: Optional[Preferences] = None

    @property
    def state(self) -> Preferences:
        """Get current state, loading from disk if needed."""
        if self._state is None:
            self._state = self._load_state()
        return self._state

    def _load_state(self) -> Preferences:
        """Load state from disk, or create new."""
        if self.state_file.exists():
            try:
                with open(self.state_file) as f:
                    data = json.load(f)
                known = {k: v for k, v in data.items() if k in Preferences.__dataclass_fields__}
                state = Preferences(**known)
                # Reject values written by an older version
                TraversalMode(state.mode)
                if state.theme not in THEMES or state.active_view not in VIEWS:
                    raise ValueError("unknown theme or view")
                return state
            except (OSError, ValueError, TypeError) as e:
                logger.warning("Ignoring unreadable state file %s: %s", self.state_file, e)
        return Preferences(session_started=datetime.now().isoformat())

    def _save_state(self) -> None:
        """Save state to disk."""
        if self._state is None:
            return
        with open(self.state_file, "w") as f:
            json.dump(asdict(self._state), f, indent=2)

    def set_theme(self, theme: str) -> None:
        if theme not in THEMES:
            raise ValueError(f"Theme must be one of {', '.join(THEMES)}")
        self.state.theme = theme
        self._save_state()

    def toggle_theme(self) -> str:
        self.set_theme("dark" if self.state.theme == "light" else "light")
        return self.state.theme

    def set_view(self, view: str) -> None:
        if view not in VIEWS:
            raise ValueError(f"View must be one of {', '.join(VIEWS)}")
        self.state.active_view = view
        self._save_state()

    def set_property(self, property_id: Optional[int]) -> None:
        self.state.property_id = property_id
        self._save_state()

    def set_mode(self, mode: TraversalMode) -> None:
        self.state.mode = TraversalMode(mode).value
        self._save_state()

    def mark_saved(self) -> None:
        self.state.labels_saved += 1
        self._save_state()

    def get_session_summary(self) -> dict:
        return {
            "theme": self.state.theme,
            "active_view": self.state.active_view,
            "property_id": self.state.property_id,
            "mode": self.state.mode,
            "labels_saved": self.state.labels_saved,
            "session_started": self.state.session_started,
        }

    def reset_session(self) -> None:
        """Reset the session state entirely."""
        self._state = Preferences(session_started=datetime.now().isoformat())
        self._save_state()
