from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from .conversation import ConversationSession, ParticipantKey
from .prompts import PRESET_MODEL_ROLES, normalize_role_label

CHAT_STATE_VERSION = 1

logger = logging.getLogger("multichat.storage")


class ChatStateStore:
    """
    JSON file holding every persisted session, the active id and the role library.

    Writes go to a temporary file first and are swapped in atomically.
    """

    def __init__(self, root: Path) -> None:
        self.path = root / "chat_state.json"
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except json.JSONDecodeError:
            logger.warning("Chat state at %s is corrupt; starting fresh.", self.path)
            return {}
        if not isinstance(data, dict) or data.get("version") != CHAT_STATE_VERSION:
            logger.warning("Ignoring chat state with unknown version at %s", self.path)
            return {}
        return data

    def save(self, payload: Dict[str, Any]) -> None:
        data = dict(payload)
        data["version"] = CHAT_STATE_VERSION
        tmp_path = self.path.with_suffix(".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)
            handle.write("\n")
        os.replace(tmp_path, self.path)


class SessionStore:
    """
    Named conversation sessions with exactly one active at a time.

    Sessions without any non-empty message are kept in memory but never written.
    """

    def __init__(self, store: Optional[ChatStateStore] = None) -> None:
        self.store = store
        self._sessions: Dict[str, ConversationSession] = {}
        self._active_id = ""
        self.role_library: List[str] = list(PRESET_MODEL_ROLES)
        self.new_session()

    @property
    def active(self) -> ConversationSession:
        return self._sessions[self._active_id]

    @property
    def active_id(self) -> str:
        return self._active_id

    def sessions(self) -> List[ConversationSession]:
        return sorted(self._sessions.values(), key=lambda session: session.updated_at, reverse=True)

    def new_session(self) -> ConversationSession:
        # Reuse an untouched session instead of piling up blank ones.
        if self._active_id and not self.active.has_content() and not self.active.participants:
            return self.active
        session = ConversationSession()
        self._sessions[session.id] = session
        self._active_id = session.id
        return session

    def switch(self, session_id: str) -> ConversationSession:
        if session_id not in self._sessions:
            raise KeyError(session_id)
        self._active_id = session_id
        return self.active

    def delete(self, session_id: str) -> None:
        if session_id not in self._sessions:
            raise KeyError(session_id)
        del self._sessions[session_id]
        if session_id == self._active_id:
            remaining = self.sessions()
            if remaining:
                self._active_id = remaining[0].id
            else:
                self._active_id = ""
                self.new_session()

    def remember_role(self, role: str) -> str:
        label = normalize_role_label(role)
        if label.lower() not in {entry.lower() for entry in self.role_library}:
            self.role_library.append(label)
        session_roles = self.active.role_library
        if label not in PRESET_MODEL_ROLES and label not in session_roles:
            self.active.role_library = session_roles + [label]
        return label

    def drop_host(self, host_id: str) -> Dict[str, List[ParticipantKey]]:
        """Remove every participant bound to ``host_id`` from every session."""
        removed: Dict[str, List[ParticipantKey]] = {}
        for session in self._sessions.values():
            doomed = session.discard(key for key in session.keys() if key.host_id == host_id)
            if doomed:
                removed[session.id] = doomed
        return removed

    def snapshot(self) -> Dict[str, Any]:
        return {
            "sessions": [
                session.to_dict() for session in self.sessions() if session.has_content()
            ],
            "active_session_id": self._active_id,
            "role_library": list(self.role_library),
        }

    def restore(self, data: Dict[str, Any]) -> None:
        sessions: Dict[str, ConversationSession] = {}
        for item in data.get("sessions") or []:
            if not isinstance(item, dict):
                continue
            session = ConversationSession.from_dict(item)
            if session.has_content():
                sessions[session.id] = session
        library = [str(role) for role in data.get("role_library") or []]
        self.role_library = list(dict.fromkeys(list(PRESET_MODEL_ROLES) + library))
        if not sessions:
            return
        self._sessions = sessions
        active_id = data.get("active_session_id")
        self._active_id = active_id if active_id in sessions else self.sessions()[0].id

    def load(self) -> None:
        if self.store is None:
            return
        self.restore(self.store.load())
        logger.info("Loaded %d sessions", len(self._sessions))

    def save(self) -> None:
        if self.store is None:
            return
        self.store.save(self.snapshot())

