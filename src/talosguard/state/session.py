#!/usr/bin/env python3
"""
TALOSGUARD SESSION STORE
------------------------
Read-modify-write access to the small JSON document that links otherwise
independent hook invocations: the last command seen (loop detection) and
the apps rendered or diffed during the session.

The file is shared and unlocked. Concurrent invocations may lose each
other's updates; the cost is a weaker loop guard or a repeated diff
prompt, so neither load nor save is ever allowed to fail the caller.
"""

import os
import json
import logging
import tempfile
from pathlib import Path
from typing import Union

from talosguard.core.models import SessionState

logger = logging.getLogger("talosguard.session")

LOOP_THRESHOLD = 2


class SessionStore:
    """Persistence boundary for SessionState."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> SessionState:
        """Returns the stored state, or a zero-valued default on any failure."""
        try:
            raw = self.path.read_text(encoding='utf-8')
        except FileNotFoundError:
            return SessionState()
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Unreadable session state {self.path}: {e}")
            return SessionState()

        try:
            return SessionState.from_dict(json.loads(raw))
        except json.JSONDecodeError as e:
            logger.warning(f"Corrupt session state {self.path}: {e}")
            return SessionState()

    def save(self, state: SessionState) -> bool:
        """
        Best-effort atomic write. Returns False instead of raising so a
        lost update never changes a decision that was already made.
        """
        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
            )
            with os.fdopen(fd, "w", encoding='utf-8') as f:
                json.dump(state.to_dict(), f, indent=2)
            os.replace(tmp_name, self.path)
            return True
        except OSError as e:
            logger.warning(f"Could not save session state to {self.path}: {e}")
            if tmp_name and os.path.exists(tmp_name):
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
            return False

    def reset(self) -> bool:
        return self.save(SessionState())


def record_command(state: SessionState, command: str) -> bool:
    """
    Loop detection. Returns True when ``command`` repeats the previous one
    often enough to count as a loop; the counter is reset in that case.

    Comparison is on the exact string: reordered flags or extra spaces
    are a different command.
    """
    if command == state.last_command:
        state.loop_count += 1
        if state.loop_count >= LOOP_THRESHOLD:
            state.loop_count = 0
            return True
        return False

    state.last_command = command
    state.loop_count = 0
    return False
