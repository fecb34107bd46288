"""
Per-session event log.

Collects what happened during one meal session (start, state changes,
commands, saves) and emits a one-line summary through logging when the
session ends. The last finished sessions stay available for inspection.
"""

import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

logger = logging.getLogger(__name__)

MAX_FINISHED = 100


@dataclass
class SessionEvent:
    at: datetime
    type: str
    data: dict = field(default_factory=dict)


@dataclass
class SessionLog:
    session_id: str
    chat_id: str
    started_at: datetime
    status: str = "active"
    ended_at: Optional[datetime] = None
    original_description: str = ""
    items_logged: int = 0
    events: list = field(default_factory=list)


class SessionEventLog:

    def __init__(self, max_finished=MAX_FINISHED):
        self._active = {}
        self.finished = deque(maxlen=max_finished)

    def active(self, chat_id):
        return self._active.get(chat_id)

    def start(self, chat_id, now):
        log = SessionLog(
            session_id=f"{chat_id}_{now:%Y%m%d%H%M%S}_{uuid.uuid4().hex[:8]}",
            chat_id=chat_id,
            started_at=now,
        )
        self._active[chat_id] = log
        log.events.append(SessionEvent(now, "session_start"))
        logger.debug("Started session log %s", log.session_id)
        return log

    def event(self, chat_id, event_type, now, **data):
        log = self._active.get(chat_id)
        if log is None:
            # preferences and photo flows open a session without /start
            log = self.start(chat_id, now)
        log.events.append(SessionEvent(now, event_type, data))

    def state_change(self, chat_id, before, after, now):
        if before != after:
            self.event(chat_id, "state_change", now, from_state=before.value, to_state=after.value)

    def end(self, chat_id, status, now, items_logged=0, original_description=""):
        log = self._active.pop(chat_id, None)
        if log is None:
            logger.debug("No session log open for chat %s", chat_id)
            return None
        log.status = status
        log.ended_at = now
        log.items_logged = items_logged
        log.original_description = original_description or ""
        log.events.append(SessionEvent(now, "session_end", {"status": status}))
        self.finished.append(log)
        seconds = (now - log.started_at).total_seconds()
        logger.info("Session %s %s after %.0fs: %d event(s), %d item(s) logged",
                    log.session_id, status, seconds, len(log.events), items_logged)
        return log
