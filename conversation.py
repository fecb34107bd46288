"""
Conversation state machine.

Owns the per-user sessions and routes every inbound message: expiry check,
slash commands, then the processor registered for the session's state.
All entry points return the outbound messages for the host to deliver.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta

import bot_messages as msg
from meal_errors import SessionExpired
from meal_models import ConversationState, OutboundMessage, Session, utcnow
from session_log import SessionEventLog
from state_processors import TurnContext, build_processors

logger = logging.getLogger(__name__)

State = ConversationState

DEFAULT_TIMEOUT = timedelta(minutes=10)

COMMANDS = {
    "/start": "start",
    "/iniciar": "start",
    "/cancel": "cancel",
    "/cancelar": "cancel",
    "/save": "save",
    "/guardar": "save",
    "/search": "search",
    "/buscar": "search",
    "/preferences": "preferences",
    "/preferencias": "preferences",
    "/continue": "continue",
    "/continuar": "continue",
    "/login": "login",
}

PHOTO_STATES = (State.IDLE, State.AWAITING_MEAL_DESCRIPTION)


def parse_command(text):
    """'/buscar pollo asado' -> ('search', 'pollo asado'); plain text -> (None, None)."""
    text = (text or "").strip()
    if not text.startswith("/"):
        return None, None
    head, _, rest = text.partition(" ")
    name = COMMANDS.get(head.split("@")[0].lower())
    if name is None:
        return None, None
    return name, rest.strip()


# ── Sessions ──────────────────────────────────────────────────────────────

class InMemorySessionStore:
    """One session per user, plus one lock per user to serialize their turns."""

    def __init__(self):
        self._sessions = {}
        self._locks = {}
        # coroutines holding or waiting on each lock
        self._lock_users = {}

    @asynccontextmanager
    async def turn(self, chat_id):
        """Hold the chat's lock; the lock is dropped once no session or waiter needs it."""
        lock = self._locks.setdefault(chat_id, asyncio.Lock())
        self._lock_users[chat_id] = self._lock_users.get(chat_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[chat_id] -= 1
            if not self._lock_users[chat_id]:
                del self._lock_users[chat_id]
                if chat_id not in self._sessions:
                    self._locks.pop(chat_id, None)

    def get(self, chat_id):
        return self._sessions.get(chat_id)

    def get_or_create(self, chat_id, now):
        session = self._sessions.get(chat_id)
        if session is None:
            session = Session(chat_id=chat_id, started_at=now, last_activity_at=now)
            self._sessions[chat_id] = session
        return session

    def set(self, session):
        self._sessions[session.chat_id] = session

    def remove(self, chat_id):
        return self._sessions.pop(chat_id, None)

    def items(self):
        return list(self._sessions.items())


class LoginAuthProvider:
    """Cronometer sessions obtained with /login, one per chat.

    Chats that never logged in use the shared `fallback` account, if any.
    """

    def __init__(self, client, fallback=None):
        self.client = client
        self.fallback = fallback
        self._sessions = {}

    async def __call__(self, chat_id):
        return self._sessions.get(chat_id, self.fallback)

    async def login(self, chat_id, email, password):
        auth = await self.client.login(email, password)
        if auth is not None:
            self._sessions[chat_id] = auth
            logger.info("Chat %s logged in as Cronometer user %s", chat_id, auth.user_id)
        return auth


# ── State machine ─────────────────────────────────────────────────────────

class MealConversation:

    def __init__(self, services, auth_provider, store=None, timeout=DEFAULT_TIMEOUT, clock=utcnow,
                 session_log=None):
        self.services = services
        self.auth_provider = auth_provider
        self.store = store or InMemorySessionStore()
        self.session_log = session_log or SessionEventLog()
        self.timeout = timeout
        self.clock = clock
        self.processors = build_processors(services)

    def _outbound(self, chat_id, replies):
        return [OutboundMessage(chat_id=chat_id, text=text, fmt=fmt) for text, fmt in replies]

    def _expire_if_stale(self, chat_id, now, replies):
        session = self.store.get(chat_id)
        if session is None:
            return None
        try:
            session.ensure_active(now, self.timeout)
        except SessionExpired as exc:
            logger.info("%s (state %s)", exc, session.state.value)
            self.store.remove(chat_id)
            self.session_log.end(chat_id, "expired", now, original_description=session.original_description)
            replies.append((msg.EXPIRED, None))
            return None
        return session

    # ── Host surface ──────────────────────────────────────────────────────

    async def handle_inbound_text(self, chat_id, text):
        chat_id = str(chat_id)
        async with self.store.turn(chat_id):
            now = self.clock()
            replies = []
            session = self._expire_if_stale(chat_id, now, replies)
            command, argument = parse_command(text)

            if command is not None:
                replies.extend(await self._run_command(command, argument, chat_id, session, now))
            elif session is None:
                # an expired session already got its notice; the text is not dispatched
                if not replies:
                    replies.append((msg.USE_START, None))
            elif session.state == State.IDLE:
                replies.append((msg.USE_START, None))
            else:
                replies.extend(await self._dispatch(session, text, now))
            return self._outbound(chat_id, replies)

    async def handle_inbound_image(self, chat_id, image_bytes):
        chat_id = str(chat_id)
        async with self.store.turn(chat_id):
            now = self.clock()
            replies = []
            session = self._expire_if_stale(chat_id, now, replies)
            if session is not None and session.state not in PHOTO_STATES:
                replies.append((msg.PHOTO_NOT_ALLOWED, None))
                return self._outbound(chat_id, replies)

            reader = self.services.image_reader
            try:
                if reader is None:
                    raise RuntimeError("no image reader configured")
                text = await reader.extract_text(image_bytes)
            except Exception:
                logger.exception("Reading image for chat %s failed", chat_id)
                replies.append((msg.OCR_ERROR, None))
                return self._outbound(chat_id, replies)

            if not text or not text.strip():
                replies.append((msg.NO_TEXT_DETECTED, None))
                return self._outbound(chat_id, replies)

            session = self.store.get_or_create(chat_id, now)
            before = session.state
            session.ocr_text = text.strip()
            session.state = State.AWAITING_OCR_CORRECTION
            session.touch(now)
            self.session_log.event(chat_id, "ocr", now, characters=len(session.ocr_text))
            self.session_log.state_change(chat_id, before, session.state, now)
            replies.append((msg.ocr_received(session.ocr_text), None))
            return self._outbound(chat_id, replies)

    async def sweep_expired_sessions(self):
        """Drop every session idle longer than the timeout and notify its user."""
        now = self.clock()
        out = []
        for chat_id, session in self.store.items():
            if not session.is_expired(now, self.timeout):
                continue
            async with self.store.turn(chat_id):
                current = self.store.get(chat_id)
                if current is None or not current.is_expired(now, self.timeout):
                    continue
                self.store.remove(chat_id)
            self.session_log.end(chat_id, "expired", now, original_description=current.original_description)
            logger.info("Swept expired session for chat %s", chat_id)
            out.append(OutboundMessage(chat_id=chat_id, text=msg.EXPIRED))
        return out

    # ── Dispatch ──────────────────────────────────────────────────────────

    async def _auth(self, chat_id):
        """(auth, None), or (None, reply) when the chat has no usable account."""
        try:
            auth = await self.auth_provider(chat_id)
        except Exception:
            logger.exception("Looking up the Cronometer account for chat %s failed", chat_id)
            return None, msg.AUTH_ERROR
        if auth is None:
            return None, msg.LOGIN_REQUIRED
        return auth, None

    async def process_turn(self, session, text, now=None):
        """Run the processor for the session's current state.

        Mutates `session` only; returns (replies, ended). Does not touch the store.
        """
        now = now or self.clock()
        auth, problem = await self._auth(session.chat_id)
        ctx = TurnContext(chat_id=session.chat_id, session=session, text=text or "", now=now, auth=auth)
        if problem:
            ctx.reply(problem)
            return ctx.replies, False

        processor = self.processors[session.state]
        await processor.process(ctx)
        if not ctx.replies:
            logger.warning("%s produced no reply", type(processor).__name__)
            ctx.reply(msg.PROCESSING_ERROR)
        return ctx.replies, ctx.ended

    async def _dispatch(self, session, text, now):
        before = session.state
        replies, ended = await self.process_turn(session, text, now)
        self._after_turn(session, before, ended, now)
        return replies

    def _after_turn(self, session, before, ended, now):
        chat_id = session.chat_id
        self.session_log.state_change(chat_id, before, session.state, now)
        if session.state == State.AWAITING_CLARIFICATION:
            self.session_log.event(chat_id, "clarification", now, questions=len(session.pending_clarifications))
        if ended:
            self.store.remove(chat_id)
            self.session_log.end(chat_id, "completed", now, items_logged=len(session.validated_items),
                                 original_description=session.original_description)
        else:
            session.touch(now)
            self.store.set(session)

    # ── Commands ──────────────────────────────────────────────────────────

    async def _run_command(self, command, argument, chat_id, session, now):
        active = session is not None and session.state != State.IDLE

        if command == "login":
            return await self._login(chat_id, argument)

        if command == "start":
            if active:
                return [(msg.ALREADY_ACTIVE, None)]
            session = self.store.get_or_create(chat_id, now)
            session.state = State.AWAITING_MEAL_DESCRIPTION
            session.started_at = now
            session.touch(now)
            self.session_log.start(chat_id, now)
            return [(msg.NEW_SESSION, None)]

        if command == "cancel":
            if not active:
                return [(msg.NO_ACTIVE_SESSION, None)]
            self.store.remove(chat_id)
            self.session_log.end(chat_id, "cancelled", now, original_description=session.original_description)
            logger.info("Chat %s cancelled its session", chat_id)
            return [(msg.CANCELLED, None)]

        if command == "save":
            if not active or session.state != State.AWAITING_CONFIRMATION or not session.validated_items:
                return [(msg.NOTHING_TO_SAVE, None)]
            return await self._save(session, now)

        if command == "search":
            return await self._search(chat_id, argument)

        if command == "preferences":
            if self.services.memory is None:
                return [(msg.MEMORY_UNAVAILABLE, None)]
            if active:
                return [(msg.ALREADY_ACTIVE, None)]
            session = self.store.get_or_create(chat_id, now)
            session.state = State.AWAITING_PREFERENCE_ACTION
            session.touch(now)
            self.session_log.event(chat_id, "preferences", now)
            return [(msg.PREFERENCES_MENU, None)]

        if command == "continue":
            if not active or session.state != State.AWAITING_OCR_CORRECTION:
                return [(msg.CONTINUE_ONLY_AFTER_PHOTO, None)]
            return await self._dispatch(session, "", now)

        return [(msg.USE_START, None)]

    async def _login(self, chat_id, argument):
        login = getattr(self.auth_provider, "login", None)
        if login is None:
            return [(msg.LOGIN_UNAVAILABLE, None)]
        parts = argument.split()
        email = next((p for p in parts if "@" in p), None)
        if len(parts) != 2 or email is None:
            return [(msg.LOGIN_USAGE, None)]
        password = parts[1] if parts[0] == email else parts[0]
        try:
            auth = await login(chat_id, email, password)
        except Exception:
            logger.exception("Login for chat %s failed", chat_id)
            auth = None
        if auth is None:
            return [(msg.LOGIN_FAILED, None)]
        return [(msg.LOGIN_SUCCESS, None)]

    async def _save(self, session, now):
        auth, problem = await self._auth(session.chat_id)
        if problem:
            return [(problem, None)]
        before = session.state
        ctx = TurnContext(chat_id=session.chat_id, session=session, text="", now=now, auth=auth)
        self.session_log.event(session.chat_id, "save", now, items=len(session.validated_items))
        try:
            await self.services.validator.save_meal(ctx)
        except Exception:
            logger.exception("Save failed for chat %s", session.chat_id)
            session.state = State.AWAITING_CONFIRMATION
            ctx.reply(msg.SAVE_FAILED)
            self.session_log.event(session.chat_id, "save_failed", now)
        self._after_turn(session, before, ctx.ended, now)
        return ctx.replies

    async def _search(self, chat_id, query):
        if not query:
            return [(msg.SEARCH_USAGE, None)]
        auth, problem = await self._auth(chat_id)
        if problem:
            return [(problem, None)]
        try:
            candidates = await self.services.resolver.search_all(query, auth, limit=10)
        except Exception:
            logger.exception("Search %r failed", query)
            return [(msg.SEARCH_ERROR, None)]
        if not candidates:
            return [(msg.NO_SEARCH_RESULTS, None)]
        return [(msg.format_search_results(candidates, f"🔍 Results for \"{query}\":"), None)]
