import asyncio
import logging
import time
from collections import OrderedDict
from contextvars import ContextVar
from typing import Callable, Dict, Optional, Set, Tuple

import httpx

from shared.backend_client import BackendClient
from shared.utils import Settings, token_subject

from app.cart import CartMutationSequencer
from app.community import CommentThread, VoteReconciler

logger = logging.getLogger("storefront-service.sessions")

# (user_id, token, request_id) of the request being served. Tasks copy the
# context they are started in, so a mutation keeps the credentials of the
# request that issued it even after another request for the same user arrives.
bound_request: ContextVar[Optional[Tuple[str, str, Optional[str]]]] = ContextVar(
    "storefront_bound_request", default=None
)


class SessionClient(BackendClient):
    """Backend client for one user's views, with credentials read from the current request."""

    def __init__(self, http: httpx.AsyncClient, user_id: str):
        super().__init__(http, token_provider=self._token)
        self.user_id = user_id
        self.last_token: Optional[str] = None

    def _bound(self) -> Optional[Tuple[str, str, Optional[str]]]:
        bound = bound_request.get()
        if bound is not None and bound[0] == self.user_id:
            return bound
        return None

    async def _token(self) -> Optional[str]:
        bound = self._bound()
        return bound[1] if bound else self.last_token

    def current_request_id(self) -> Optional[str]:
        bound = self._bound()
        return bound[2] if bound else None


class StorefrontSession:
    """The cart, vote and comment views owned by one signed-in user.

    Views are never shared between users. Each request binds its own bearer
    token, and every backend call made on its behalf uses that token.
    """

    def __init__(self, user_id: str, http: httpx.AsyncClient, settings: Settings):
        self.user_id = user_id
        self.last_seen = 0.0
        self.max_threads = settings.MAX_VIEWS_PER_SESSION
        self.client = SessionClient(http, user_id)
        self.cart = CartMutationSequencer(
            self.client,
            contract=settings.CART_CONTRACT,
            cart_path=settings.CART_PATH,
            catalog_path=settings.CATALOG_PATH,
        )
        self.votes = VoteReconciler(self.client, max_posts=settings.MAX_VIEWS_PER_SESSION)
        self.threads: Dict[str, CommentThread] = OrderedDict()

    def bind(self, token: str, request_id: Optional[str] = None):
        self.client.last_token = token
        bound_request.set((self.user_id, token, request_id))

    def thread(self, post_id: str) -> CommentThread:
        thread = self.threads.pop(post_id, None)
        if thread is None:
            thread = CommentThread(self.client, post_id)
        self.threads[post_id] = thread
        while len(self.threads) > self.max_threads:
            # a submission in flight on an evicted thread still completes
            _, oldest = self.threads.popitem(last=False)
            oldest.close()
        return thread

    async def close(self):
        self.cart.close()
        self.votes.close()
        for thread in self.threads.values():
            thread.close()
        # closed views ignore results, but mutations already sent still finish
        await self.votes.drain()


class SessionRegistry:
    """Open sessions by user, least recently used first.

    Sessions idle longer than SESSION_IDLE_SECONDS, or beyond MAX_SESSIONS,
    are closed in the background. Must be used from a running event loop.
    """

    def __init__(self, http: httpx.AsyncClient, settings: Settings, clock: Callable[[], float] = time.monotonic):
        self.http = http
        self.settings = settings
        self.clock = clock
        self._sessions: Dict[str, StorefrontSession] = OrderedDict()
        self._closing: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._sessions

    def for_token(self, token: str, request_id: Optional[str] = None) -> StorefrontSession:
        user_id = token_subject(token)
        now = self.clock()
        # expire idle sessions first so a returning user past the timeout starts fresh
        self._evict(now)
        session = self._sessions.pop(user_id, None)
        if session is None:
            session = StorefrontSession(user_id, self.http, self.settings)
            logger.info("Session opened", extra={"user_id": user_id})
        session.last_seen = now
        self._sessions[user_id] = session
        self._evict(now)
        session.bind(token, request_id)
        return session

    def _evict(self, now: float):
        while self._sessions:
            user_id, oldest = next(iter(self._sessions.items()))
            idle = now - oldest.last_seen > self.settings.SESSION_IDLE_SECONDS
            if not idle and len(self._sessions) <= self.settings.MAX_SESSIONS:
                break
            del self._sessions[user_id]
            self._retire(oldest)

    def _retire(self, session: StorefrontSession):
        logger.info("Session closed", extra={"user_id": session.user_id})
        task = asyncio.get_running_loop().create_task(session.close())
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def close_all(self):
        sessions, self._sessions = list(self._sessions.values()), OrderedDict()
        await asyncio.gather(*(session.close() for session in sessions), *list(self._closing))
