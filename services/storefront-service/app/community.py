import asyncio
import itertools
import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple
from urllib.parse import quote
from uuid import uuid4

from shared.backend_client import BackendClient
from shared.security_config import clean_identifier
from shared.utils import (
    AppException, ClientValidationError, DuplicateVote, MutationInFlight, NotFoundException
)

from app.models import Comment, Post, VoteState
from app.pricing import coerce_quantity, optional_text, unwrap_collection

logger = logging.getLogger("storefront-service.community")

# (current vote, clicked direction) -> (next vote, change in count).
# +1 <-> -1 is not reachable in one click; same-direction clicks are refused.
TRANSITIONS: Dict[Tuple[int, int], Tuple[int, int]] = {
    (0, 1): (1, 1),
    (0, -1): (-1, -1),
    (1, -1): (0, -1),
    (-1, 1): (0, 1),
}

SORT_MODES = ("top", "new")


def next_vote(current: int, direction: int) -> Tuple[int, int]:
    if direction not in (1, -1) or isinstance(direction, bool):
        raise ClientValidationError("Vote direction must be 1 or -1")
    if current == direction:
        raise DuplicateVote()
    return TRANSITIONS[(current, direction)]


def parse_time(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _timestamp(value: Optional[datetime]) -> float:
    if value is None:
        return 0.0
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def parse_post(raw: Any) -> Optional[Post]:
    if not isinstance(raw, dict):
        return None
    post_id = clean_identifier(raw.get("_id") or raw.get("id"))
    if not post_id:
        return None
    my_vote = raw.get("myVote", raw.get("my_vote"))
    comments = coerce_quantity(raw.get("commentsCount"))
    return Post(
        id=post_id,
        title=optional_text(raw.get("title")) or "",
        body=optional_text(raw.get("body")),
        votes=coerce_quantity(raw.get("votes")) or 0,
        my_vote=my_vote if my_vote in (-1, 0, 1) and not isinstance(my_vote, bool) else None,
        comments_count=comments,
        created_at=parse_time(raw.get("createdAt") or raw.get("created_at")),
        author_name=optional_text(raw.get("authorName") or raw.get("author_name")),
    )


def unwrap_post(payload: Any) -> Any:
    if isinstance(payload, dict) and isinstance(payload.get("post"), dict):
        return payload["post"]
    return payload


def parse_posts(payload: Any) -> List[Post]:
    posts = (parse_post(raw) for raw in unwrap_collection(payload, "posts"))
    return [post for post in posts if post is not None]


def parse_comment(raw: Any) -> Optional[Comment]:
    if not isinstance(raw, dict):
        return None
    comment_id = clean_identifier(raw.get("_id") or raw.get("id"))
    if not comment_id:
        return None
    return Comment(
        id=comment_id,
        author_name=optional_text(raw.get("authorName") or raw.get("author_name")) or "",
        text=optional_text(raw.get("text")) or "",
        created_at=parse_time(raw.get("createdAt") or raw.get("created_at")),
    )


def sort_posts(posts: Iterable[Post], mode: str = "top") -> List[Post]:
    if mode not in SORT_MODES:
        raise ClientValidationError(f"Unknown sort mode {mode!r}")
    if mode == "top":
        return sorted(posts, key=lambda p: (-p.votes, -_timestamp(p.created_at)))
    return sorted(posts, key=lambda p: -_timestamp(p.created_at))


class VoteReconciler:
    """Optimistic up/down votes for the posts one view displays.

    A vote is applied to local state before any network activity, then sent
    in the background. Success keeps the local state and schedules a
    revalidating fetch of the post; failure restores the exact state from
    before the click and re-raises to whoever awaits the task.
    """

    def __init__(self, client: BackendClient, posts_path: str = "/posts", max_posts: Optional[int] = None):
        self.client = client
        self.posts_path = posts_path
        self.max_posts = max_posts
        self.closed = False
        self.errors: Dict[str, str] = {}
        self._states: Dict[str, VoteState] = OrderedDict()
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._generation: Dict[str, int] = {}
        self._ticks = itertools.count(1)
        self._background: Set[asyncio.Task] = set()

    def load(self, posts: Iterable[Post]) -> None:
        for post in posts:
            if post.id in self._in_flight:
                # the optimistic overlay stays until the vote settles
                continue
            known = self._states.get(post.id)
            current = post.my_vote
            if current is None:
                current = known.current_vote if known else 0
            self._states.pop(post.id, None)
            self._states[post.id] = VoteState(post_id=post.id, current_vote=current, vote_count=post.votes)
        self._prune()

    def _prune(self):
        """Forget the least recently loaded posts beyond max_posts. Posts with a vote in flight are kept."""
        if self.max_posts is None:
            return
        excess = len(self._states) - self.max_posts
        for post_id in list(self._states):
            if excess <= 0:
                break
            if post_id in self._in_flight:
                continue
            del self._states[post_id]
            self._generation.pop(post_id, None)
            self.errors.pop(post_id, None)
            excess -= 1

    def state(self, post_id: str) -> VoteState:
        state = self._states.get(post_id)
        if state is None:
            raise NotFoundException(f"Post {post_id} not found")
        return state

    def overlay(self, posts: Iterable[Post]) -> List[Post]:
        out = []
        for post in posts:
            state = self._states.get(post.id)
            if state is not None:
                post = post.model_copy(update={"votes": state.vote_count, "my_vote": state.current_vote})
            out.append(post)
        return out

    def is_busy(self, post_id: str) -> bool:
        return post_id in self._in_flight

    def close(self):
        self.closed = True

    async def ensure_loaded(self, post_id: str) -> VoteState:
        if post_id in self._states:
            return self._states[post_id]
        payload = await self.client.get(f"{self.posts_path}/{quote(post_id, safe='')}")
        post = parse_post(unwrap_post(payload))
        if post is None:
            raise NotFoundException(f"Post {post_id} not found")
        self.load([post])
        return self.state(post_id)

    def upvote(self, post_id: str) -> asyncio.Task:
        return self.vote(post_id, 1)

    def downvote(self, post_id: str) -> asyncio.Task:
        return self.vote(post_id, -1)

    def vote(self, post_id: str, direction: int) -> asyncio.Task:
        """Apply the click locally and return the task sending it.

        Must be called from a running event loop. Refused clicks raise here,
        before any state change or network call.
        """
        post_id = clean_identifier(post_id)
        if not post_id:
            raise ClientValidationError("Vote target is required")
        if post_id in self._in_flight:
            raise MutationInFlight(f"post {post_id}")
        before = self.state(post_id)
        next_state, delta = next_vote(before.current_vote, direction)

        self._states.pop(post_id)
        self._states[post_id] = before.model_copy(update={
            "current_vote": next_state,
            "vote_count": before.vote_count + delta,
            "pending_delta": delta,
        })
        # drawn from one counter so a pruned and reloaded post never reuses a generation
        self._generation[post_id] = next(self._ticks)
        self.errors.pop(post_id, None)

        task = asyncio.get_running_loop().create_task(self._send(post_id, direction, before))
        self._in_flight[post_id] = task
        return task

    async def _send(self, post_id: str, direction: int, before: VoteState) -> VoteState:
        try:
            await self.client.post(f"{self.posts_path}/{quote(post_id, safe='')}/vote", {"delta": direction})
        except Exception as exc:
            if not self.closed:
                self._states[post_id] = before
            self.errors[post_id] = str(exc)
            logger.warning("Vote failed, rolled back", extra={"post_id": post_id})
            raise
        finally:
            self._in_flight.pop(post_id, None)

        state = self._states[post_id]
        if not self.closed:
            state = state.model_copy(update={"pending_delta": 0})
            self._states[post_id] = state
            self._schedule_revalidation(post_id)
        return state

    def _schedule_revalidation(self, post_id: str):
        task = asyncio.get_running_loop().create_task(
            self.revalidate(post_id, generation=self._generation.get(post_id, 0))
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def revalidate(self, post_id: str, generation: Optional[int] = None) -> Optional[VoteState]:
        """Refetch one post so concurrent votes by other users show up."""
        try:
            payload = await self.client.get(f"{self.posts_path}/{quote(post_id, safe='')}")
        except AppException:
            logger.warning("Vote revalidation failed", extra={"post_id": post_id}, exc_info=True)
            return None

        post = parse_post(unwrap_post(payload))
        if post is None or self.closed or post_id in self._in_flight:
            return None
        if generation is not None and generation != self._generation.get(post_id, 0):
            # a newer vote has happened since this fetch was scheduled
            return None
        self.load([post])
        return self._states[post_id]

    async def drain(self):
        """Wait for every in-flight vote and revalidation. Failures are left on the tasks."""
        while self._in_flight or self._background:
            pending = list(self._in_flight.values()) + list(self._background)
            await asyncio.gather(*pending, return_exceptions=True)


class CommentThread:
    """Optimistic comment list for one post.

    A submitted comment is shown at once as a placeholder with a temporary
    id; after the backend call the list is always refetched, so the
    placeholder is replaced by the server's copy, or removed on failure.
    """

    def __init__(self, client: BackendClient, post_id: str, posts_path: str = "/posts"):
        self.client = client
        self.post_id = post_id
        self.posts_path = posts_path
        self.comments: List[Comment] = []
        self.closed = False
        self._task: Optional[asyncio.Task] = None

    @property
    def path(self) -> str:
        return f"{self.posts_path}/{quote(self.post_id, safe='')}/comments"

    def is_busy(self) -> bool:
        return self._task is not None

    def close(self):
        self.closed = True

    async def refresh(self) -> List[Comment]:
        payload = await self.client.get(self.path)
        comments = [c for c in (parse_comment(raw) for raw in unwrap_collection(payload, "comments")) if c]
        if not self.closed:
            self.comments = comments
        return comments

    def submit(self, text: str, author_name: str = "You") -> asyncio.Task:
        value = (text or "").strip()
        if not value:
            raise ClientValidationError("Comment text is required")
        if self._task is not None:
            raise MutationInFlight(f"comments on post {self.post_id}")

        previous = list(self.comments)
        placeholder = Comment(
            id=f"tmp_{uuid4().hex[:12]}",
            author_name=author_name,
            text=value,
            created_at=datetime.now(timezone.utc),
            pending=True,
        )
        self.comments = [placeholder] + previous

        self._task = asyncio.get_running_loop().create_task(self._send(value, previous))
        return self._task

    async def _send(self, text: str, previous: List[Comment]) -> List[Comment]:
        try:
            try:
                await self.client.post(self.path, {"text": text})
            except Exception:
                if not self.closed:
                    self.comments = previous
                logger.warning("Comment failed, placeholder removed", extra={"post_id": self.post_id})
                await self._refresh_quietly()
                raise
            try:
                return await self.refresh()
            except Exception:
                # the server has the comment, but without a fresh list the placeholder cannot stay
                if not self.closed:
                    self.comments = previous
                logger.warning("Comment posted but list revalidation failed", extra={"post_id": self.post_id})
                raise
        finally:
            self._task = None

    async def _refresh_quietly(self):
        try:
            await self.refresh()
        except AppException:
            logger.warning("Comment list revalidation failed", extra={"post_id": self.post_id}, exc_info=True)
