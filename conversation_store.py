"""Conversation/node persistence and the ordered background writer."""

from __future__ import annotations

import logging
import queue
import re
import threading
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, create_engine, func, select
from sqlalchemy.orm import Mapped, declarative_base, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from talk_parameters import StoreConfig

__all__ = [
    "ConversationMeta",
    "NodeRecord",
    "ConversationStore",
    "SQLConversationStore",
    "PersistenceWorker",
    "InlinePersistence",
    "title_from_first_label",
    "provisional_title",
    "initial_title",
    "title_from_labels",
]

STORE_LOG = logging.getLogger("tangent_map.store")

UNTITLED = "Untitled conversation"
TITLE_STOPWORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "of", "to", "in", "on", "for", "with", "at", "by", "from", "is", "are",
    "be",
})
_TITLE_SPLIT = re.compile(r"[^a-z0-9]+")


# ---------------------------------------------------------------------------
# Title helpers


def _capitalize(text: str) -> str:
    return text[:1].upper() + text[1:]


def title_from_first_label(first_label: Optional[str]) -> str:
    base = (first_label or "").strip()
    return _capitalize(base if len(base) >= 3 else UNTITLED)


def provisional_title(now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now()).strftime("%b %d, %Y %H:%M")
    return f"Conversation — {stamp}"


def initial_title(first_label: Optional[str], now: Optional[datetime] = None) -> str:
    """Title for a freshly created conversation."""
    if first_label and len(first_label.strip()) >= 3:
        return title_from_first_label(first_label)
    return provisional_title(now)


def title_from_labels(labels: List[str], now: Optional[datetime] = None) -> str:
    """Keyword-frequency title: the three most frequent non-stopwords across all labels."""
    if not labels:
        return provisional_title(now)
    counts: Counter = Counter()
    for label in labels:
        for word in _TITLE_SPLIT.split(label.lower()):
            if not word or word in TITLE_STOPWORDS or len(word) < 3:
                continue
            counts[word] += 1
    # most_common keeps first-seen order among equal counts
    top = [word for word, _ in counts.most_common(3)]
    candidate = (" ".join(top) if top else labels[0]).strip()
    return _capitalize(candidate)


# ---------------------------------------------------------------------------
# Records


@dataclass(frozen=True)
class ConversationMeta:
    id: str
    title: str
    updated_at: Optional[datetime]
    node_count: int = 0


@dataclass(frozen=True)
class NodeRecord:
    id: str
    label: str
    branch_level: int
    index: int
    created_at: Optional[datetime] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "branch_level": self.branch_level,
            "index": self.index,
            "created_at": self.created_at,
        }


class ConversationStore(ABC):
    @abstractmethod
    def upsert_conversation(
        self,
        conversation_id: str,
        *,
        user_id: Optional[str] = None,
        title: Optional[str] = None,
    ) -> None:
        """Create the conversation if it is new, otherwise update its title and bump updated_at."""

    @abstractmethod
    def append_node(
        self,
        conversation_id: str,
        *,
        label: str,
        branch_level: int,
        index: int,
        node_id: Optional[str] = None,
    ) -> None:
        """Persist one node and bump the conversation's node count."""

    @abstractmethod
    def list_conversations(self, user_id: str, limit: int = 20) -> List[ConversationMeta]:
        ...

    @abstractmethod
    def get_conversation_nodes(self, conversation_id: str) -> List[NodeRecord]:
        ...


# ---------------------------------------------------------------------------
# SQLAlchemy backend

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)


class ConversationRow(Base, TimestampMixin):
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: uuid4().hex)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    title: Mapped[str] = mapped_column(Text, nullable=False, default=UNTITLED)
    node_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class NodeRow(Base):
    __tablename__ = "conversation_nodes"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: uuid4().hex)
    conversation_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    label: Mapped[str] = mapped_column(Text, nullable=False)
    branch_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    index: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow)


def _engine_for(url: str, echo: bool = False):
    if url.startswith("sqlite"):
        kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection, otherwise every session sees a fresh empty database
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=echo, **kwargs)
    return create_engine(url, echo=echo, pool_pre_ping=True)


class SQLConversationStore(ConversationStore):
    def __init__(self, config: Optional[StoreConfig] = None):
        self.cfg = config or StoreConfig.from_env()
        self.engine = _engine_for(self.cfg.url, self.cfg.echo)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)
        STORE_LOG.info("conversation store ready: %s", self.engine.url.render_as_string(hide_password=True))

    def upsert_conversation(
        self,
        conversation_id: str,
        *,
        user_id: Optional[str] = None,
        title: Optional[str] = None,
    ) -> None:
        with self.Session() as session:
            row = session.get(ConversationRow, conversation_id)
            if row is None:
                if not user_id:
                    raise ValueError(f"cannot create conversation {conversation_id} without a user_id")
                session.add(ConversationRow(id=conversation_id, user_id=user_id, title=title or UNTITLED))
            else:
                if title:
                    row.title = title
                row.updated_at = _utcnow()
            session.commit()

    def append_node(
        self,
        conversation_id: str,
        *,
        label: str,
        branch_level: int,
        index: int,
        node_id: Optional[str] = None,
    ) -> None:
        with self.Session() as session:
            row = session.get(ConversationRow, conversation_id)
            if row is None:
                raise LookupError(f"unknown conversation {conversation_id}")
            session.add(
                NodeRow(
                    id=node_id or uuid4().hex,
                    conversation_id=conversation_id,
                    label=label,
                    branch_level=branch_level,
                    index=index,
                )
            )
            row.node_count = (row.node_count or 0) + 1
            row.updated_at = _utcnow()
            session.commit()

    def list_conversations(self, user_id: str, limit: int = 20) -> List[ConversationMeta]:
        stmt = (
            select(ConversationRow)
            .where(ConversationRow.user_id == user_id)
            .order_by(ConversationRow.updated_at.desc(), ConversationRow.created_at.desc())
            .limit(limit)
        )
        with self.Session() as session:
            rows = session.scalars(stmt).all()
            return [
                ConversationMeta(
                    id=row.id,
                    title=row.title or UNTITLED,
                    updated_at=row.updated_at,
                    node_count=row.node_count or 0,
                )
                for row in rows
            ]

    def get_conversation_nodes(self, conversation_id: str) -> List[NodeRecord]:
        stmt = select(NodeRow).where(NodeRow.conversation_id == conversation_id).order_by(NodeRow.index.asc())
        with self.Session() as session:
            return [
                NodeRecord(
                    id=row.id,
                    label=row.label,
                    branch_level=row.branch_level,
                    index=row.index,
                    created_at=row.created_at,
                )
                for row in session.scalars(stmt).all()
            ]

    def count_conversations(self) -> int:
        with self.Session() as session:
            return session.scalar(select(func.count()).select_from(ConversationRow)) or 0


# ---------------------------------------------------------------------------
# Ordered, best-effort writers

Job = Tuple[str, Callable[..., Any], tuple, dict]


def _run_job(job: Job) -> None:
    description, fn, args, kwargs = job
    try:
        fn(*args, **kwargs)
    except Exception as exc:
        STORE_LOG.warning("persistence job %s failed: %s", description, exc)


class PersistenceWorker(threading.Thread):
    """Runs store writes one at a time, in submission order, off the UI thread."""

    def __init__(self, max_queue: int = 1024):
        super().__init__(name="persistence", daemon=True)
        self._jobs: "queue.Queue[Optional[Job]]" = queue.Queue(maxsize=max_queue)
        self._stop_event = threading.Event()

    def submit(self, description: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        if self._stop_event.is_set():
            STORE_LOG.warning("persistence worker stopped; dropping %s", description)
            return
        try:
            self._jobs.put_nowait((description, fn, args, kwargs))
        except queue.Full:
            STORE_LOG.warning("persistence queue full; dropping %s", description)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every submitted job has run (or timeout)."""
        done = threading.Event()

        def _waiter() -> None:
            self._jobs.join()
            done.set()

        threading.Thread(target=_waiter, daemon=True).start()
        return done.wait(timeout)

    def stop(self) -> None:
        self._stop_event.set()
        self._jobs.put(None)

    def run(self) -> None:
        while True:
            job = self._jobs.get()
            try:
                if job is None:
                    return
                _run_job(job)
            finally:
                self._jobs.task_done()


class InlinePersistence:
    """Same contract as PersistenceWorker, but runs each job immediately on the caller's thread."""

    def submit(self, description: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        _run_job((description, fn, args, kwargs))

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        return True

    def stop(self) -> None:
        return None
