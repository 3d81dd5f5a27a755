"""Capture loop: speech events in, discourse nodes out.

All state (text buffer, interim text, graph model, conversation id) belongs to
the owner thread. Speech callbacks, the flush timer and classification workers
only ``post`` events; ``process_pending`` drains them one at a time.
"""

from __future__ import annotations

import asyncio
import logging
import queue
import threading
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Sequence, Tuple, Union

from chunk_classifier import ChunkClassifier, ChunkResult
from conversation_store import ConversationStore, PersistenceWorker, initial_title, title_from_labels
from discourse_graph import DiscourseGraphModel, DiscourseNode, next_branch_level
from sentiment import SentimentTally
from talk_parameters import CaptureLoopConfig, LayoutConfig

__all__ = [
    "CaptureState",
    "ChunkFinal",
    "ChunkInterim",
    "TimerTick",
    "ChunkClassified",
    "Stop",
    "SessionError",
    "SessionEnded",
    "CaptureSnapshot",
    "FlushTimer",
    "ThreadedAsyncRunner",
    "InlineAsyncRunner",
    "ConversationMap",
    "CaptureLoop",
]

CAPTURE_LOG = logging.getLogger("tangent_map.capture")


class CaptureState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"


# ---------------------------------------------------------------------------
# Events


@dataclass(frozen=True)
class ChunkFinal:
    text: str


@dataclass(frozen=True)
class ChunkInterim:
    text: str


@dataclass(frozen=True)
class TimerTick:
    pass


@dataclass(frozen=True)
class ChunkClassified:
    result: ChunkResult
    text: str
    # conversation the chunk was flushed from; None means the current one
    conversation: Optional["ConversationMap"] = None


@dataclass(frozen=True)
class Stop:
    pass


@dataclass(frozen=True)
class SessionError:
    error: BaseException


@dataclass(frozen=True)
class SessionEnded:
    pass


CaptureEvent = Union[ChunkFinal, ChunkInterim, TimerTick, ChunkClassified, Stop, SessionError, SessionEnded]


@dataclass(frozen=True)
class CaptureSnapshot:
    state: CaptureState
    nodes: Tuple[DiscourseNode, ...]
    interim_text: str
    sentiment: SentimentTally
    conversation_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Timer and async runners


class FlushTimer(threading.Thread):
    """Calls ``callback`` every ``period_s`` seconds until cancelled."""

    def __init__(self, period_s: float, callback: Callable[[], None]):
        super().__init__(name="flush-timer", daemon=True)
        self.period_s = period_s
        self.callback = callback
        self._stop_event = threading.Event()

    def cancel(self) -> None:
        self._stop_event.set()

    def run(self) -> None:
        while not self._stop_event.wait(self.period_s):
            self.callback()


DoneCallback = Callable[[Optional[Any], Optional[BaseException]], None]


class ThreadedAsyncRunner:
    """Runs each coroutine to completion on its own worker thread."""

    def __init__(self) -> None:
        self._outstanding = 0
        self._idle = threading.Condition()

    @property
    def outstanding(self) -> int:
        with self._idle:
            return self._outstanding

    def submit(self, coro_factory: Callable[[], Awaitable[Any]], on_done: DoneCallback) -> None:
        def _worker() -> None:
            try:
                try:
                    result = asyncio.run(coro_factory())
                except Exception as exc:
                    on_done(None, exc)
                    return
                on_done(result, None)
            finally:
                with self._idle:
                    self._outstanding -= 1
                    self._idle.notify_all()

        with self._idle:
            self._outstanding += 1
        threading.Thread(target=_worker, name="classify-runner", daemon=True).start()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every submitted coroutine has reported back."""
        with self._idle:
            return self._idle.wait_for(lambda: self._outstanding == 0, timeout)


class InlineAsyncRunner:
    """Runs the coroutine immediately on the calling thread."""

    def submit(self, coro_factory: Callable[[], Awaitable[Any]], on_done: DoneCallback) -> None:
        try:
            result = asyncio.run(coro_factory())
        except Exception as exc:
            on_done(None, exc)
            return
        on_done(result, None)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        return True


# ---------------------------------------------------------------------------
# Conversation state


class ConversationMap:
    """Graph model plus the persisted conversation it belongs to.

    A flush captures the map it came from, so a result that lands after the
    user switched conversations still goes to the right one.
    """

    def __init__(self, model: DiscourseGraphModel, conversation_id: Optional[str] = None):
        self.model = model
        self.conversation_id = conversation_id
        self.pending = 0
        self.title_stale = False


# ---------------------------------------------------------------------------
# Loop

SessionFactory = Callable[
    [Callable[[Sequence[str], Sequence[str]], None], Callable[[BaseException], None], Callable[[], None]],
    Any,
]
TimerFactory = Callable[[float, Callable[[], None]], Any]
Listener = Callable[[CaptureSnapshot], None]


class CaptureLoop:
    def __init__(
        self,
        classifier: ChunkClassifier,
        session_factory: SessionFactory,
        *,
        config: Optional[CaptureLoopConfig] = None,
        store: Optional[ConversationStore] = None,
        persistence=None,
        runner=None,
        timer_factory: TimerFactory = FlushTimer,
        layout: Optional[LayoutConfig] = None,
    ):
        self.cfg = config or CaptureLoopConfig.from_env()
        self.classifier = classifier
        self.session_factory = session_factory
        self.store = store
        if persistence is None and store is not None:
            persistence = PersistenceWorker()
            persistence.start()
        self.persistence = persistence
        self.runner = runner or ThreadedAsyncRunner()
        self.timer_factory = timer_factory
        self.layout = layout

        self.state = CaptureState.IDLE
        self._map = ConversationMap(DiscourseGraphModel(layout))
        self.interim_text = ""
        self.sentiment = SentimentTally()
        self._buffer = ""
        self._session = None
        self._timer = None
        self._events: "queue.Queue[CaptureEvent]" = queue.Queue()
        self._listeners: List[Listener] = []
        self._generation = 0

    @property
    def model(self) -> DiscourseGraphModel:
        return self._map.model

    @property
    def conversation_id(self) -> Optional[str]:
        return self._map.conversation_id

    # ---- observers -----------------------------------------------------

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def snapshot(self) -> CaptureSnapshot:
        return CaptureSnapshot(
            state=self.state,
            nodes=self.model.nodes,
            interim_text=self.interim_text,
            sentiment=SentimentTally(self.sentiment.positive, self.sentiment.negative, self.sentiment.neutral),
            conversation_id=self.conversation_id,
        )

    def _notify(self) -> None:
        snap = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snap)
            except Exception as exc:
                CAPTURE_LOG.warning("capture listener failed: %s", exc)

    @property
    def buffered_text(self) -> str:
        return self._buffer

    # ---- event queue ---------------------------------------------------

    def post(self, event: CaptureEvent) -> None:
        """Thread-safe: enqueue an event for the owner thread."""
        self._events.put(event)

    def process_pending(self, max_events: Optional[int] = None) -> int:
        """Drain queued events on the owner thread; returns how many were handled."""
        handled = 0
        while max_events is None or handled < max_events:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                break
            handled += 1
            if self._handle(event):
                self._notify()
        return handled

    def _handle(self, event: CaptureEvent) -> bool:
        if isinstance(event, ChunkFinal):
            return self._on_final(event.text)
        if isinstance(event, ChunkInterim):
            if event.text == self.interim_text:
                return False
            self.interim_text = event.text
            return True
        if isinstance(event, TimerTick):
            self._on_tick()
            return False
        if isinstance(event, ChunkClassified):
            return self._on_classified(event)
        if isinstance(event, Stop):
            return self._stop(refresh_title=True)
        if isinstance(event, SessionError):
            CAPTURE_LOG.warning("speech session failed: %s", event.error)
            return self._stop(refresh_title=False)
        if isinstance(event, SessionEnded):
            CAPTURE_LOG.info("speech session ended")
            return self._stop(refresh_title=False)
        CAPTURE_LOG.debug("ignoring unknown event %r", event)
        return False

    # ---- lifecycle -----------------------------------------------------

    def start(self) -> None:
        if self.state is CaptureState.LISTENING:
            return
        self._buffer = ""
        self.interim_text = ""
        self._generation += 1
        generation = self._generation
        session = self.session_factory(
            lambda finals, interims: self._session_result(generation, finals, interims),
            lambda exc: self._session_error(generation, exc),
            lambda: self._session_end(generation),
        )
        session.start()
        self._session = session
        self._timer = self.timer_factory(self.cfg.flush_seconds, lambda: self.post(TimerTick()))
        self._timer.start()
        self.state = CaptureState.LISTENING
        CAPTURE_LOG.info("listening (flush every %.1fs)", self.cfg.flush_seconds)
        self._notify()

    def stop(self) -> None:
        if self._stop(refresh_title=True):
            self._notify()

    def _stop(self, refresh_title: bool) -> bool:
        if self.state is CaptureState.IDLE:
            return False
        self._teardown()
        self.state = CaptureState.IDLE
        self.interim_text = ""
        CAPTURE_LOG.info("stopped listening (%d nodes)", len(self.model))
        if refresh_title:
            self._refresh_title(self._map)
            # results still in flight refresh it again once they land
            self._map.title_stale = self._map.pending > 0
        return True

    def _refresh_title(self, cmap: ConversationMap) -> None:
        if not len(cmap.model) or not cmap.conversation_id or self.store is None:
            return
        title = title_from_labels(cmap.model.labels())
        self._persist("refresh title", self.store.upsert_conversation, cmap.conversation_id, title=title)

    def _teardown(self) -> None:
        self._generation += 1
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        session, self._session = self._session, None
        if session is not None:
            try:
                session.stop()
            except Exception as exc:
                CAPTURE_LOG.warning("speech session stop failed: %s", exc)

    def load(self, conversation_id: Optional[str], records: Sequence[Mapping[str, object]] = ()) -> None:
        """Replace the graph with a saved conversation; later chunks continue it."""
        if self.state is CaptureState.LISTENING:
            raise RuntimeError("cannot switch conversations while listening")
        if self._map.pending:
            CAPTURE_LOG.info("%d chunk(s) still classifying for the previous map", self._map.pending)
        self._map = ConversationMap(DiscourseGraphModel.from_records(records, self.layout), conversation_id)
        self.sentiment.reset()
        self._notify()

    def new_conversation(self) -> None:
        self.load(None, ())

    def drain(self, timeout: float = 5.0) -> bool:
        """Wait for in-flight classifications and apply their results on this thread.

        Returns False if the runner is still busy when ``timeout`` runs out.
        """
        deadline = time.monotonic() + timeout
        while True:
            self.process_pending()
            remaining = deadline - time.monotonic()
            if self.runner.wait_idle(min(0.05, max(0.0, remaining))):
                self.process_pending()
                return True
            if remaining <= 0:
                CAPTURE_LOG.warning("gave up waiting for in-flight classifications after %.1fs", timeout)
                return False

    def shutdown(self, timeout: float = 5.0) -> None:
        self._stop(refresh_title=True)
        self.drain(timeout)
        if self.persistence is not None:
            self.persistence.wait_idle(timeout)
            self.persistence.stop()

    # ---- speech callbacks (any thread) ---------------------------------
    # Callbacks from a session that has since been stopped are ignored.

    def _session_result(self, generation: int, finals: Sequence[str], interims: Sequence[str]) -> None:
        if generation != self._generation:
            return
        for text in finals:
            if text and text.strip():
                self.post(ChunkFinal(text.strip()))
        self.post(ChunkInterim(" ".join(t for t in interims if t).strip()))

    def _session_error(self, generation: int, exc: BaseException) -> None:
        if generation == self._generation:
            self.post(SessionError(exc))

    def _session_end(self, generation: int) -> None:
        if generation == self._generation:
            self.post(SessionEnded())

    # ---- handlers (owner thread) ---------------------------------------

    def _on_final(self, text: str) -> bool:
        if self.state is not CaptureState.LISTENING:
            return False
        self._buffer += " " + text
        self.sentiment.add_text(text)
        return True

    def _on_tick(self) -> None:
        if self.state is not CaptureState.LISTENING:
            return
        text, self._buffer = self._buffer.strip(), ""
        if not text:
            return
        cmap = self._map
        previous_label = cmap.model.last_label
        previous_level = cmap.model.last_branch_level
        cmap.pending += 1
        CAPTURE_LOG.info("flushing chunk (%d chars)", len(text))

        def _done(result: Optional[ChunkResult], exc: Optional[BaseException]) -> None:
            if exc is not None or result is None:
                CAPTURE_LOG.warning("classification crashed, using heuristic: %s", exc)
                result = self.classifier.classify_locally(text, previous_level)
            self.post(ChunkClassified(result, text, cmap))

        self.runner.submit(lambda: self.classifier.classify(text, previous_label, previous_level), _done)

    def _on_classified(self, event: ChunkClassified) -> bool:
        """Append the result to the map it was flushed from; True if that is the one on screen."""
        result = event.result
        cmap = event.conversation or self._map
        if event.conversation is not None:
            cmap.pending = max(0, cmap.pending - 1)
        current = cmap is self._map

        branch_level = next_branch_level(cmap.model.last_branch_level, result.on_track)
        if cmap.conversation_id is None and self.store is not None and self.cfg.user_id:
            cmap.conversation_id = uuid.uuid4().hex
            self._persist(
                "create conversation",
                self.store.upsert_conversation,
                cmap.conversation_id,
                user_id=self.cfg.user_id,
                title=initial_title(result.label),
            )
        node = cmap.model.append(result.label, branch_level)
        CAPTURE_LOG.info(
            "node %d: %r lane=%d (%s)%s",
            node.index,
            node.label,
            node.branch_level,
            result.source,
            "" if current else " [previous map]",
        )
        if cmap.conversation_id is not None and self.store is not None:
            self._persist(
                "append node",
                self.store.append_node,
                cmap.conversation_id,
                label=node.label,
                branch_level=node.branch_level,
                index=node.index,
                node_id=node.id,
            )
        if cmap.title_stale and not cmap.pending:
            cmap.title_stale = False
            self._refresh_title(cmap)
        return current

    def _persist(self, description: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        if self.persistence is None:
            return
        self.persistence.submit(description, fn, *args, **kwargs)
