#!/usr/bin/env python3
"""Tangent Map: live conversation map with GUI, headless and service entrypoints."""

from __future__ import annotations

import argparse
import logging
import queue
import sys
import time
import tkinter as tk
from tkinter import ttk
from tkinter.scrolledtext import ScrolledText
from typing import Callable, Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from capture_loop import CaptureLoop, CaptureSnapshot, CaptureState
from chunk_classifier import ChunkClassifier
from config import (
    SERVE_PORT,
    CaptureLoopConfig,
    ClassifierConfig,
    StoreConfig,
    load_http_stt_config,
)
from conversation_store import ConversationMeta, SQLConversationStore
from graph_view import GraphRenderer, GraphStyle
from highlighter import highlight
from speech_session import MicrophoneSession
from viewport import ViewportController

APP_LOG = logging.getLogger("tangent_map")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

EVENT_POLL_MS = 50
LOG_POLL_MS = 200


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)


def open_store(config: Optional[StoreConfig] = None) -> Optional[SQLConversationStore]:
    try:
        return SQLConversationStore(config or StoreConfig.from_env())
    except SQLAlchemyError as exc:
        APP_LOG.warning("conversation store unavailable, nodes will not be saved: %s", exc)
        return None


def microphone_session_factory(on_result, on_error, on_end) -> MicrophoneSession:
    return MicrophoneSession(on_result, on_error, on_end, config=load_http_stt_config())


def build_capture_loop(store: Optional[SQLConversationStore], flush_seconds: Optional[float] = None) -> CaptureLoop:
    cfg = CaptureLoopConfig.from_env()
    if flush_seconds is not None:
        cfg.flush_seconds = max(0.5, flush_seconds)
    classifier = ChunkClassifier(ClassifierConfig.from_env())
    return CaptureLoop(classifier, microphone_session_factory, config=cfg, store=store)


# ---------------------------------------------------------------------------
# Tk application


class TkLogHandler(logging.Handler):
    def __init__(self, callback: Callable[[str], None]):
        super().__init__()
        self.callback = callback

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            self.callback(msg)
        except Exception:
            self.handleError(record)


# Styling for the highlighter's token classes; later tags win in Tk.
TRANSCRIPT_TAGS: Dict[str, Dict[str, object]] = {
    "lt-token": {},
    "long": {"underline": True},
    "pos": {"foreground": "#16a34a"},
    "neg": {"foreground": "#dc2626"},
    "s2": {},
    "s3": {"font": ("Helvetica", 13, "bold")},
    "pop": {"background": "#fde68a"},
}


class App(tk.Tk):
    def __init__(self):
        super().__init__()
        self.title("Tangent Map")
        self.geometry("1100x760")

        self.store = open_store()
        self.loop = build_capture_loop(self.store)
        self.viewport = ViewportController()
        self.style_cfg = GraphStyle()
        self.status = tk.StringVar(value="Idle")
        self.sentiment_var = tk.StringVar(value="Sentiment: no data")
        self.conversation_var = tk.StringVar()
        self._conversations: Dict[str, ConversationMeta] = {}
        self._conversation_labels: Dict[str, str] = {}
        self.log_queue: "queue.Queue[str]" = queue.Queue(maxsize=256)
        self._log_handler: Optional[TkLogHandler] = None

        body = ttk.Frame(self)
        body.pack(fill=tk.BOTH, expand=True)

        self.controls_frame = ttk.Frame(body)
        self.controls_frame.pack(side=tk.TOP, fill=tk.X, padx=8, pady=6)

        self.content_frame = ttk.Frame(body)
        self.content_frame.pack(side=tk.TOP, fill=tk.BOTH, expand=True, padx=8, pady=(0, 6))

        self._build_controls(self.controls_frame)
        self._build_content(self.content_frame)
        self.renderer = GraphRenderer(self.canvas, self.style_cfg)

        self.loop.add_listener(self._on_snapshot)
        self._setup_logging_bridge()
        self._refresh_conversations()
        self._redraw_graph()
        self.after(EVENT_POLL_MS, self._pump_events)
        self.after(LOG_POLL_MS, self._drain_logs)

    # ---- layout --------------------------------------------------------

    def _build_controls(self, parent):
        self.listen_btn = ttk.Button(parent, text="Listen", command=self.toggle_listen)
        self.listen_btn.pack(side=tk.LEFT)

        new_btn = ttk.Button(parent, text="New", command=self.new_conversation)
        new_btn.pack(side=tk.LEFT, padx=(6, 0))

        ttk.Label(parent, text="Conversation").pack(side=tk.LEFT, padx=(16, 4))
        self.conversation_combo = ttk.Combobox(parent, width=42, textvariable=self.conversation_var, state="readonly")
        self.conversation_combo.pack(side=tk.LEFT)
        ttk.Button(parent, text="Load", command=self.load_selected_conversation).pack(side=tk.LEFT, padx=(4, 0))
        ttk.Button(parent, text="Refresh", command=self._refresh_conversations).pack(side=tk.LEFT, padx=(4, 0))
        ttk.Button(parent, text="Reset view", command=self.reset_view).pack(side=tk.LEFT, padx=(4, 0))

        self.sentiment_lbl = tk.Label(parent, textvariable=self.sentiment_var)
        self.sentiment_lbl.pack(side=tk.RIGHT)
        self._default_fg = self.sentiment_lbl.cget("foreground")
        ttk.Label(parent, textvariable=self.status).pack(side=tk.RIGHT, padx=(0, 12))

    def _build_content(self, parent):
        parent.columnconfigure(0, weight=1)
        parent.rowconfigure(0, weight=5)
        parent.rowconfigure(1, weight=2)
        parent.rowconfigure(2, weight=1)

        graph_frame = ttk.Labelframe(parent, text="Conversation map")
        graph_frame.grid(row=0, column=0, sticky="nsew")
        self.canvas = tk.Canvas(graph_frame, background=self.style_cfg.background, highlightthickness=0)
        self.canvas.pack(fill=tk.BOTH, expand=True)
        self.canvas.bind("<ButtonPress-1>", self._on_pointer_down)
        self.canvas.bind("<B1-Motion>", self._on_pointer_move)
        self.canvas.bind("<ButtonRelease-1>", self._on_pointer_up)
        self.canvas.bind("<Leave>", self._on_pointer_up)
        self.canvas.bind("<MouseWheel>", self._on_wheel)
        # X11 reports wheel steps as buttons 4/5
        self.canvas.bind("<Button-4>", lambda e: self._zoom_at(e.x, e.y, -1.0))
        self.canvas.bind("<Button-5>", lambda e: self._zoom_at(e.x, e.y, 1.0))

        live_frame = ttk.Labelframe(parent, text="Live transcript")
        live_frame.grid(row=1, column=0, sticky="nsew", pady=(6, 0))
        self.live_text = ScrolledText(live_frame, wrap="word", height=4, font=("Helvetica", 13))
        self.live_text.pack(fill=tk.BOTH, expand=True)
        for tag, options in TRANSCRIPT_TAGS.items():
            self.live_text.tag_configure(tag, **options)
        self.live_text.configure(state=tk.DISABLED)

        log_frame = ttk.Frame(parent)
        log_frame.grid(row=2, column=0, sticky="nsew", pady=(8, 0))
        ttk.Label(log_frame, text="Logs").pack(anchor="w")
        self.log_text = ScrolledText(log_frame, wrap="word", height=6)
        self.log_text.pack(fill=tk.BOTH, expand=True)

    # ---- capture -------------------------------------------------------

    def toggle_listen(self):
        if self.loop.state is CaptureState.LISTENING:
            self.loop.stop()
            return
        try:
            self.loop.start()
        except RuntimeError as exc:
            self.status.set("Cannot listen")
            APP_LOG.error("cannot start listening: %s", exc)

    def new_conversation(self):
        if self.loop.state is CaptureState.LISTENING:
            APP_LOG.info("stop listening before starting a new conversation")
            return
        self.loop.new_conversation()
        self.viewport.reset()
        self._redraw_graph()

    def _pump_events(self):
        try:
            self.loop.process_pending()
        finally:
            self.after(EVENT_POLL_MS, self._pump_events)

    def _on_snapshot(self, snap: CaptureSnapshot) -> None:
        listening = snap.state is CaptureState.LISTENING
        self.listen_btn.configure(text="Stop" if listening else "Listen")
        self.status.set(f"{'Listening' if listening else 'Idle'} · {len(snap.nodes)} nodes")
        tally = snap.sentiment
        if tally.total:
            self.sentiment_var.set(f"Sentiment: {tally.description()} ({tally.score:+d})")
            self.sentiment_lbl.configure(foreground=tally.color())
        else:
            self.sentiment_var.set("Sentiment: no data")
            self.sentiment_lbl.configure(foreground=self._default_fg)
        self._render_interim(snap.interim_text)
        self._redraw_graph()
        if not listening and snap.conversation_id and snap.conversation_id not in self._conversations:
            # give the persistence worker a moment to write the new conversation
            self.after(500, self._refresh_conversations)

    def _render_interim(self, text: str) -> None:
        widget = self.live_text
        widget.configure(state=tk.NORMAL)
        widget.delete("1.0", tk.END)
        for span in highlight(text):
            widget.insert(tk.END, span.text, span.classes)
        widget.configure(state=tk.DISABLED)

    # ---- graph ---------------------------------------------------------

    def _redraw_graph(self):
        self.renderer.render(self.loop.model, self.viewport.transform)

    def reset_view(self):
        self.viewport.reset()
        self._redraw_graph()

    def _on_pointer_down(self, event):
        self.viewport.pointer_down(event.x, event.y)

    def _on_pointer_move(self, event):
        if self.viewport.pointer_move(event.x, event.y):
            self._redraw_graph()

    def _on_pointer_up(self, _event):
        self.viewport.pointer_up()

    def _on_wheel(self, event):
        # Tk's delta is positive when scrolling up; scrolling up zooms in
        self._zoom_at(event.x, event.y, -float(event.delta))

    def _zoom_at(self, x: float, y: float, delta_y: float):
        if self.viewport.wheel(x, y, delta_y):
            self._redraw_graph()

    # ---- conversations -------------------------------------------------

    def _refresh_conversations(self):
        user_id = self.loop.cfg.user_id
        if self.store is None or not user_id:
            self.conversation_combo.configure(values=[])
            return
        try:
            metas = self.store.list_conversations(user_id)
        except SQLAlchemyError as exc:
            APP_LOG.warning("listing conversations failed: %s", exc)
            return
        self._conversations = {}
        labels: List[str] = []
        for meta in metas:
            stamp = meta.updated_at.strftime("%b %d %H:%M") if meta.updated_at else "?"
            label = f"{meta.title} · {meta.node_count} nodes · {stamp}"
            self._conversations[meta.id] = meta
            labels.append(label)
        self._conversation_labels = dict(zip(labels, [m.id for m in metas]))
        self.conversation_combo.configure(values=labels)

    def load_selected_conversation(self):
        if self.store is None:
            return
        if self.loop.state is CaptureState.LISTENING:
            APP_LOG.info("stop listening before loading a conversation")
            return
        conversation_id = self._conversation_labels.get(self.conversation_var.get())
        if not conversation_id:
            return
        try:
            records = self.store.get_conversation_nodes(conversation_id)
        except SQLAlchemyError as exc:
            APP_LOG.warning("loading conversation %s failed: %s", conversation_id, exc)
            records = []
        self.loop.load(conversation_id, [record.as_dict() for record in records])
        self.viewport.reset()
        self._redraw_graph()
        APP_LOG.info("loaded conversation %s (%d nodes)", conversation_id, len(records))

    # ---- logging -------------------------------------------------------

    def _setup_logging_bridge(self):
        handler = TkLogHandler(self._queue_log)
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        APP_LOG.addHandler(handler)
        self._log_handler = handler

    def _queue_log(self, message: str):
        try:
            self.log_queue.put_nowait(message)
        except queue.Full:
            pass

    def _drain_logs(self):
        try:
            while True:
                msg = self.log_queue.get_nowait()
                self._append_log(msg)
        except queue.Empty:
            pass
        finally:
            self.after(LOG_POLL_MS, self._drain_logs)

    def _append_log(self, message: str):
        stamp = time.strftime("%H:%M:%S")
        self.log_text.insert(tk.END, f"[{stamp}] {message}\n")
        self.log_text.see(tk.END)

    def destroy(self):
        if self._log_handler:
            APP_LOG.removeHandler(self._log_handler)
            self._log_handler = None
        self.loop.shutdown(timeout=2.0)
        super().destroy()


def run_app() -> None:
    App().mainloop()


# ---------------------------------------------------------------------------
# Headless and service entrypoints


def headless_main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Headless capture: microphone → conversation map on stdout")
    parser.add_argument("--flush-seconds", type=float, default=None, help="Chunk flush period (default: 15)")
    parser.add_argument("--no-store", action="store_true", help="Do not persist conversations")
    parser.add_argument("--quiet", action="store_true", help="Reduce console logs")
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.quiet:
        logging.getLogger().setLevel(logging.WARNING)

    store = None if args.no_store else open_store()
    loop = build_capture_loop(store, args.flush_seconds)
    printed = {"count": 0}

    def _print_new_nodes(snap: CaptureSnapshot) -> None:
        for node in snap.nodes[printed["count"]:]:
            print(f"{node.index:>3}  {'  ' * node.branch_level}{'└ ' if node.branch_level else ''}{node.label}")
        printed["count"] = len(snap.nodes)

    loop.add_listener(_print_new_nodes)
    try:
        loop.start()
    except RuntimeError as exc:
        print(f"Cannot start listening: {exc}", file=sys.stderr)
        return 2

    print("Listening… press Ctrl+C to stop.")
    try:
        while loop.state is CaptureState.LISTENING:
            loop.process_pending()
            time.sleep(0.1)
    except KeyboardInterrupt:
        pass
    finally:
        loop.stop()
        # in-flight classifications still land (and print) before exit; bounded by the HTTP timeout
        loop.shutdown(timeout=loop.classifier.cfg.timeout_s + 5.0)
    return 0


def serve_main(argv: Optional[Sequence[str]] = None) -> int:
    import uvicorn

    from analysis_server import create_app

    parser = argparse.ArgumentParser(description="Run the chunk analysis service")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=SERVE_PORT)
    args = parser.parse_args(list(argv) if argv is not None else None)
    uvicorn.run(create_app(), host=args.host, port=args.port, log_level="info")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    configure_logging()
    args = list(argv if argv is not None else sys.argv)
    if len(args) > 1 and args[1] == "headless":
        return headless_main(args[2:])
    if len(args) > 1 and args[1] == "serve":
        return serve_main(args[2:])
    run_app()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
