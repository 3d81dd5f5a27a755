"""Append-only discourse graph: nodes, lane layout and elbow connectors."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional, Tuple

from talk_parameters import LayoutConfig

__all__ = [
    "DiscourseNode",
    "PositionedNode",
    "Segment",
    "DiscourseGraphModel",
    "next_branch_level",
]


def _new_node_id() -> str:
    return uuid.uuid4().hex[:12]


def next_branch_level(previous_level: Optional[int], on_track: bool) -> int:
    """Lane for a new node given the preceding node's lane and the topic decision."""
    if on_track:
        return 0
    if previous_level is not None and previous_level > 0:
        return previous_level
    return 1


@dataclass(frozen=True)
class DiscourseNode:
    id: str
    label: str
    branch_level: int
    index: int


@dataclass(frozen=True)
class PositionedNode:
    node: DiscourseNode
    x: float
    y: float

    @property
    def id(self) -> str:
        return self.node.id

    @property
    def label(self) -> str:
        return self.node.label


@dataclass(frozen=True)
class Segment:
    x1: float
    y1: float
    x2: float
    y2: float

    @property
    def is_vertical(self) -> bool:
        return self.x1 == self.x2

    @property
    def is_horizontal(self) -> bool:
        return self.y1 == self.y2


class DiscourseGraphModel:
    """Ordered nodes in conversational order. Nodes are only ever appended."""

    def __init__(self, layout: Optional[LayoutConfig] = None):
        self.layout = layout or LayoutConfig()
        self._nodes: List[DiscourseNode] = []

    @classmethod
    def from_records(
        cls,
        records: Iterable[Mapping[str, object]],
        layout: Optional[LayoutConfig] = None,
    ) -> "DiscourseGraphModel":
        """Rebuild a model from persisted node records (any order)."""
        model = cls(layout)
        ordered = sorted(records, key=lambda rec: int(rec.get("index", 0)))
        for rec in ordered:
            node_id = rec.get("id")
            model.append(
                str(rec.get("label") or ""),
                int(rec.get("branch_level", 0) or 0),
                node_id=str(node_id) if node_id else None,
            )
        return model

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def nodes(self) -> Tuple[DiscourseNode, ...]:
        return tuple(self._nodes)

    @property
    def last(self) -> Optional[DiscourseNode]:
        return self._nodes[-1] if self._nodes else None

    @property
    def last_label(self) -> Optional[str]:
        last = self.last
        return last.label if last else None

    @property
    def last_branch_level(self) -> Optional[int]:
        last = self.last
        return last.branch_level if last else None

    def labels(self) -> List[str]:
        return [node.label for node in self._nodes]

    def append(self, label: str, branch_level: int, node_id: Optional[str] = None) -> DiscourseNode:
        if branch_level < 0:
            raise ValueError(f"branch_level must be non-negative, got {branch_level}")
        node = DiscourseNode(
            id=node_id or _new_node_id(),
            label=label,
            branch_level=int(branch_level),
            index=len(self._nodes),
        )
        self._nodes.append(node)
        return node

    def append_decision(self, label: str, on_track: bool) -> DiscourseNode:
        return self.append(label, next_branch_level(self.last_branch_level, on_track))

    # ---- layout --------------------------------------------------------

    def position(self, node: DiscourseNode) -> Tuple[float, float]:
        lay = self.layout
        return (
            lay.origin_x + node.branch_level * lay.lane_pitch,
            lay.origin_y + node.index * lay.row_pitch,
        )

    def project(self) -> List[PositionedNode]:
        projected: List[PositionedNode] = []
        for node in self._nodes:
            x, y = self.position(node)
            projected.append(PositionedNode(node=node, x=x, y=y))
        return projected

    def connectors(self, projected: Optional[List[PositionedNode]] = None) -> List[Segment]:
        """Axis-aligned connector segments between consecutive node centers."""
        positioned = projected if projected is not None else self.project()
        half_w = self.layout.node_width / 2
        half_h = self.layout.node_height / 2
        segs: List[Segment] = []
        for prev, curr in zip(positioned, positioned[1:]):
            prev_cx, prev_cy = prev.x + half_w, prev.y + half_h
            curr_cx, curr_cy = curr.x + half_w, curr.y + half_h
            if curr.x == prev.x:
                segs.append(Segment(prev_cx, prev_cy, curr_cx, curr_cy))
            else:
                # elbow: down to the target row, then across to the target lane
                segs.append(Segment(prev_cx, prev_cy, prev_cx, curr_cy))
                segs.append(Segment(prev_cx, curr_cy, curr_cx, curr_cy))
        return segs

    def canvas_size(self) -> Tuple[float, float]:
        lay = self.layout
        height = max(lay.min_canvas_height, lay.origin_y + len(self._nodes) * lay.row_pitch + lay.bottom_margin)
        return lay.canvas_width, height
