from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence, Tuple

from discourse_graph import DiscourseGraphModel, PositionedNode, Segment
from viewport import ViewportTransform

__all__ = ["GraphStyle", "GraphRenderer"]


@dataclass(frozen=True)
class GraphStyle:
    background: str = "#111827"
    connector: str = "#9ca3af"
    connector_width: float = 2.0
    connector_dash: Tuple[int, int] = (6, 6)
    node_fill: str = "#3b1d2e"
    node_outline: str = "#f472b6"
    branch_fill: str = "#1e2a44"
    branch_outline: str = "#60a5fa"
    label_color: str = "#e5e7eb"
    font_family: str = "Helvetica"
    font_size: int = 11


class GraphRenderer:
    """Redraws the whole graph from {nodes, transform} onto a Tk-compatible canvas."""

    def __init__(self, canvas, style: GraphStyle = GraphStyle()):
        self.canvas = canvas
        self.style = style

    def render(self, model: DiscourseGraphModel, transform: ViewportTransform) -> None:
        positioned = model.project()
        segments = model.connectors(positioned)
        self.canvas.delete("all")
        self._draw_connectors(segments, transform)
        self._draw_nodes(positioned, model, transform)
        width, height = model.canvas_size()
        right, bottom = transform.to_view(width, height)
        left, top = transform.to_view(0, 0)
        self.canvas.configure(scrollregion=(min(left, 0), min(top, 0), right, bottom))

    def _draw_connectors(self, segments: Sequence[Segment], t: ViewportTransform) -> List[int]:
        st = self.style
        ids: List[int] = []
        for seg in segments:
            x1, y1 = t.to_view(seg.x1, seg.y1)
            x2, y2 = t.to_view(seg.x2, seg.y2)
            ids.append(
                self.canvas.create_line(
                    x1, y1, x2, y2,
                    fill=st.connector,
                    width=st.connector_width * t.scale,
                    dash=st.connector_dash,
                    tags=("connector",),
                )
            )
        return ids

    def _draw_nodes(
        self,
        positioned: Sequence[PositionedNode],
        model: DiscourseGraphModel,
        t: ViewportTransform,
    ) -> None:
        st = self.style
        lay = model.layout
        font = (st.font_family, max(6, round(st.font_size * t.scale)))
        for pn in positioned:
            on_main = pn.node.branch_level == 0
            x1, y1 = t.to_view(pn.x, pn.y)
            x2, y2 = t.to_view(pn.x + lay.node_width, pn.y + lay.node_height)
            self.canvas.create_rectangle(
                x1, y1, x2, y2,
                fill=st.node_fill if on_main else st.branch_fill,
                outline=st.node_outline if on_main else st.branch_outline,
                tags=("node", f"node:{pn.id}"),
            )
            cx, cy = t.to_view(pn.x + lay.node_width / 2, pn.y + lay.node_height / 2)
            self.canvas.create_text(
                cx, cy,
                text=pn.label,
                fill=st.label_color,
                font=font,
                anchor="center",
                width=max(10.0, (lay.node_width - 12) * t.scale),
                tags=("label", f"label:{pn.id}"),
            )
