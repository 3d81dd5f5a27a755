from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional, Tuple

__all__ = ["ViewportTransform", "ViewportController", "ZOOM_STEP", "MIN_SCALE", "MAX_SCALE"]

ZOOM_STEP = 0.1
MIN_SCALE = 0.5
MAX_SCALE = 3.0


@dataclass(frozen=True)
class ViewportTransform:
    scale: float = 1.0
    offset_x: float = 0.0
    offset_y: float = 0.0

    def __post_init__(self):
        if self.scale <= 0:
            raise ValueError(f"scale must be positive, got {self.scale}")

    def to_model(self, vx: float, vy: float) -> Tuple[float, float]:
        return (vx - self.offset_x) / self.scale, (vy - self.offset_y) / self.scale

    def to_view(self, mx: float, my: float) -> Tuple[float, float]:
        return mx * self.scale + self.offset_x, my * self.scale + self.offset_y


def _sign(value: float) -> int:
    if value > 0:
        return 1
    if value < 0:
        return -1
    return 0


class ViewportController:
    """Pan/zoom state driven by pointer gestures in viewport coordinates."""

    def __init__(self, transform: Optional[ViewportTransform] = None):
        self.transform = transform or ViewportTransform()
        self._drag_last: Optional[Tuple[float, float]] = None

    @property
    def dragging(self) -> bool:
        return self._drag_last is not None

    def reset(self) -> None:
        self.transform = ViewportTransform()
        self._drag_last = None

    def pointer_down(self, x: float, y: float) -> None:
        self._drag_last = (x, y)

    def pointer_move(self, x: float, y: float) -> bool:
        """Pan by the delta since the last pointer position; True when the transform changed."""
        if self._drag_last is None:
            return False
        last_x, last_y = self._drag_last
        dx, dy = x - last_x, y - last_y
        self._drag_last = (x, y)
        if dx == 0 and dy == 0:
            return False
        t = self.transform
        self.transform = replace(t, offset_x=t.offset_x + dx, offset_y=t.offset_y + dy)
        return True

    def pointer_up(self) -> None:
        self._drag_last = None

    pointer_leave = pointer_up

    def wheel(self, x: float, y: float, delta_y: float) -> bool:
        """Zoom one step at (x, y), keeping the model point under the cursor fixed."""
        old = self.transform
        new_scale = min(MAX_SCALE, max(MIN_SCALE, old.scale + _sign(-delta_y) * ZOOM_STEP))
        if new_scale == old.scale:
            return False
        model_x, model_y = old.to_model(x, y)
        self.transform = ViewportTransform(
            scale=new_scale,
            offset_x=x - model_x * new_scale,
            offset_y=y - model_y * new_scale,
        )
        return True
