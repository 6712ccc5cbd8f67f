"""
Layout for the turn graph.

Positions come from three sources, in priority order:
- a cached position from an earlier render (or a drag)
- the position saved on the message itself
- a tidy structural layout (depth -> y, sibling order -> x), shifted by the
  offset the parent already received so a moved subtree keeps its new
  children with it
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional

from hierarchy import TurnNode, iter_with_parent
from node_models import Message, Position

Measure = Callable[[str], float]


@dataclass(frozen=True)
class LayoutConfig:
    # Horizontal distance between neighbouring leaf slots.
    node_width: float = 80.0

    # Vertical distance between a parent row and its children.
    row_height: float = 100.0

    # Minimum vertical gap kept between a dragged node and its parent/children.
    drag_buffer: float = 20.0

    # Approximate rendered width of one label character (font size 10 * 0.65).
    char_width: float = 6.5


def estimate_label_width(label: str, char_width: float = LayoutConfig.char_width) -> float:
    if not label:
        return 0.0
    return len(label) * char_width


def structural_layout(tree: Optional[TurnNode], cfg: LayoutConfig | None = None) -> Dict[str, Position]:
    """Leaves take left-to-right slots, parents sit centred above their children."""
    cfg = cfg or LayoutConfig()
    if tree is None:
        return {}

    slots: Dict[str, float] = {}
    depths: Dict[str, int] = {}
    next_leaf_slot = 0

    def place(node: TurnNode, depth: int) -> tuple[float, float]:
        nonlocal next_leaf_slot
        depths[node.id] = depth
        if not node.children:
            slots[node.id] = float(next_leaf_slot)
            next_leaf_slot += 1
            return slots[node.id], slots[node.id]
        spans = [place(child, depth + 1) for child in node.children]
        min_slot = min(span[0] for span in spans)
        max_slot = max(span[1] for span in spans)
        slots[node.id] = (min_slot + max_slot) / 2.0
        return min_slot, max_slot

    place(tree, 0)
    root_slot = slots[tree.id]
    return {
        node_id: Position((slot - root_slot) * cfg.node_width, depths[node_id] * cfg.row_height)
        for node_id, slot in slots.items()
    }


def saved_positions(message_map: Mapping[str, Message]) -> Dict[str, Position]:
    return {
        message_id: message.position
        for message_id, message in message_map.items()
        if message.position is not None
    }


def reconcile_layout(
    tree: Optional[TurnNode],
    cache: Mapping[str, Position],
    cfg: LayoutConfig | None = None,
    saved: Optional[Mapping[str, Position]] = None,
) -> Dict[str, Position]:
    """Assign every turn a stable position; returns a new map, inputs untouched."""
    cfg = cfg or LayoutConfig()
    ideal = structural_layout(tree, cfg)
    saved = saved or {}
    placed: Dict[str, Position] = {}
    for node, parent in iter_with_parent(tree):
        if node.id in cache:
            placed[node.id] = cache[node.id]
            continue
        if node.id in saved:
            placed[node.id] = saved[node.id]
            continue
        position = ideal[node.id]
        if parent is not None:
            parent_ideal = ideal[parent.id]
            parent_actual = placed[parent.id]
            position = Position(
                position.x + parent_actual.x - parent_ideal.x,
                position.y + parent_actual.y - parent_ideal.y,
            )
        placed[node.id] = position
    return placed


def _sibling_label(message: Message) -> str:
    return message.summary or (message.content or "")[:18]


def new_child_position(
    parent_id: Optional[str],
    message_map: Mapping[str, Message],
    cfg: LayoutConfig | None = None,
    measure: Measure | None = None,
) -> Position:
    """Initial position for a turn about to be created under ``parent_id``."""
    cfg = cfg or LayoutConfig()
    measure = measure or (lambda label: estimate_label_width(label, cfg.char_width))
    parent = message_map.get(parent_id) if parent_id else None
    if parent is None:
        return Position(0.0, 0.0)
    parent_position = parent.position or Position(0.0, 0.0)
    row_y = parent_position.y + cfg.row_height

    siblings = [message_map[child_id] for child_id in parent.children_ids if child_id in message_map]
    if not siblings:
        return Position(parent_position.x, row_y)

    rightmost = siblings[0]
    for sibling in siblings[1:]:
        if (sibling.position or Position(0.0, 0.0)).x > (rightmost.position or Position(0.0, 0.0)).x:
            rightmost = sibling
    rightmost_x = rightmost.position.x if rightmost.position else 0.0
    return Position(rightmost_x + measure(_sibling_label(rightmost)), row_y)


def constrain_drag(
    node_id: str,
    x: float,
    y: float,
    tree: Optional[TurnNode],
    positions: Mapping[str, Position],
    cfg: LayoutConfig | None = None,
) -> Position:
    """Clamp a drag so time keeps flowing downward.

    A node stays below its parent and a parent stays above every child, each
    with ``drag_buffer`` of clearance.
    """
    cfg = cfg or LayoutConfig()
    for node, parent in iter_with_parent(tree):
        if node.id != node_id:
            continue
        if parent is not None and parent.id in positions:
            y = max(y, positions[parent.id].y + cfg.drag_buffer)
        child_ys = [positions[child.id].y for child in node.children or [] if child.id in positions]
        if child_ys:
            y = min(y, min(child_ys) - cfg.drag_buffer)
        break
    return Position(x, y)


@dataclass(frozen=True)
class ViewTransform:
    x: float = 0.0
    y: float = 0.0
    k: float = 1.0

    def apply(self, position: Position) -> tuple[float, float]:
        return self.x + self.k * position.x, self.y + self.k * position.y


def center_on(position: Position, width: float, height: float) -> ViewTransform:
    """Unit-scale transform that puts ``position`` in the middle of the viewport."""
    return ViewTransform(width / 2 - position.x, height / 2 - position.y, 1.0)


class Recenterer:
    """Recomputes the view transform only when the focused head changes."""

    def __init__(self) -> None:
        self.last_head_id: Optional[str] = None

    def reset(self) -> None:
        self.last_head_id = None

    def update(
        self,
        head_id: Optional[str],
        positions: Mapping[str, Position],
        width: float,
        height: float,
    ) -> Optional[ViewTransform]:
        if head_id is None or head_id == self.last_head_id:
            return None
        position = positions.get(head_id)
        if position is None:
            return None
        self.last_head_id = head_id
        return center_on(position, width, height)


def bounds(positions: Mapping[str, Position]) -> tuple[float, float, float, float]:
    """(min_x, min_y, max_x, max_y) of a position map; zeros when empty."""
    if not positions:
        return 0.0, 0.0, 0.0, 0.0
    xs = [position.x for position in positions.values()]
    ys = [position.y for position in positions.values()]
    return min(xs), min(ys), max(xs), max(ys)
