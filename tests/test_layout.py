from builders import forked_session, linear_session
from hierarchy import TurnNode, build_hierarchy
from layout import (
    LayoutConfig,
    Recenterer,
    ViewTransform,
    bounds,
    center_on,
    constrain_drag,
    estimate_label_width,
    new_child_position,
    reconcile_layout,
    saved_positions,
    structural_layout,
)
from node_models import Position


def _tree() -> TurnNode:
    # root -> (a -> (a1, a2), b)
    return TurnNode(
        id="root",
        user_id="u-root",
        name="root",
        children=[
            TurnNode(
                id="a",
                user_id="u-a",
                name="a",
                children=[
                    TurnNode(id="a1", user_id="u-a1", name="a1", is_leaf=True),
                    TurnNode(id="a2", user_id="u-a2", name="a2", is_leaf=True),
                ],
            ),
            TurnNode(id="b", user_id="u-b", name="b", is_leaf=True),
        ],
    )


def test_structural_layout_centres_parents_over_leaf_slots():
    positions = structural_layout(_tree())

    assert positions["root"] == Position(0.0, 0.0)
    assert positions["a1"] == Position(-80.0, 200.0)
    assert positions["a2"] == Position(0.0, 200.0)
    assert positions["a"] == Position(-40.0, 100.0)
    assert positions["b"] == Position(80.0, 100.0)
    assert structural_layout(None) == {}


def test_reconcile_prefers_cache_then_saved_then_shifted_structure():
    cache = {"root": Position(500.0, 40.0)}
    saved = {"b": Position(7.0, 8.0)}
    positions = reconcile_layout(_tree(), cache, LayoutConfig(), saved)

    assert positions["root"] == Position(500.0, 40.0)
    assert positions["b"] == Position(7.0, 8.0)
    # a follows root's offset from its ideal spot, a1 follows a.
    assert positions["a"] == Position(460.0, 140.0)
    assert positions["a1"] == Position(420.0, 240.0)
    assert cache == {"root": Position(500.0, 40.0)}


def test_existing_positions_are_stable_when_a_branch_is_added():
    session, ids = forked_session()
    tree = build_hierarchy(session.root_message_id, session.message_map, None)
    first = reconcile_layout(tree, {})

    tree.children.append(TurnNode(id="new", user_id="u-new", name="new", is_leaf=True))
    second = reconcile_layout(tree, first)
    for turn_id, position in first.items():
        assert second[turn_id] == position
    assert "new" in second


def test_saved_positions_come_from_messages():
    session, ids = forked_session()
    saved = saved_positions(session.message_map)
    assert saved[ids["x_model"]] == Position(0.0, 100.0)
    assert len(saved) == len(session.message_map)


def test_new_child_position_rules():
    session, ids = linear_session(("Hi", "Hello"))
    model_id = ids[0][1]

    assert new_child_position(None, session.message_map) == Position(0.0, 0.0)
    assert new_child_position("missing", session.message_map) == Position(0.0, 0.0)
    assert new_child_position(model_id, session.message_map) == Position(0.0, 100.0)


def test_new_child_position_uses_pluggable_measure():
    session, ids = forked_session()
    position = new_child_position(ids["root_model"], session.message_map, measure=lambda label: 10.0)
    # Rightmost sibling is the Oslo branch at x=78.
    assert position == Position(88.0, 100.0)
    assert estimate_label_width("") == 0.0
    assert estimate_label_width("abcd", 2.0) == 8.0


def test_constrain_drag_keeps_time_flowing_down():
    tree = _tree()
    positions = structural_layout(tree)

    above_parent = constrain_drag("a", 3.0, -500.0, tree, positions)
    assert above_parent == Position(3.0, 20.0)
    below_children = constrain_drag("a", 3.0, 900.0, tree, positions)
    assert below_children == Position(3.0, 180.0)
    assert constrain_drag("a", 3.0, 150.0, tree, positions) == Position(3.0, 150.0)
    assert constrain_drag("unknown", 1.0, 2.0, tree, positions) == Position(1.0, 2.0)


def test_recenterer_only_moves_when_head_changes():
    positions = {"h1": Position(100.0, 50.0), "h2": Position(-20.0, 300.0)}
    recenterer = Recenterer()

    assert recenterer.update("h1", positions, 800, 600) == ViewTransform(300.0, 250.0, 1.0)
    assert recenterer.update("h1", positions, 800, 600) is None
    assert recenterer.update("pending", positions, 800, 600) is None
    assert recenterer.update("h2", positions, 800, 600) == center_on(positions["h2"], 800, 600)

    recenterer.reset()
    assert recenterer.update("h2", positions, 800, 600) is not None


def test_view_transform_and_bounds():
    transform = ViewTransform(10.0, 20.0, 2.0)
    assert transform.apply(Position(1.0, 2.0)) == (12.0, 24.0)
    assert bounds({}) == (0.0, 0.0, 0.0, 0.0)
    assert bounds({"a": Position(-1.0, 5.0), "b": Position(3.0, -2.0)}) == (-1.0, -2.0, 3.0, 5.0)
