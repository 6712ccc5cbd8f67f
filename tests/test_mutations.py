import pytest

from builders import add_turn, forked_session, linear_session
from mutations import (
    ConnectionRejected,
    append_chunk,
    append_turn,
    apply_summary,
    can_connect,
    check_integrity,
    connect,
    delete_session,
    descendant_ids,
    disconnect,
    edit_and_fork,
    edit_replace,
    new_session,
    owning_user_id,
    paired_id,
    reposition,
    set_head,
)
from node_models import Attachment, Position
from threads import get_thread


def test_append_turn_on_empty_session_creates_root_and_title():
    session = new_session(now=5)
    updated = append_turn(session, None, "Explain branching conversations in detail", now=10)

    assert session.message_map == {}
    assert len(updated.message_map) == 2
    model = updated.message_map[updated.current_head_id]
    user = updated.message_map[model.parent_id]
    assert updated.root_message_id == user.id
    assert user.children_ids == [model.id]
    assert model.content == ""
    assert updated.title == "Explain branching conversation"
    assert user.timestamp == 10 and model.timestamp == 11
    assert user.position == model.position == Position(0.0, 0.0)
    assert check_integrity(updated) == []


def test_image_only_first_turn_is_titled_image():
    empty = new_session()
    assert empty.is_empty
    updated = append_turn(empty, None, "", [Attachment("image/png", "AAAA")])
    assert updated.title == "Image"
    assert not updated.is_empty


def test_append_turn_rejects_unknown_parent_and_second_root():
    session, ids = linear_session(("Hi", "Hello"))
    assert append_turn(session, "missing", "x") is session
    assert append_turn(session, None, "another root") is session


def test_append_turn_keeps_symmetry_and_timestamps_monotonic():
    session, ids = forked_session()
    stamps = sorted(message.timestamp for message in session.message_map.values())

    assert check_integrity(session) == []
    assert len(set(stamps)) == len(stamps)
    assert session.message_map[ids["root_model"]].children_ids == [ids["x_user"], ids["y_user"]]


def test_new_child_is_placed_right_of_its_siblings():
    session, ids = forked_session()
    x_position = session.message_map[ids["x_user"]].position
    y_position = session.message_map[ids["y_user"]].position

    assert x_position == Position(0.0, 100.0)
    # "Go to Lisbon" is 12 characters wide at 6.5 per character.
    assert y_position == Position(78.0, 100.0)
    assert session.message_map[ids["y_model"]].position == y_position


def test_append_turn_records_comparison_tracks_as_provenance():
    session, ids = forked_session()
    updated = append_turn(session, ids["y_model"], "Compare", None, [ids["x_model"], ids["y_model"]])
    user = updated.message_map[updated.message_map[updated.current_head_id].parent_id]

    assert user.attached_track_ids == [ids["x_model"], ids["y_model"]]
    assert user.connections == []


def test_edit_replace_removes_subtree_and_keeps_parent():
    session, ids = linear_session(("a", "1"), ("b", "2"), ("c", "3"))
    (_, m1), (u2, m2), (u3, m3) = ids

    updated = edit_replace(session, u2, "B!")
    for removed in (u2, m2, u3, m3):
        assert removed not in updated.message_map
    new_model = updated.message_map[updated.current_head_id]
    new_user = updated.message_map[new_model.parent_id]
    assert new_user.content == "B!"
    assert new_user.parent_id == m1
    assert updated.message_map[m1].children_ids == [new_user.id]
    assert updated.root_message_id == session.root_message_id
    assert check_integrity(updated) == []


def test_edit_replace_of_root_updates_root_id():
    session, ids = linear_session(("a", "1"), ("b", "2"))
    updated = edit_replace(session, ids[0][1], "A!")

    assert len(updated.message_map) == 2
    assert updated.root_message_id != session.root_message_id
    assert updated.message_map[updated.root_message_id].content == "A!"
    assert check_integrity(updated) == []


def test_edit_replace_keeps_attachments_links_and_position():
    session, ids = forked_session()
    session = connect(session, ids["x_model"], ids["y_user"])
    session = reposition(session, ids["y_model"], 300.0, 180.0)
    updated = edit_replace(session, ids["y_model"], "Go to Bergen")

    new_user = updated.message_map[updated.message_map[updated.current_head_id].parent_id]
    assert new_user.connections == [ids["x_model"]]
    assert new_user.position == Position(300.0, 180.0)
    assert updated.message_map[ids["root_model"]].children_ids[-1] == new_user.id


def test_edit_replace_prunes_links_into_deleted_nodes():
    session, ids = forked_session()
    session = connect(session, ids["x_model"], ids["y_model"])
    updated = edit_replace(session, ids["x_user"], "Go to Porto")

    assert updated.message_map[ids["y_model"]].connections == []
    assert check_integrity(updated) == []


def test_edit_and_fork_adds_exactly_one_turn_and_deletes_nothing():
    session, ids = forked_session()
    updated = edit_and_fork(session, ids["x_model"], "Go to Madrid")

    assert len(updated.message_map) == len(session.message_map) + 2
    assert set(session.message_map) <= set(updated.message_map)
    new_model = updated.message_map[updated.current_head_id]
    new_user = updated.message_map[new_model.parent_id]
    assert new_user.parent_id == ids["root_model"]
    thread = get_thread(ids["x_model"], updated.message_map)
    assert thread[0].id == updated.root_message_id
    assert check_integrity(updated) == []


def test_edit_and_fork_refuses_first_turn():
    session, ids = linear_session(("Hi", "Hello"))
    assert edit_and_fork(session, ids[0][1], "Hey") is session
    assert edit_and_fork(session, "missing", "Hey") is session


def test_connect_is_idempotent_and_updates_target_only():
    session, ids = forked_session()
    once = connect(session, ids["x_model"], ids["y_model"], now=99)
    twice = connect(once, ids["x_model"], ids["y_model"])

    assert twice is once
    assert once.message_map[ids["y_model"]].connections == [ids["x_model"]]
    assert once.message_map[ids["x_model"]].connections == []
    assert once.last_modified == 99
    assert session.message_map[ids["y_model"]].connections == []


def test_connect_rejects_both_ancestor_directions():
    session, ids = linear_session(("root", "reply"))
    root, child = ids[0]

    with pytest.raises(ConnectionRejected) as cycle:
        connect(session, child, root)
    assert cycle.value.reason == "cycle"
    with pytest.raises(ConnectionRejected) as redundant:
        connect(session, root, child)
    assert redundant.value.reason == "redundant"


def test_connect_down_a_linear_chain_is_rejected():
    session, ids = linear_session(("A", "B"), ("C", "D"))
    (a, b), (c, d) = ids

    assert can_connect(session, d, b) == "cycle"
    with pytest.raises(ConnectionRejected) as rejected:
        connect(session, d, b)
    assert "Cycle detected" in str(rejected.value)
    assert session.message_map[b].connections == []


def test_connect_self_is_a_noop_and_missing_nodes_raise():
    session, ids = forked_session()
    assert connect(session, ids["x_model"], ids["x_model"]) is session
    with pytest.raises(ConnectionRejected) as missing:
        connect(session, ids["x_model"], "gone")
    assert missing.value.reason == "missing"


def test_disconnect_removes_only_that_link():
    session, ids = forked_session()
    session, z_user, z_model = add_turn(session, ids["root_model"], "Go to Rome", "Rome has ruins.")
    session = connect(session, ids["x_model"], z_model)
    session = connect(session, ids["y_model"], z_model)

    updated = disconnect(session, ids["x_model"], z_model)
    assert updated.message_map[z_model].connections == [ids["y_model"]]
    assert disconnect(updated, ids["x_model"], z_model) is updated


def test_set_head_and_reposition_mirror_the_turn():
    session, ids = forked_session()
    assert set_head(session, "missing") is session
    focused = set_head(session, ids["x_model"])
    assert focused.current_head_id == ids["x_model"]
    assert set_head(focused, ids["x_model"]) is focused

    moved = reposition(session, ids["x_user"], 5.0, 140.0)
    assert moved.message_map[ids["x_user"]].position == Position(5.0, 140.0)
    assert moved.message_map[ids["x_model"]].position == Position(5.0, 140.0)
    assert moved.last_modified == session.last_modified


def test_stream_and_summary_reducers_ignore_vanished_targets():
    session, ids = linear_session(("Hi", ""))
    user_id, model_id = ids[0]

    streamed = append_chunk(append_chunk(session, model_id, "Hel"), model_id, "lo")
    assert streamed.message_map[model_id].content == "Hello"
    assert append_chunk(session, "gone", "x") is session
    assert append_chunk(session, model_id, "") is session

    labelled = apply_summary(streamed, user_id, "  Greeting ")
    assert labelled.message_map[user_id].summary == "Greeting"
    assert apply_summary(streamed, user_id, "   ") is streamed
    assert apply_summary(streamed, "gone", "x") is streamed


def test_turn_helpers():
    session, ids = forked_session()
    assert owning_user_id(session, ids["x_model"]) == ids["x_user"]
    assert owning_user_id(session, ids["x_user"]) == ids["x_user"]
    assert paired_id(session, ids["x_user"]) == ids["x_model"]
    assert paired_id(session, ids["x_model"]) == ids["x_user"]
    assert descendant_ids(session, ids["root_model"]) == {
        ids["root_model"], ids["x_user"], ids["x_model"], ids["y_user"], ids["y_model"],
    }


def test_delete_session_and_integrity_report():
    first, second = new_session(), new_session()
    assert delete_session([first, second], first.id) == [second]

    session, ids = forked_session()
    session.message_map[ids["root_model"]].children_ids.append(ids["x_user"])
    problems = check_integrity(session)
    assert any("not listed exactly once" in problem for problem in problems)
