from builders import add_turn, forked_session, linear_session
from mutations import connect
from threads import (
    COMPARISON_HEADER,
    MEMORY_FOOTER,
    MEMORY_HEADER,
    ancestor_ids,
    find_lca,
    get_thread,
    is_ancestor,
    path_to_ancestor,
    request_history,
    transcript,
)


def test_joke_scenario_thread_contents_and_roles():
    session, [(_, h1)] = linear_session(("Hi", "Hello"))
    session, u2, m2 = add_turn(session, h1, "Tell me a joke")

    assert session.message_map[u2].parent_id == h1
    assert session.message_map[m2].parent_id == u2
    assert session.current_head_id == m2

    thread = get_thread(m2, session.message_map, False)
    assert [message.content for message in thread] == ["Hi", "Hello", "Tell me a joke", ""]
    assert [message.role for message in thread] == ["user", "model", "user", "model"]


def test_thread_follows_parent_chain_and_has_depth_plus_one_messages():
    session, ids = linear_session(("a", "1"), ("b", "2"), ("c", "3"))
    leaf = ids[-1][1]
    thread = get_thread(leaf, session.message_map)

    assert len(thread) == 6
    assert thread[0].parent_id is None
    for parent, child in zip(thread, thread[1:]):
        assert child.parent_id == parent.id
    assert thread[-1].id == leaf


def test_thread_stops_at_missing_node_and_handles_empty_head():
    session, ids = linear_session(("a", "1"), ("b", "2"))
    message_map = dict(session.message_map)
    del message_map[ids[0][1]]

    thread = get_thread(ids[1][1], message_map)
    assert [message.content for message in thread] == ["b", "2"]
    assert get_thread(None, session.message_map) == []
    assert get_thread("missing", session.message_map) == []


def test_lca_is_common_ancestor_and_deepest():
    session, ids = forked_session()
    message_map = session.message_map

    lca = find_lca(ids["x_model"], ids["y_model"], message_map)
    assert lca == ids["root_model"]
    assert is_ancestor(lca, ids["x_model"], message_map)
    assert is_ancestor(lca, ids["y_model"], message_map)
    common = ancestor_ids(ids["x_model"], message_map) & ancestor_ids(ids["y_model"], message_map)
    assert common == ancestor_ids(lca, message_map)


def test_lca_of_node_on_own_path_is_the_upper_node():
    session, ids = linear_session(("a", "1"), ("b", "2"))
    assert find_lca(ids[0][0], ids[1][1], session.message_map) == ids[0][0]
    assert find_lca(ids[1][1], ids[1][1], session.message_map) == ids[1][1]


def test_path_to_ancestor_is_newest_first_and_excludes_the_ancestor():
    session, ids = forked_session()
    path = path_to_ancestor(ids["x_model"], ids["root_model"], session.message_map)
    assert [message.id for message in path] == [ids["x_model"], ids["x_user"]]


def test_cross_branch_memory_injects_unique_history_only():
    session, ids = forked_session()
    session = connect(session, ids["x_model"], ids["y_model"])

    thread = get_thread(ids["y_model"], session.message_map, True)
    injected = thread[-1].content
    assert injected.startswith("\n" + MEMORY_HEADER)
    assert MEMORY_FOOTER in injected
    assert "[User]: Go to Lisbon" in injected
    assert "[AI]: Lisbon has trams." in injected
    assert "Plan a trip" not in injected
    assert "Where to?" not in injected
    assert injected.endswith("Oslo has fjords.")


def test_memory_injection_leaves_stored_messages_untouched():
    session, ids = forked_session()
    session = connect(session, ids["x_model"], ids["y_model"])
    get_thread(ids["y_model"], session.message_map, True)

    assert session.message_map[ids["y_model"]].content == "Oslo has fjords."
    plain = get_thread(ids["y_model"], session.message_map, False)
    assert plain[-1].content == "Oslo has fjords."


def test_transcript_labels():
    session, ids = linear_session(("Hi", "Hello"))
    thread = get_thread(ids[0][1], session.message_map)
    assert transcript(thread) == "[User]: Hi\n[AI]: Hello"
    assert transcript(thread, bracketed=False) == "User: Hi\nAI: Hello"


def test_request_history_prepends_comparison_tracks_to_last_message():
    session, ids = forked_session()
    session, user_id, _ = add_turn(session, ids["y_model"], "Which is better?")

    history = request_history(session, user_id, [ids["x_model"], ids["y_model"]])
    last = history[-1]
    assert last.id == user_id
    assert COMPARISON_HEADER in last.content
    assert "[Track A]:\nUser: Plan a trip" in last.content
    assert "[Track B]:" in last.content
    assert "AI: Oslo has fjords." in last.content
    assert last.content.endswith("</system_context>\n\nWhich is better?")
    assert session.message_map[user_id].content == "Which is better?"


def test_request_history_without_tracks_is_the_plain_thread():
    session, ids = linear_session(("Hi", "Hello"), ("More", ""))
    history = request_history(session, ids[1][0])
    assert [message.content for message in history] == ["Hi", "Hello", "More"]
