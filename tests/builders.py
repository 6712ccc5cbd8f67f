from typing import Optional

from mutations import append_chunk, append_turn, new_session
from node_models import Session


def add_turn(
    session: Session,
    parent_id: Optional[str],
    prompt: str,
    reply: Optional[str] = None,
    *,
    now: Optional[int] = None,
) -> tuple[Session, str, str]:
    updated = append_turn(session, parent_id, prompt, now=now)
    model_id = updated.current_head_id
    user_id = updated.message_map[model_id].parent_id
    if reply:
        updated = append_chunk(updated, model_id, reply)
    return updated, user_id, model_id


def linear_session(*exchanges: tuple[str, str]) -> tuple[Session, list[tuple[str, str]]]:
    session = new_session(now=1_000)
    parent_id = None
    ids = []
    for prompt, reply in exchanges:
        session, user_id, model_id = add_turn(session, parent_id, prompt, reply)
        ids.append((user_id, model_id))
        parent_id = model_id
    return session, ids


def forked_session() -> tuple[Session, dict[str, str]]:
    """Root turn R with two branches X and Y hanging off its reply."""
    session = new_session(now=1_000)
    session, root_user, root_model = add_turn(session, None, "Plan a trip", "Where to?")
    session, x_user, x_model = add_turn(session, root_model, "Go to Lisbon", "Lisbon has trams.")
    session, y_user, y_model = add_turn(session, root_model, "Go to Oslo", "Oslo has fjords.")
    ids = {
        "root_user": root_user,
        "root_model": root_model,
        "x_user": x_user,
        "x_model": x_model,
        "y_user": y_user,
        "y_model": y_model,
    }
    return session, ids
