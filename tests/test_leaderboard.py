import pytest
from sqlmodel import Session

from memory_party.database import engine
from memory_party.errors import ValidationError
from memory_party.leaderboard import leaderboard_query, rank_scores, submit_score


def test_rank_keeps_ten_fastest_in_order():
    records = [{"name": f"p{index}", "time_ms": time} for index, time in enumerate([900, 100, 1100, 300, 500, 700, 200, 1000, 400, 800, 600])]

    ranked = rank_scores(records)

    assert [entry["time_ms"] for entry in ranked] == [100, 200, 300, 400, 500, 600, 700, 800, 900, 1000]


def test_submitted_scores_are_limited_by_the_live_query(make_event):
    event_id = make_event()
    with Session(engine) as session:
        for index, time_ms in enumerate(range(11000, 0, -1000)):
            submit_score(session, event_id, f"Guest {index}", time_ms)

        board = leaderboard_query(event_id)(session)

    assert len(board) == 10
    assert [entry["time_ms"] for entry in board] == list(range(1000, 11000, 1000))


def test_repeated_names_are_kept(make_event):
    event_id = make_event()
    with Session(engine) as session:
        submit_score(session, event_id, "Anna", 5000)
        submit_score(session, event_id, "Anna", 4000)

        board = leaderboard_query(event_id)(session)

    assert [entry["name"] for entry in board] == ["Anna", "Anna"]


@pytest.mark.parametrize("name", ["", "   ", None, 5, ["Anna"]])
def test_empty_or_non_text_name_is_rejected(make_event, name):
    event_id = make_event()
    with Session(engine) as session:
        with pytest.raises(ValidationError):
            submit_score(session, event_id, name, 1234)
        assert leaderboard_query(event_id)(session) == []
