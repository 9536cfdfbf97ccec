import pytest

from sessions import SessionActive, SessionStore, Step


def test_start_and_get():
    sessions = SessionStore()
    s = sessions.start(1, "store", Step.ASK_ACCOUNT_KEY)
    assert sessions.get(1) is s
    assert 1 in sessions
    assert len(sessions) == 1
    assert s.draft == {}
    assert s.pending is None


def test_second_start_is_rejected_not_overwritten():
    sessions = SessionStore()
    first = sessions.start(1, "store", Step.ASK_ACCOUNT_KEY)
    first.step = Step.ASK_EMAIL

    with pytest.raises(SessionActive) as exc:
        sessions.start(1, "adddate", Step.ASK_USER)

    assert exc.value.session is first
    assert sessions.get(1) is first
    assert sessions.get(1).step is Step.ASK_EMAIL


def test_owners_are_independent():
    sessions = SessionStore()
    sessions.start(1, "store", Step.ASK_ACCOUNT_KEY)
    sessions.start(2, "adddate", Step.ASK_USER)
    assert sessions.get(1).flow == "store"
    assert sessions.get(2).flow == "adddate"


def test_discard():
    sessions = SessionStore()
    sessions.start(1, "store", Step.ASK_ACCOUNT_KEY)
    assert sessions.discard(1) is True
    assert sessions.discard(1) is False
    assert sessions.get(1) is None


def test_discard_only_matching_session():
    sessions = SessionStore()
    old = sessions.start(1, "store", Step.ASK_ACCOUNT_KEY)
    sessions.discard(1)
    new = sessions.start(1, "store", Step.ASK_ACCOUNT_KEY)

    assert sessions.discard(1, old) is False
    assert sessions.get(1) is new
    assert sessions.discard(1, new) is True
