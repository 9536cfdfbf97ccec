import pytest

from conftest import run
from sessions import Step
from wizard import PROMPTS, DateWizard

ADMIN = 7


@pytest.fixture
def wizard(store, sessions):
    run(store.set("users/42/balance", 0))
    run(store.set("Account-3/plan/1 Month", 100))
    w = DateWizard(store, sessions)
    w.start(ADMIN)
    return w


def feed(wizard, *texts):
    return [run(wizard.handle(ADMIN, t)) for t in texts]


def step(wizard):
    return wizard.sessions.get(ADMIN).step


def test_start_prompt(store, sessions):
    assert DateWizard(store, sessions).start(1) == PROMPTS[Step.ASK_USER]


def test_sets_date_and_backfills_defaults(wizard, store, sessions):
    replies = feed(wizard, "42", "Account-3", "2024-06-01")

    assert replies[-1].done is True
    assert sessions.get(ADMIN) is None
    assert run(store.get("users/42/accounts/Account-3")) == {
        "purchaseDate": "2024-06-01",
        "plan": "1 Month",
        "chance": 3,
    }


def test_keeps_existing_plan_and_chance(wizard, store):
    run(store.set("users/42/accounts/Account-3", {"plan": "3 Months", "chance": 0, "purchaseDate": "2024-01-01"}))
    feed(wizard, "42", "account-3", "2024-02-29")
    assert run(store.get("users/42/accounts/Account-3")) == {
        "plan": "3 Months",
        "chance": 0,
        "purchaseDate": "2024-02-29",
    }


@pytest.mark.parametrize("uid", ["abc", "-1", "", "99"])
def test_bad_or_unknown_user_reprompts(wizard, uid):
    run(wizard.handle(ADMIN, uid))
    assert step(wizard) is Step.ASK_USER


@pytest.mark.parametrize("key", ["Account3", "Account-4"])
def test_bad_or_unknown_account_reprompts(wizard, key):
    feed(wizard, "42")
    run(wizard.handle(ADMIN, key))
    assert step(wizard) is Step.ASK_ACCOUNT


@pytest.mark.parametrize("value", ["2024/06/01", "01-06-2024", "2024-6-1", "2024-13-01", "2023-02-29", "tomorrow"])
def test_bad_date_reprompts_without_writing(wizard, store, value):
    feed(wizard, "42", "Account-3")
    reply = run(wizard.handle(ADMIN, value))
    assert reply.done is False
    assert step(wizard) is Step.ASK_DATE
    assert run(store.get("users/42/accounts")) is None
