from types import SimpleNamespace

import pytest
from telegram.error import Forbidden

import bot
from conftest import FakeFetcher, run
from limiter import CodeLimiter, ThrottleStore
from wizard import AccountWizard, DateWizard

ADMIN = 7
USER = 42


class FakeMessage:
    def __init__(self, text="", reply_to=None, photo=None):
        self.text = text
        self.reply_to_message = SimpleNamespace(message_id=reply_to) if reply_to else None
        self.photo = photo
        self.replies = []

    async def reply_text(self, text, **kwargs):
        self.replies.append(text)


class FakeBot:
    def __init__(self, blocked=()):
        self.sent = []
        self.photos = []
        self.blocked = set(blocked)

    async def send_message(self, chat_id, text, **kwargs):
        if chat_id in self.blocked:
            raise Forbidden("bot was blocked by the user")
        self.sent.append((chat_id, text))

    async def send_photo(self, chat_id, photo, caption=None, **kwargs):
        self.photos.append((chat_id, photo, caption))
        return SimpleNamespace(message_id=555)


def make_update(uid, message):
    return SimpleNamespace(
        effective_user=SimpleNamespace(id=uid, username="abebe", first_name="A", last_name=None, language_code="en"),
        effective_chat=SimpleNamespace(id=uid),
        message=message,
        effective_message=message,
        callback_query=None,
    )


@pytest.fixture(autouse=True)
def admin(monkeypatch):
    monkeypatch.setattr(bot, "is_admin", lambda uid: uid == ADMIN)
    monkeypatch.setattr(bot, "ADMIN_ID", ADMIN)


@pytest.fixture
def context(store, sessions, clock):
    bot_data = {
        bot.BD_STORE: store,
        bot.BD_SESSIONS: sessions,
        bot.BD_LIMITER: CodeLimiter(store, FakeFetcher("4821"), ThrottleStore(10, clock=clock)),
        bot.BD_WIZARDS: [AccountWizard(store, sessions), DateWizard(store, sessions)],
        bot.BD_AWAITING_PHOTO: set(),
        bot.BD_PENDING_PAYMENTS: {},
    }
    return SimpleNamespace(bot_data=bot_data, bot=FakeBot())


def say(context, uid, text, **kw):
    msg = FakeMessage(text, **kw)
    run(bot.text_router(make_update(uid, msg), context))
    return msg.replies


def command(handler, context, uid, text=""):
    msg = FakeMessage(text)
    run(handler(make_update(uid, msg), context))
    return msg.replies


def test_store_wizard_through_text_router(context, store):
    assert "Account-7" in command(bot.store_cmd, context, ADMIN)[0]
    for text in ["Account-7", "1 Month", "100", "no", "a@b.com"]:
        say(context, ADMIN, text)
    replies = say(context, ADMIN, "secret")
    assert "saved" in replies[0]
    assert run(store.get("Account-7/credential/password")) == "secret"


def test_second_wizard_start_is_refused(context, sessions):
    command(bot.store_cmd, context, ADMIN)
    replies = command(bot.adddate_cmd, context, ADMIN)
    assert "/cancel" in replies[0]
    assert sessions.get(ADMIN).flow == "store"


def test_wizard_commands_are_admin_only(context, sessions):
    assert command(bot.store_cmd, context, USER) == ["❌ Not allowed."]
    assert sessions.get(USER) is None


def test_cancel(context, sessions):
    command(bot.store_cmd, context, ADMIN)
    assert command(bot.cancel_cmd, context, ADMIN) == ["✅ Cancelled."]
    assert sessions.get(ADMIN) is None
    assert command(bot.cancel_cmd, context, ADMIN) == ["Nothing to cancel."]


def test_text_without_session_gets_menu_hint(context):
    assert "/start" in say(context, USER, "hello")[0]


def test_screenshot_forward_and_approval(context, store):
    context.bot_data[bot.BD_AWAITING_PHOTO].add(USER)
    photo = FakeMessage(photo=[SimpleNamespace(file_id="small"), SimpleNamespace(file_id="big")])
    run(bot.photo_input(make_update(USER, photo), context))

    assert "received" in photo.replies[0]
    assert context.bot.photos[0][:2] == (ADMIN, "big")
    assert context.bot_data[bot.BD_PENDING_PAYMENTS][555] == {"client_id": USER, "file_id": "big"}
    assert len(run(store.get(f"payments/{USER}"))) == 1

    assert "valid" in say(context, ADMIN, "abc", reply_to=555)[0]
    assert "valid" in say(context, ADMIN, "-5", reply_to=555)[0]
    assert run(store.get(f"users/{USER}/balance")) is None

    say(context, ADMIN, "150", reply_to=555)
    assert run(store.get(f"users/{USER}/balance")) == 150
    assert context.bot.sent[0][0] == USER
    assert 555 not in context.bot_data[bot.BD_PENDING_PAYMENTS]


def test_photo_ignored_unless_awaited(context):
    photo = FakeMessage(photo=[SimpleNamespace(file_id="f")])
    run(bot.photo_input(make_update(USER, photo), context))
    assert photo.replies == []
    assert context.bot.photos == []


def test_broadcast_counts_failures(context, store):
    run(store.set("users/1/balance", 0))
    run(store.set("users/2/balance", 0))
    context.bot.blocked.add(2)
    replies = command(bot.broadcast_cmd, context, ADMIN, "/broadcast New accounts in stock!")
    assert context.bot.sent == [(1, "New accounts in stock!")]
    assert "Sent: 1" in replies[0] and "Failed: 1" in replies[0]


def test_broadcast_needs_text(context):
    assert command(bot.broadcast_cmd, context, ADMIN, "/broadcast") == ["Usage: /broadcast <text>"]


def test_send_code_replies_with_code(context, store):
    run(store.set("Account-7/credential", {"email": "a@b.com", "password": "p"}))
    run(store.set(f"users/{USER}/accounts/Account-7/chance", 1))
    msg = FakeMessage()
    run(bot.send_code(make_update(USER, msg), context, "Account-7"))
    assert "4821" in msg.replies[0]
    assert run(store.get(f"users/{USER}/accounts/Account-7/chance")) == 0


def _real_update(uid):
    from datetime import datetime

    from telegram import Chat, Message, Update, User

    return Update(
        update_id=1,
        message=Message(
            message_id=1,
            date=datetime.now(),
            chat=Chat(id=uid, type="private"),
            from_user=User(id=uid, first_name="A", is_bot=False),
        ),
    )


def test_error_handler_discards_wizard_and_apologises(context, sessions):
    command(bot.store_cmd, context, ADMIN)
    context.error = RuntimeError("boom")
    run(bot.on_error(_real_update(ADMIN), context))
    assert sessions.get(ADMIN) is None
    assert context.bot.sent == [(ADMIN, "⚠️ An error occurred. Please try again later.")]


def test_error_handler_without_update_only_logs(context):
    context.error = RuntimeError("boom")
    run(bot.on_error(None, context))
    assert context.bot.sent == []


def test_double_tap_purchase_is_held_off(context, store, monkeypatch):
    monkeypatch.setattr(bot, "USER_LOCKS", {})
    run(store.set("Account-7/plan", {"1 Month": 100}))
    run(store.set(f"users/{USER}/balance", 150))

    async def go():
        busy = FakeMessage()
        async with bot._get_user_lock(USER):
            await bot.buy_plan(make_update(USER, busy), context, "1 Month", "Account-7")
        done = FakeMessage()
        await bot.buy_plan(make_update(USER, done), context, "1 Month", "Account-7")
        return busy.replies, done.replies

    busy, done = run(go())
    assert "previous order" in busy[0]
    assert "Successfully purchased" in done[0]
    assert run(store.get(f"users/{USER}/balance")) == 50
