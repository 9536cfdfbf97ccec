# bot.py
import asyncio
import math
import logging
from datetime import timedelta
from typing import Dict

from telegram import Update
from telegram.constants import ParseMode
from telegram.error import TelegramError
from telegram.ext import (
    ApplicationBuilder,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

import config
from config import ADMIN_ID, CURRENCY, is_admin, money
from db import (
    all_user_ids,
    approve_payment,
    expire_subscriptions,
    get_credential,
    get_plans,
    list_accounts,
    list_subscriptions,
    open_store,
    purchase_plan,
    record_screenshot,
    register_user,
)
from errors import NotFound
from limiter import CodeLimiter, ThrottleStore
from mailcodes import GmailCodeFetcher
from sessions import SessionActive, SessionStore
from ui import (
    PAYMENT_TEXTS,
    SELECT_ACCOUNT,
    SEND_CODE,
    code_result_text,
    kb_accounts,
    kb_back,
    kb_main,
    kb_my_accounts,
    kb_payment_methods,
    kb_plans,
    parse_plan_callback,
    strip_prefix,
    subscriptions_text,
    support_text,
    welcome_text,
)
from wizard import AccountWizard, DateWizard

logger = logging.getLogger("flixshare")

# =========================
# bot_data keys
# =========================
BD_STORE = "store"
BD_SESSIONS = "sessions"
BD_LIMITER = "limiter"
BD_WIZARDS = "wizards"
BD_AWAITING_PHOTO = "awaiting_photo"  # {user_id}
BD_PENDING_PAYMENTS = "pending_payments"  # {admin message_id: {"client_id", "file_id"}}

BROADCAST_DELAY = 0.05

ADMIN_HELP = (
    "👑 Admin commands\n\n"
    "/store — add a new account with its plans\n"
    "/adddate — correct a user's purchase date\n"
    "/broadcast <text> — message every user\n"
    "/cancel — stop the current wizard\n\n"
    "💰 To approve a payment, reply to the forwarded screenshot with the amount."
)


# =========================
# Anti-double purchase lock
# =========================
USER_LOCKS: Dict[int, asyncio.Lock] = {}


def _get_user_lock(uid: int) -> asyncio.Lock:
    lk = USER_LOCKS.get(uid)
    if lk is None:
        lk = asyncio.Lock()
        USER_LOCKS[uid] = lk
    return lk


async def _show(update: Update, text: str, reply_markup=None, parse_mode=ParseMode.MARKDOWN):
    if update.callback_query:
        await update.callback_query.edit_message_text(text, parse_mode=parse_mode, reply_markup=reply_markup)
    else:
        await update.effective_message.reply_text(text, parse_mode=parse_mode, reply_markup=reply_markup)


# =========================
# Pages
# =========================
async def show_main_menu(update: Update, context: ContextTypes.DEFAULT_TYPE):
    store = context.bot_data[BD_STORE]
    data, created = await register_user(store, update.effective_user)
    has_accounts = bool(data.get("accounts"))
    await _show(update, welcome_text(float(data.get("balance") or 0), created), reply_markup=kb_main(has_accounts))


async def start_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await show_main_menu(update, context)


async def show_accounts(update: Update, context: ContextTypes.DEFAULT_TYPE):
    accounts = await list_accounts(context.bot_data[BD_STORE])
    if not accounts:
        return await _show(update, f"❌ No {config.SERVICE_NAME} accounts found.", reply_markup=kb_back())
    await _show(update, f"📺 Select a {config.SERVICE_NAME} account to view available plans:", reply_markup=kb_accounts(accounts))


async def show_plans(update: Update, context: ContextTypes.DEFAULT_TYPE, account_key: str):
    plans = await get_plans(context.bot_data[BD_STORE], account_key)
    if not plans:
        return await _show(update, f"❌ No plans found for {account_key}.", reply_markup=kb_back())
    await _show(update, f"📦 Plans for {account_key}:", reply_markup=kb_plans(account_key, plans))


async def buy_plan(update: Update, context: ContextTypes.DEFAULT_TYPE, plan: str, account_key: str):
    uid = update.effective_user.id
    lock = _get_user_lock(uid)
    if lock.locked():
        return await _show(update, "⏳ Processing your previous order...\nPlease wait ✅", parse_mode=None)

    async with lock:
        try:
            ok, price, bal = await purchase_plan(context.bot_data[BD_STORE], uid, account_key, plan)
        except NotFound as e:
            return await _show(update, f"❌ {e}", reply_markup=kb_back(), parse_mode=None)

    if not ok:
        return await _show(
            update,
            f"❌ Insufficient balance. You need {money(price)} but only have {money(bal)}.",
            reply_markup=kb_payment_methods(),
            parse_mode=None,
        )
    await _show(
        update,
        f"✅ Successfully purchased {plan} from {account_key} for {money(price)}.\n"
        f"💰 Balance: {money(bal)}\n\n📺 Open My Accounts to see the login.",
        reply_markup=kb_back(),
        parse_mode=None,
    )


async def show_my_accounts(update: Update, context: ContextTypes.DEFAULT_TYPE):
    store = context.bot_data[BD_STORE]
    subs = await list_subscriptions(store, update.effective_user.id)
    credentials = {key: await get_credential(store, key) for key in subs}
    await _show(
        update,
        subscriptions_text(subs, credentials),
        reply_markup=kb_my_accounts(list(subs)),
        parse_mode=ParseMode.MARKDOWN_V2,
    )


async def send_code(update: Update, context: ContextTypes.DEFAULT_TYPE, account_key: str):
    limiter: CodeLimiter = context.bot_data[BD_LIMITER]
    result = await limiter.request_code(update.effective_user.id, account_key)
    await update.effective_message.reply_text(code_result_text(account_key, result), parse_mode=ParseMode.MARKDOWN)


# =========================
# Callbacks
# =========================
async def on_callback(update: Update, context: ContextTypes.DEFAULT_TYPE):
    q = update.callback_query
    await q.answer()
    data = q.data or ""

    if data == "back_to_menu":
        return await show_main_menu(update, context)

    if data == "add_fund":
        return await _show(update, "💰 *Add Fund*\n\nPlease choose a payment method:", reply_markup=kb_payment_methods())

    if data in PAYMENT_TEXTS:
        context.bot_data[BD_AWAITING_PHOTO].add(update.effective_user.id)
        return await _show(update, PAYMENT_TEXTS[data], reply_markup=kb_back())

    if data == "purchase":
        return await show_accounts(update, context)

    account_key = strip_prefix(data, SELECT_ACCOUNT)
    if account_key:
        return await show_plans(update, context, account_key)

    plan = parse_plan_callback(data)
    if plan:
        return await buy_plan(update, context, *plan)

    if data == "contact_support":
        return await _show(update, support_text(), reply_markup=kb_back())

    if data == "view_account":
        return await show_my_accounts(update, context)

    account_key = strip_prefix(data, SEND_CODE)
    if account_key:
        return await send_code(update, context, account_key)

    await _show(update, "❓ Unknown option. Please try again.", reply_markup=kb_back())


# =========================
# Payments
# =========================
async def photo_input(update: Update, context: ContextTypes.DEFAULT_TYPE):
    u = update.effective_user
    awaiting = context.bot_data[BD_AWAITING_PHOTO]
    if u.id not in awaiting:
        return
    awaiting.discard(u.id)

    file_id = update.message.photo[-1].file_id
    await record_screenshot(context.bot_data[BD_STORE], u.id, file_id)
    await update.message.reply_text("✅ Screenshot received! We'll review it soon.")

    sent = await context.bot.send_photo(
        chat_id=ADMIN_ID,
        photo=file_id,
        caption=(
            f"🧾 New payment screenshot from @{u.username or 'unknown'} (ID: {u.id})\n\n"
            f"Reply to this message with the amount in {CURRENCY}."
        ),
    )
    context.bot_data[BD_PENDING_PAYMENTS][sent.message_id] = {"client_id": u.id, "file_id": file_id}
    logger.info("Payment screenshot from %s forwarded as message %s", u.id, sent.message_id)


async def approve_reply(update: Update, context: ContextTypes.DEFAULT_TYPE, message_id: int):
    pending = context.bot_data[BD_PENDING_PAYMENTS]
    try:
        amount = float((update.message.text or "").strip().replace(",", "."))
    except ValueError:
        amount = 0.0
    if not math.isfinite(amount) or amount <= 0:
        return await update.message.reply_text("❌ Please enter a valid numeric amount.")

    entry = pending.pop(message_id, None)
    if entry is None:
        return await update.message.reply_text("❌ This payment was already handled.")
    client_id = entry["client_id"]
    try:
        bal = await approve_payment(context.bot_data[BD_STORE], client_id, amount, entry["file_id"])
    except Exception:
        pending[message_id] = entry
        raise

    await context.bot.send_message(
        chat_id=client_id,
        text=f"✅ Your fund of {money(amount)} has been approved and added to your account.",
        reply_markup=kb_back(),
    )
    await update.message.reply_text(f"✅ Updated balance of user {client_id} (+{money(amount)}). Now: {money(bal)}")
    logger.info("Approved %s for user %s", amount, client_id)


# =========================
# Text
# =========================
async def text_router(update: Update, context: ContextTypes.DEFAULT_TYPE):
    uid = update.effective_user.id
    msg = update.message

    if is_admin(uid) and msg.reply_to_message:
        replied = msg.reply_to_message.message_id
        if replied in context.bot_data[BD_PENDING_PAYMENTS]:
            return await approve_reply(update, context, replied)

    for wizard in context.bot_data[BD_WIZARDS]:
        reply = await wizard.handle(uid, msg.text)
        if reply is not None:
            return await msg.reply_text(reply.text)

    await msg.reply_text("Use /start to open the menu 👇")


# =========================
# Admin commands
# =========================
async def admin_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not is_admin(update.effective_user.id):
        return await update.message.reply_text("❌ Not allowed.")
    await update.message.reply_text(ADMIN_HELP)


async def _start_wizard(update: Update, context: ContextTypes.DEFAULT_TYPE, flow: str):
    uid = update.effective_user.id
    if not is_admin(uid):
        return await update.message.reply_text("❌ Not allowed.")
    wizard = next(w for w in context.bot_data[BD_WIZARDS] if w.flow == flow)
    try:
        prompt = wizard.start(uid)
    except SessionActive as e:
        return await update.message.reply_text(
            f"⚠️ /{e.session.flow} is still running. Finish it or send /cancel first."
        )
    await update.message.reply_text(f"{prompt}\n\n/cancel to stop")


async def store_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await _start_wizard(update, context, AccountWizard.flow)


async def adddate_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await _start_wizard(update, context, DateWizard.flow)


async def cancel_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE):
    uid = update.effective_user.id
    cancelled = context.bot_data[BD_SESSIONS].discard(uid)
    if uid in context.bot_data[BD_AWAITING_PHOTO]:
        context.bot_data[BD_AWAITING_PHOTO].discard(uid)
        cancelled = True
    await update.message.reply_text("✅ Cancelled." if cancelled else "Nothing to cancel.")


async def broadcast_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not is_admin(update.effective_user.id):
        return
    parts = (update.message.text or "").split(None, 1)
    if len(parts) < 2 or not parts[1].strip():
        return await update.message.reply_text("Usage: /broadcast <text>")
    text = parts[1].strip()

    sent, failed = 0, 0
    for uid in await all_user_ids(context.bot_data[BD_STORE]):
        try:
            await context.bot.send_message(chat_id=uid, text=text)
            sent += 1
        except TelegramError as e:
            failed += 1
            logger.warning("Broadcast to %s failed: %s", uid, e)
        await asyncio.sleep(BROADCAST_DELAY)
    await update.message.reply_text(f"📣 Broadcast done.\n✅ Sent: {sent}\n❌ Failed: {failed}")


# =========================
# Jobs
# =========================
async def expire_job(context: ContextTypes.DEFAULT_TYPE):
    removed = await expire_subscriptions(context.bot_data[BD_STORE])
    for uid, account_key in removed:
        try:
            await context.bot.send_message(chat_id=uid, text=f"⌛ Your plan on {account_key} has expired.")
        except TelegramError as e:
            logger.warning("Expiry notice to %s failed: %s", uid, e)


# =========================
# Errors
# =========================
async def on_error(update: object, context: ContextTypes.DEFAULT_TYPE):
    logger.error("Unhandled error while handling %s", update, exc_info=context.error)
    if not isinstance(update, Update) or not update.effective_user:
        return

    if context.bot_data[BD_SESSIONS].discard(update.effective_user.id):
        logger.info("Discarded wizard of %s after error", update.effective_user.id)
    if update.effective_chat:
        try:
            await context.bot.send_message(chat_id=update.effective_chat.id, text="⚠️ An error occurred. Please try again later.")
        except TelegramError as e:
            logger.warning("Could not report error to %s: %s", update.effective_chat.id, e)


# =========================
# Main
# =========================
async def _close_store(app):
    await app.bot_data[BD_STORE].close()


def build_app(store=None, fetcher=None):
    store = store or open_store()
    sessions = SessionStore()
    limiter = CodeLimiter(store, fetcher or GmailCodeFetcher(), ThrottleStore(config.CODE_COOLDOWN_SECONDS))

    app = ApplicationBuilder().token(config.TOKEN).post_shutdown(_close_store).build()
    app.bot_data.update(
        {
            BD_STORE: store,
            BD_SESSIONS: sessions,
            BD_LIMITER: limiter,
            BD_WIZARDS: [AccountWizard(store, sessions), DateWizard(store, sessions)],
            BD_AWAITING_PHOTO: set(),
            BD_PENDING_PAYMENTS: {},
        }
    )

    app.add_handler(CommandHandler("start", start_cmd))
    app.add_handler(CommandHandler("admin", admin_cmd))
    app.add_handler(CommandHandler("store", store_cmd))
    app.add_handler(CommandHandler("adddate", adddate_cmd))
    app.add_handler(CommandHandler("cancel", cancel_cmd))
    app.add_handler(CommandHandler("broadcast", broadcast_cmd))

    app.add_handler(CallbackQueryHandler(on_callback))
    app.add_handler(MessageHandler(filters.PHOTO, photo_input))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, text_router))
    app.add_error_handler(on_error)

    if app.job_queue:
        app.job_queue.run_repeating(
            expire_job,
            interval=timedelta(hours=config.EXPIRY_INTERVAL_HOURS),
            first=timedelta(minutes=1),
            name="expire_subscriptions",
        )
    else:
        logger.warning("JobQueue unavailable; expired plans will not be removed")

    return app


def main():
    config.check_env()
    app = build_app()
    app.run_polling(allowed_updates=Update.ALL_TYPES, drop_pending_updates=True)


if __name__ == "__main__":
    main()
