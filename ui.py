# ui.py
from typing import Dict, List, Optional, Tuple

from telegram import InlineKeyboardButton, InlineKeyboardMarkup
from telegram.helpers import escape_markdown

from config import (
    CBE_ACCOUNT,
    PAYEE_NAME,
    SERVICE_NAME,
    SUPPORT_EMAIL,
    SUPPORT_USERNAME,
    TELEBIRR_PHONE,
    money,
    to_tme,
)
from limiter import CodeResult, CodeStatus

SELECT_ACCOUNT = "select_account_"
SELECT_PLAN = "select_plan_"
SEND_CODE = "send_code_"

TELEGRAM_TEXT_LIMIT = 3800


def md(x: str) -> str:
    return escape_markdown(str(x or ""), version=1)


def md2(x: str, entity_type: Optional[str] = None) -> str:
    return escape_markdown(str(x or ""), version=2, entity_type=entity_type)


# =========================
# Callback payloads
# =========================
def plan_callback(plan: str, account_key: str) -> str:
    return f"{SELECT_PLAN}{plan.replace(' ', '_')}_{account_key}"


def parse_plan_callback(data: str) -> Optional[Tuple[str, str]]:
    """``select_plan_1_Month_Account-7`` -> ("1 Month", "Account-7")."""
    if not data.startswith(SELECT_PLAN):
        return None
    rest = data[len(SELECT_PLAN):]
    if "_" not in rest:
        return None
    plan, account_key = rest.rsplit("_", 1)
    if not plan or not account_key:
        return None
    return plan.replace("_", " "), account_key


def strip_prefix(data: str, prefix: str) -> Optional[str]:
    if not data.startswith(prefix):
        return None
    return data[len(prefix):] or None


# =========================
# Keyboards
# =========================
BACK_TO_MENU = [InlineKeyboardButton("⬅️ Back to Menu", callback_data="back_to_menu")]


def kb_main(has_accounts: bool) -> InlineKeyboardMarkup:
    rows = [
        [InlineKeyboardButton("➕ Add Fund", callback_data="add_fund")],
        [InlineKeyboardButton(f"💳 Purchase {SERVICE_NAME}", callback_data="purchase")],
        [InlineKeyboardButton("📞 Contact Support", callback_data="contact_support")],
    ]
    if has_accounts:
        rows.append([InlineKeyboardButton("📺 My Accounts", callback_data="view_account")])
    return InlineKeyboardMarkup(rows)


def kb_back() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([BACK_TO_MENU])


def kb_payment_methods() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        [
            [InlineKeyboardButton("📲 Telebirr", callback_data="pay_telebirr")],
            [InlineKeyboardButton("🏦 CBE", callback_data="pay_cbe")],
            BACK_TO_MENU,
        ]
    )


def kb_accounts(accounts: List[Tuple[str, int]]) -> InlineKeyboardMarkup:
    rows = [
        [InlineKeyboardButton(f"{key} ({count} users)", callback_data=f"{SELECT_ACCOUNT}{key}")]
        for key, count in accounts
    ]
    rows.append(BACK_TO_MENU)
    return InlineKeyboardMarkup(rows)


def kb_plans(account_key: str, plans: Dict[str, float]) -> InlineKeyboardMarkup:
    rows = [
        [InlineKeyboardButton(f"{name} - {money(price)}", callback_data=plan_callback(name, account_key))]
        for name, price in plans.items()
    ]
    rows.append([InlineKeyboardButton("⬅️ Back to Accounts", callback_data="purchase")])
    return InlineKeyboardMarkup(rows)


def kb_my_accounts(keys: List[str]) -> InlineKeyboardMarkup:
    rows = [[InlineKeyboardButton(f"🔐 Get code for {k}", callback_data=f"{SEND_CODE}{k}")] for k in keys]
    rows.append(BACK_TO_MENU)
    return InlineKeyboardMarkup(rows)


# =========================
# Texts
# =========================
PAYMENT_TEXTS = {
    "pay_telebirr": f"📲 *Telebirr Payment Info*\nSend to `{TELEBIRR_PHONE}`\nName: {md(PAYEE_NAME)}\n\nThen send the screenshot here.",
    "pay_cbe": f"🏦 *CBE Payment Info*\nAcct: `{CBE_ACCOUNT}`\nName: {md(PAYEE_NAME)}\n\nThen send the screenshot here.",
}


def welcome_text(balance: float, created: bool) -> str:
    if created:
        return "✅ Account registered! 👋 Welcome! Please choose an option:"
    return f"👋 Welcome back! Your balance: *{md(money(balance))}*"


def support_text() -> str:
    return (
        "📞 *Contact Support*\n"
        f"Telegram: [{md(SUPPORT_USERNAME)}]({to_tme(SUPPORT_USERNAME)})\n"
        f"Email: {md(SUPPORT_EMAIL)}"
    )


def subscriptions_text(subs: Dict[str, dict], credentials: Dict[str, Optional[dict]]) -> str:
    """My Accounts page, MarkdownV2. Entries that do not fit are left out whole."""
    if not subs:
        return "📺 You have no active accounts yet\\."
    text = "📺 *My Accounts*\n"
    for key, sub in subs.items():
        cred = credentials.get(key) or {}
        entry = (
            f"\n🆔 *{md2(key)}*\n"
            f"📦 Plan: {md2(sub.get('plan', '-'))}\n"
            f"📅 Purchased: {md2(sub.get('purchaseDate', '-'))}\n"
            f"📧 Email: `{md2(cred.get('email', '-'), 'code')}`\n"
            f"🔑 Password: `{md2(cred.get('password', '-'), 'code')}`\n"
            f"🎟 Code requests left: *{int(sub.get('chance') or 0)}*\n"
        )
        if len(text) + len(entry) > TELEGRAM_TEXT_LIMIT:
            break
        text += entry
    return text


def code_result_text(account_key: str, result: CodeResult) -> str:
    if result.status is CodeStatus.DELIVERED:
        return (
            f"🔐 Sign-in code for {account_key}: `{result.code}`\n"
            f"🎟 Code requests left: *{result.remaining}*"
        )
    if result.status is CodeStatus.TOO_SOON:
        return f"⏳ Please wait {max(1, round(result.retry_in))}s before asking again."
    if result.status is CodeStatus.NO_CODE_YET:
        return "📭 No code has arrived yet. Request the code on your TV, then try again in a moment."
    if result.status is CodeStatus.QUOTA_EXHAUSTED:
        return f"❌ You have used all code requests for {account_key}. Contact support."
    return f"❌ {account_key} is not available right now. Contact support."
