# wizard.py
import math
import re
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional

import config
import db
from errors import ValidationError
from sessions import Session, SessionStore, Step

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s.]+$")
DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

YES = {"yes", "y"}
NO = {"no", "n"}

# characters that would break a store path or the select_plan_ button payload
PLAN_NAME_FORBIDDEN = set("/.#$[]_")
PLAN_NAME_MAX = 32

PROMPTS = {
    Step.ASK_ACCOUNT_KEY: "🆔 Send the account key (example: Account-7):",
    Step.ASK_PLAN_NAME: "📦 Send the plan name (example: 1 Month):",
    Step.ASK_PLAN_PRICE: "💰 Send the price for this plan (number greater than 0):",
    Step.ASK_MORE_PLANS: "➕ Add another plan? (yes / no)",
    Step.ASK_EMAIL: "📧 Send the account email:",
    Step.ASK_PASSWORD: "🔑 Send the account password:",
    Step.ASK_USER: "👤 Send the user's Telegram ID:",
    Step.ASK_ACCOUNT: "🆔 Send the account key (example: Account-7):",
    Step.ASK_DATE: "📅 Send the purchase date (YYYY-MM-DD):",
}

MSG_FAILED = "⚠️ Something went wrong. The operation was cancelled, please start again."


@dataclass
class Reply:
    text: str
    done: bool = False


def parse_price(text: str) -> float:
    try:
        price = float((text or "").strip().replace(",", "."))
    except ValueError:
        raise ValidationError("Price must be a number.")
    if not math.isfinite(price) or price <= 0:
        raise ValidationError("Price must be greater than 0.")
    return int(price) if price.is_integer() else price


def parse_plan_name(text: str) -> str:
    name = (text or "").strip()
    if not name:
        raise ValidationError("Plan name cannot be empty.")
    if len(name) > PLAN_NAME_MAX:
        raise ValidationError(f"Plan name must be at most {PLAN_NAME_MAX} characters.")
    if PLAN_NAME_FORBIDDEN & set(name):
        raise ValidationError("Plan name cannot contain / . # $ [ ] or _")
    return name


def parse_date(text: str) -> str:
    text = (text or "").strip()
    if not DATE_RE.match(text):
        raise ValidationError("Date must be in YYYY-MM-DD format.")
    try:
        datetime.strptime(text, "%Y-%m-%d")
    except ValueError:
        raise ValidationError(f"{text} is not a real date.")
    return text


class WizardEngine:
    """Drives one admin through a fixed chain of prompts.

    Each step handler either advances ``session.step`` and returns the next
    prompt, or raises ValidationError before touching the session so the same
    prompt is asked again. Any other exception discards the session.
    """

    flow = ""
    first_step: Step

    def __init__(self, store, sessions: SessionStore):
        self.store = store
        self.sessions = sessions
        self.steps: Dict[Step, Callable[[Session, str], Awaitable[Reply]]] = {}

    def start(self, owner_id: int) -> str:
        self.sessions.start(owner_id, self.flow, self.first_step)
        logger.info("%s started by %s", self.flow, owner_id)
        return PROMPTS[self.first_step]

    def owns(self, owner_id: int) -> bool:
        session = self.sessions.get(owner_id)
        return session is not None and session.flow == self.flow

    async def handle(self, owner_id: int, text: str) -> Optional[Reply]:
        session = self.sessions.get(owner_id)
        if session is None or session.flow != self.flow:
            return None

        text = (text or "").strip()
        if text.startswith("/"):
            return None

        handler = self.steps.get(session.step)
        if handler is None:
            logger.error("%s has no handler for %s", self.flow, session.step)
            self.sessions.discard(owner_id, session)
            return Reply(MSG_FAILED, done=True)

        try:
            return await handler(session, text)
        except ValidationError as e:
            return Reply(f"❌ {e}\n\n{PROMPTS[session.step]}")
        except Exception:
            logger.exception("%s failed at %s for %s", self.flow, session.step.value, owner_id)
            self.sessions.discard(owner_id, session)
            return Reply(MSG_FAILED, done=True)

    def advance(self, session: Session, step: Step, prefix: str = "") -> Reply:
        session.step = step
        return Reply(f"{prefix}{PROMPTS[step]}")

    def finish(self, session: Session, text: str) -> Reply:
        self.sessions.discard(session.owner_id, session)
        logger.info("%s finished by %s", self.flow, session.owner_id)
        return Reply(text, done=True)


# =========================
# /store
# =========================
class AccountWizard(WizardEngine):
    flow = "store"
    first_step = Step.ASK_ACCOUNT_KEY

    def __init__(self, store, sessions: SessionStore):
        super().__init__(store, sessions)
        self.steps = {
            Step.ASK_ACCOUNT_KEY: self.on_account_key,
            Step.ASK_PLAN_NAME: self.on_plan_name,
            Step.ASK_PLAN_PRICE: self.on_plan_price,
            Step.ASK_MORE_PLANS: self.on_more_plans,
            Step.ASK_EMAIL: self.on_email,
            Step.ASK_PASSWORD: self.on_password,
        }

    async def on_account_key(self, session: Session, text: str) -> Reply:
        key = db.canonical_account_key(text)
        if not key:
            raise ValidationError("Account key must look like Account-<number>.")
        if await self.store.exists(key):
            raise ValidationError(f"{key} already exists.")
        session.draft["key"] = key
        session.draft["plans"] = {}
        return self.advance(session, Step.ASK_PLAN_NAME, f"✅ {key}\n\n")

    async def on_plan_name(self, session: Session, text: str) -> Reply:
        session.pending = parse_plan_name(text)
        return self.advance(session, Step.ASK_PLAN_PRICE)

    async def on_plan_price(self, session: Session, text: str) -> Reply:
        price = parse_price(text)
        session.draft["plans"][session.pending] = price
        name, session.pending = session.pending, None
        return self.advance(session, Step.ASK_MORE_PLANS, f"✅ {name} = {config.money(price)}\n\n")

    async def on_more_plans(self, session: Session, text: str) -> Reply:
        answer = text.lower()
        if answer in YES:
            return self.advance(session, Step.ASK_PLAN_NAME)
        if answer in NO:
            return self.advance(session, Step.ASK_EMAIL)
        raise ValidationError("Please answer yes or no.")

    async def on_email(self, session: Session, text: str) -> Reply:
        if not EMAIL_RE.match(text):
            raise ValidationError("That does not look like an email address.")
        session.draft["email"] = text
        return self.advance(session, Step.ASK_PASSWORD)

    async def on_password(self, session: Session, text: str) -> Reply:
        if not text:
            raise ValidationError("Password cannot be empty.")
        draft = session.draft
        key = draft["key"]
        await self.store.set(
            key,
            {
                "plan": dict(draft["plans"]),
                "credential": {"email": draft["email"], "password": text},
                "users": {},
            },
        )
        plans = "\n".join(f"• {n} — {config.money(p)}" for n, p in draft["plans"].items())
        return self.finish(session, f"✅ {key} saved.\n\n📦 Plans:\n{plans}\n📧 {draft['email']}")


# =========================
# /adddate
# =========================
class DateWizard(WizardEngine):
    flow = "adddate"
    first_step = Step.ASK_USER

    def __init__(self, store, sessions: SessionStore):
        super().__init__(store, sessions)
        self.steps = {
            Step.ASK_USER: self.on_user,
            Step.ASK_ACCOUNT: self.on_account,
            Step.ASK_DATE: self.on_date,
        }

    async def on_user(self, session: Session, text: str) -> Reply:
        if not text.isdigit():
            raise ValidationError("Telegram ID must be a number.")
        uid = int(text)
        if not await self.store.exists(db.user_path(uid)):
            raise ValidationError(f"User {uid} is not registered.")
        session.draft["user_id"] = uid
        return self.advance(session, Step.ASK_ACCOUNT)

    async def on_account(self, session: Session, text: str) -> Reply:
        key = db.canonical_account_key(text)
        if not key:
            raise ValidationError("Account key must look like Account-<number>.")
        if not await self.store.exists(key):
            raise ValidationError(f"{key} does not exist.")
        session.draft["account"] = key
        return self.advance(session, Step.ASK_DATE)

    async def on_date(self, session: Session, text: str) -> Reply:
        purchase_date = parse_date(text)
        uid, key = session.draft["user_id"], session.draft["account"]
        path = db.subscription_path(uid, key)

        current = await self.store.get(path) or {}
        partial = {"purchaseDate": purchase_date}
        if not current.get("plan"):
            partial["plan"] = config.DEFAULT_PLAN
        if current.get("chance") is None:
            partial["chance"] = config.DEFAULT_CHANCES
        await self.store.update(path, partial)

        return self.finish(session, f"✅ Purchase date of {key} for user {uid} set to {purchase_date}.")
