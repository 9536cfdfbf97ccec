# db.py
import json
import re
import secrets
import sqlite3
import time
import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

import config
from errors import NotFound, StoreError

logger = logging.getLogger(__name__)

ACCOUNT_KEY_RE = re.compile(r"^account-(\d+)$", re.IGNORECASE)


def norm_path(path: str) -> str:
    return "/".join(p for p in (path or "").split("/") if p)


def join_path(*parts: str) -> str:
    return norm_path("/".join(str(p) for p in parts))


def canonical_account_key(text: str) -> Optional[str]:
    """Return ``Account-<n>`` for any casing of the key, or None if it is not one."""
    m = ACCOUNT_KEY_RE.match((text or "").strip())
    if not m:
        return None
    return f"Account-{m.group(1)}"


def new_push_key() -> str:
    # time-ordered like Firebase push ids
    return f"{int(time.time() * 1000):013d}{secrets.token_hex(4)}"


def _flatten(path: str, value: Any) -> List[Tuple[str, str]]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        value = {str(i): v for i, v in enumerate(value)}
    if isinstance(value, dict):
        out = []
        for k, v in value.items():
            k = str(k)
            if "/" in k or not k:
                raise StoreError(f"Invalid key {k!r} under {path!r}")
            out.extend(_flatten(join_path(path, k), v))
        return out
    if not path:
        raise StoreError("Cannot store a plain value at the root")
    return [(path, json.dumps(value))]


# =========================
# SQLite tree store
# =========================
class SqliteStore:
    """Tree-shaped key/value store kept as one row per leaf in sqlite.

    ``get`` rebuilds nested dicts from the leaves under a path, so the store
    behaves like the Realtime Database the bot was first written against:
    empty dicts are not stored and reading a missing path gives None.
    """

    def __init__(self, path: str = ":memory:"):
        self.path = path
        self.con = sqlite3.connect(path, check_same_thread=False)
        self.cur = self.con.cursor()
        self.cur.executescript(
            """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS nodes(
  path TEXT PRIMARY KEY,
  value TEXT NOT NULL
);
"""
        )
        self.con.commit()

    def _subtree(self, path: str) -> List[Tuple[str, str]]:
        if not path:
            self.cur.execute("SELECT path, value FROM nodes ORDER BY path")
        else:
            prefix = path + "/"
            self.cur.execute(
                "SELECT path, value FROM nodes WHERE path=? OR substr(path, 1, ?)=? ORDER BY path",
                (path, len(prefix), prefix),
            )
        return self.cur.fetchall()

    def _delete(self, path: str):
        if not path:
            self.cur.execute("DELETE FROM nodes")
            return
        prefix = path + "/"
        self.cur.execute(
            "DELETE FROM nodes WHERE path=? OR substr(path, 1, ?)=?",
            (path, len(prefix), prefix),
        )

    def _write(self, path: str, value: Any):
        rows = _flatten(path, value)
        self._delete(path)
        # a leaf sitting on an ancestor would shadow the new subtree
        parts = path.split("/") if path else []
        for i in range(1, len(parts)):
            self.cur.execute("DELETE FROM nodes WHERE path=?", ("/".join(parts[:i]),))
        self.cur.executemany("INSERT INTO nodes(path, value) VALUES(?,?)", rows)

    def _commit(self, fn, *args):
        try:
            fn(*args)
            self.con.commit()
        except sqlite3.Error as e:
            self.con.rollback()
            raise StoreError(f"sqlite write failed: {e}") from e

    async def get(self, path: str) -> Any:
        path = norm_path(path)
        try:
            rows = self._subtree(path)
        except sqlite3.Error as e:
            raise StoreError(f"sqlite read failed: {e}") from e
        if not rows:
            return None
        if len(rows) == 1 and rows[0][0] == path:
            return json.loads(rows[0][1])

        tree: Dict[str, Any] = {}
        skip = len(path) + 1 if path else 0
        for full, raw in rows:
            keys = full[skip:].split("/")
            node = tree
            for k in keys[:-1]:
                node = node.setdefault(k, {})
            node[keys[-1]] = json.loads(raw)
        return tree

    async def exists(self, path: str) -> bool:
        path = norm_path(path)
        try:
            return bool(self._subtree(path))
        except sqlite3.Error as e:
            raise StoreError(f"sqlite read failed: {e}") from e

    async def set(self, path: str, value: Any):
        self._commit(self._write, norm_path(path), value)

    async def update(self, path: str, partial: Dict[str, Any]):
        path = norm_path(path)

        def _apply():
            for k, v in partial.items():
                child = join_path(path, k)
                if v is None:
                    self._delete(child)
                else:
                    self._write(child, v)

        self._commit(_apply)

    async def push(self, path: str, value: Any) -> str:
        key = new_push_key()
        self._commit(self._write, join_path(path, key), value)
        return key

    async def remove(self, path: str):
        self._commit(self._delete, norm_path(path))

    async def close(self):
        self.con.close()


# =========================
# Firebase Realtime Database (REST)
# =========================
class FirebaseStore:
    def __init__(self, base_url: str, auth: str = "", session: Optional[aiohttp.ClientSession] = None):
        self.base_url = base_url.rstrip("/")
        self.auth = auth
        self._session = session

    def url(self, path: str) -> str:
        return f"{self.base_url}/{norm_path(path)}.json"

    def _params(self, **extra) -> Dict[str, str]:
        params = {k: v for k, v in extra.items() if v}
        if self.auth:
            params["auth"] = self.auth
        return params

    async def _request(self, method: str, path: str, data: Any = None, **params) -> Any:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        url = self.url(path)
        try:
            async with self._session.request(method, url, json=data, params=self._params(**params)) as resp:
                if resp.status != 200:
                    raise StoreError(f"Firebase {method} {url}: {resp.status} - {await resp.text()}")
                return await resp.json()
        except aiohttp.ClientError as e:
            raise StoreError(f"Firebase {method} {url}: {e}") from e

    async def get(self, path: str) -> Any:
        return await self._request("GET", path)

    async def exists(self, path: str) -> bool:
        return (await self._request("GET", path, shallow="true")) is not None

    async def set(self, path: str, value: Any):
        await self._request("PUT", path, value)

    async def update(self, path: str, partial: Dict[str, Any]):
        await self._request("PATCH", path, partial)

    async def push(self, path: str, value: Any) -> str:
        res = await self._request("POST", path, value)
        return (res or {}).get("name", "")

    async def remove(self, path: str):
        await self._request("DELETE", path)

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None


def open_store():
    if config.FIREBASE_URL:
        logger.info("Using Firebase store at %s", config.FIREBASE_URL)
        return FirebaseStore(config.FIREBASE_URL, config.FIREBASE_AUTH)
    logger.info("Using sqlite store at %s", config.DB_PATH)
    return SqliteStore(config.DB_PATH)


# =========================
# Paths
# =========================
def user_path(uid: int) -> str:
    return f"users/{uid}"


def subscription_path(uid: int, account_key: str) -> str:
    return f"users/{uid}/accounts/{account_key}"


def display_name(user_data: Optional[dict], uid: int) -> str:
    info = (user_data or {}).get("contactInfo") or {}
    return info.get("username") or f"user-{uid}"


# =========================
# User helpers
# =========================
async def register_user(store, u) -> Tuple[dict, bool]:
    """Create ``users/<id>`` on first contact. Returns (user_data, created)."""
    data = await store.get(user_path(u.id))
    if data is not None:
        return data, False

    data = {
        "balance": 0,
        "contactInfo": {
            "first_name": getattr(u, "first_name", None),
            "last_name": getattr(u, "last_name", None),
            "username": getattr(u, "username", None),
            "user_id": u.id,
            "language_code": getattr(u, "language_code", None),
        },
    }
    await store.set(user_path(u.id), data)
    logger.info("Registered user %s", u.id)
    return data, True


async def get_balance(store, uid: int) -> float:
    return float(await store.get(f"{user_path(uid)}/balance") or 0)


async def add_balance(store, uid: int, amount: float) -> float:
    bal = await get_balance(store, uid) + float(amount)
    await store.set(f"{user_path(uid)}/balance", bal)
    return bal


async def charge_balance(store, uid: int, amount: float) -> bool:
    bal = await get_balance(store, uid)
    if bal + 1e-9 < amount:
        return False
    await store.set(f"{user_path(uid)}/balance", bal - float(amount))
    return True


async def all_user_ids(store) -> List[int]:
    users = await store.get("users") or {}
    return [int(k) for k in users if str(k).lstrip("-").isdigit()]


# =========================
# Accounts
# =========================
async def list_accounts(store) -> List[Tuple[str, int]]:
    """All ``Account-<n>`` nodes with their user count, ordered by number."""
    root = await store.get("") or {}
    out = []
    for key, node in root.items():
        if not canonical_account_key(key) or not isinstance(node, dict):
            continue
        out.append((key, len(node.get("users") or {})))
    out.sort(key=lambda r: int(ACCOUNT_KEY_RE.match(r[0]).group(1)))
    return out


async def get_plans(store, account_key: str) -> Dict[str, float]:
    return await store.get(f"{account_key}/plan") or {}


async def get_credential(store, account_key: str) -> Optional[dict]:
    return await store.get(f"{account_key}/credential")


async def list_subscriptions(store, uid: int) -> Dict[str, dict]:
    return await store.get(f"{user_path(uid)}/accounts") or {}


async def purchase_plan(store, uid: int, account_key: str, plan: str, today: Optional[date] = None) -> Tuple[bool, float, float]:
    """Buy ``plan`` on ``account_key``. Returns (ok, price, balance_after)."""
    price = await store.get(f"{account_key}/plan/{plan}")
    if not price:
        raise NotFound(f'Plan "{plan}" not found on {account_key}.')
    price = float(price)

    user_data = await store.get(user_path(uid)) or {}
    bal = float(user_data.get("balance") or 0)
    # read-then-write, not a ledger
    if not await charge_balance(store, uid, price):
        return False, price, bal

    await store.set(
        subscription_path(uid, account_key),
        {
            "plan": plan,
            "purchaseDate": (today or date.today()).isoformat(),
            "chance": config.DEFAULT_CHANCES,
        },
    )
    await store.set(f"{account_key}/users/{display_name(user_data, uid)}", True)
    logger.info("User %s bought %s on %s for %s", uid, plan, account_key, price)
    return True, price, bal - price


# =========================
# Payments
# =========================
async def record_screenshot(store, uid: int, file_id: str) -> str:
    return await store.push(f"payments/{uid}", {"fileId": file_id, "timestamp": int(time.time() * 1000)})


async def approve_payment(store, uid: int, amount: float, file_id: str) -> float:
    await store.push(
        f"{user_path(uid)}/payments",
        {"fileId": file_id, "timestamp": int(time.time() * 1000), "addedBy": "owner", "amount": float(amount)},
    )
    return await add_balance(store, uid, amount)


# =========================
# Expiry
# =========================
PLAN_LEN_RE = re.compile(r"(\d+)\s*(day|week|month|year)s?", re.IGNORECASE)
UNIT_DAYS = {"day": 1, "week": 7, "month": 30, "year": 365}


def plan_days(plan: str) -> int:
    m = PLAN_LEN_RE.search(plan or "")
    if not m:
        return UNIT_DAYS["month"]
    return int(m.group(1)) * UNIT_DAYS[m.group(2).lower()]


def is_expired(sub: dict, today: date) -> bool:
    try:
        bought = datetime.strptime(str(sub.get("purchaseDate")), "%Y-%m-%d").date()
    except ValueError:
        return False
    return today >= bought + timedelta(days=plan_days(sub.get("plan") or config.DEFAULT_PLAN))


async def expire_subscriptions(store, today: Optional[date] = None) -> List[Tuple[int, str]]:
    today = today or date.today()
    users = await store.get("users") or {}
    removed = []
    for uid_s, user_data in users.items():
        if not isinstance(user_data, dict):
            continue
        for account_key, sub in (user_data.get("accounts") or {}).items():
            if not isinstance(sub, dict) or not is_expired(sub, today):
                continue
            uid = int(uid_s)
            await store.remove(subscription_path(uid, account_key))
            await store.remove(f"{account_key}/users/{display_name(user_data, uid)}")
            removed.append((uid, account_key))
            logger.info("Expired %s for user %s (%s)", account_key, uid, sub.get("plan"))
    return removed
