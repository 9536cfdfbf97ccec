# mailcodes.py
import asyncio
import base64
import os
import re
import threading
import time
import logging
from typing import Any, Callable, Dict, Optional

from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build as google_build
from googleapiclient.errors import HttpError

import config
from errors import TransportError

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]


def decode_part(data: str) -> str:
    data = data or ""
    raw = base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))
    return raw.decode("utf-8", errors="ignore")


def _find_plain(payload: Dict[str, Any]) -> str:
    if payload.get("mimeType") == "text/plain" and (payload.get("body") or {}).get("data"):
        return decode_part(payload["body"]["data"])
    for part in payload.get("parts") or []:
        text = _find_plain(part)
        if text:
            return text
    return ""


def plain_text(payload: Dict[str, Any]) -> str:
    """First text/plain body in a Gmail message payload, searching nested parts.

    A single-part message of another type gives its own body back.
    """
    text = _find_plain(payload)
    if text:
        return text
    if not payload.get("parts") and (payload.get("body") or {}).get("data"):
        return decode_part(payload["body"]["data"])
    return ""


def extract_code(text: str, pattern: str = config.CODE_PATTERN) -> Optional[str]:
    m = re.search(pattern, text or "")
    return m.group(0) if m else None


class GmailCodeFetcher:
    """Looks up the newest sign-in code in an account's Gmail inbox.

    Every mailbox needs an authorized-user token at
    ``<token_dir>/token-<email>.json``. The Gmail client is blocking, so each
    lookup runs in a worker thread. A client is not thread-safe: lookups on the
    same mailbox run one at a time.
    """

    def __init__(
        self,
        token_dir: str = config.GMAIL_TOKEN_DIR,
        query: str = config.CODE_QUERY,
        window_minutes: int = config.CODE_WINDOW_MINUTES,
        pattern: str = config.CODE_PATTERN,
        service_factory: Optional[Callable[[str], Any]] = None,
        max_results: int = 5,
        clock: Callable[[], float] = time.time,
    ):
        self.token_dir = token_dir
        self.query = query
        self.window_minutes = window_minutes
        self.pattern = pattern
        self.max_results = max_results
        self._clock = clock
        self._service_factory = service_factory or self._build_service
        self._services: Dict[str, Any] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock(self, email: str) -> threading.Lock:
        with self._locks_guard:
            lk = self._locks.get(email)
            if lk is None:
                lk = threading.Lock()
                self._locks[email] = lk
            return lk

    def token_path(self, email: str) -> str:
        return os.path.join(self.token_dir, f"token-{email}.json")

    def _build_service(self, email: str):
        path = self.token_path(email)
        if not os.path.exists(path):
            raise TransportError(f"No Gmail token for {email} ({path})")

        creds = Credentials.from_authorized_user_file(path, SCOPES)
        if not creds.valid and creds.expired and creds.refresh_token:
            creds.refresh(GoogleAuthRequest())
            with open(path, "w", encoding="utf-8") as f:
                f.write(creds.to_json())
        return google_build("gmail", "v1", credentials=creds, cache_discovery=False)

    def _service(self, email: str):
        service = self._services.get(email)
        if service is None:
            service = self._service_factory(email)
            self._services[email] = service
        return service

    def search_query(self) -> str:
        since = int(self._clock()) - self.window_minutes * 60
        return f"{self.query} after:{since}"

    def fetch_code_sync(self, email: str) -> Optional[str]:
        # service build, token refresh and execute() share one client
        with self._lock(email):
            return self._fetch_code_locked(email)

    def _fetch_code_locked(self, email: str) -> Optional[str]:
        try:
            service = self._service(email)
            res = service.users().messages().list(
                userId="me",
                q=self.search_query(),
                maxResults=self.max_results,
            ).execute()
            messages = res.get("messages") or []
            if not messages:
                return None

            msg = service.users().messages().get(userId="me", id=messages[0]["id"], format="full").execute()
        except HttpError as e:
            self._services.pop(email, None)
            raise TransportError(f"Gmail request for {email} failed: {e}") from e
        except GoogleAuthError as e:
            self._services.pop(email, None)
            raise TransportError(f"Gmail auth for {email} failed: {e}") from e

        sent_ms = int(msg.get("internalDate") or 0)
        if sent_ms and sent_ms / 1000 < self._clock() - self.window_minutes * 60:
            return None

        body = plain_text(msg.get("payload") or {}) or msg.get("snippet", "")
        code = extract_code(body, self.pattern)
        if code is None:
            logger.info("Newest code mail for %s has no code in it", email)
        return code

    async def fetch_code(self, email: str) -> Optional[str]:
        return await asyncio.to_thread(self.fetch_code_sync, email)
