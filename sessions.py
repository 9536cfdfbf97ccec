# sessions.py
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from errors import BotError


class Step(str, Enum):
    # /store
    ASK_ACCOUNT_KEY = "askAccountKey"
    ASK_PLAN_NAME = "askPlanName"
    ASK_PLAN_PRICE = "askPlanPrice"
    ASK_MORE_PLANS = "askMorePlansOrEmail"
    ASK_EMAIL = "askEmail"
    ASK_PASSWORD = "askPassword"

    # /adddate
    ASK_USER = "askUser"
    ASK_ACCOUNT = "askAccount"
    ASK_DATE = "askDate"


@dataclass
class Session:
    owner_id: int
    flow: str
    step: Step
    draft: Dict[str, Any] = field(default_factory=dict)
    pending: Optional[str] = None


class SessionActive(BotError):
    def __init__(self, session: Session):
        super().__init__(f"{session.flow} already running for {session.owner_id} (at {session.step.value})")
        self.session = session


class SessionStore:
    """In-memory wizard sessions, at most one per owner.

    Nothing is persisted: a restart drops every wizard in progress.
    """

    def __init__(self):
        self._sessions: Dict[int, Session] = {}

    def get(self, owner_id: int) -> Optional[Session]:
        return self._sessions.get(owner_id)

    def start(self, owner_id: int, flow: str, step: Step) -> Session:
        current = self._sessions.get(owner_id)
        if current is not None:
            raise SessionActive(current)
        session = Session(owner_id=owner_id, flow=flow, step=step)
        self._sessions[owner_id] = session
        return session

    def discard(self, owner_id: int, session: Optional[Session] = None) -> bool:
        """Drop the owner's session. With ``session`` given, only if it is still that one."""
        current = self._sessions.get(owner_id)
        if current is None or (session is not None and current is not session):
            return False
        del self._sessions[owner_id]
        return True

    def __contains__(self, owner_id: int) -> bool:
        return owner_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
