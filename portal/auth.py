import secrets
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional

from fastapi import HTTPException, Request
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from .codebeamer import basic_token

SESSION_COOKIE = "portal_session"


@dataclass
class PortalSession:
    sid: str
    username: str
    auth: str  # Basic 토큰. 쿠키에는 싣지 않고 서버 메모리에만 둔다.
    created_at: float


class SessionStore:
    """In-process session table; the cookie only carries the signed session id."""

    def __init__(self, secret_key: str, max_age: int) -> None:
        self.max_age = int(max_age)
        self._ser = URLSafeTimedSerializer(secret_key, salt="portal-session")
        self._sessions: Dict[str, PortalSession] = {}
        self._lock = threading.Lock()

    def create(self, username: str, password: str) -> str:
        sid = secrets.token_urlsafe(32)
        session = PortalSession(
            sid=sid,
            username=username,
            auth=basic_token(username, password),
            created_at=time.time(),
        )
        with self._lock:
            self._purge_expired()
            self._sessions[sid] = session
        return self._ser.dumps({"sid": sid})

    def read(self, token: Optional[str]) -> Optional[PortalSession]:
        if not token:
            return None
        try:
            payload = self._ser.loads(token, max_age=self.max_age)
        except (BadSignature, SignatureExpired):
            return None
        sid = payload.get("sid") if isinstance(payload, dict) else None
        with self._lock:
            return self._sessions.get(sid) if sid else None

    def destroy(self, token: Optional[str]) -> None:
        session = self.read(token)
        if session is None:
            return
        with self._lock:
            self._sessions.pop(session.sid, None)

    def _purge_expired(self) -> None:
        cutoff = time.time() - self.max_age
        for sid in [k for k, s in self._sessions.items() if s.created_at < cutoff]:
            self._sessions.pop(sid, None)


def read_session(request: Request) -> Optional[PortalSession]:
    store: SessionStore = request.app.state.sessions
    return store.read(request.cookies.get(SESSION_COOKIE))


def require_login(request: Request) -> PortalSession:
    s = read_session(request)
    if not s:
        raise HTTPException(status_code=401, detail="인가되지 않은 사용자입니다")
    return s


class LoginRedirect(Exception):
    """Raised by page routes when the browser has no valid session."""


def require_page_login(request: Request) -> PortalSession:
    s = read_session(request)
    if not s:
        raise LoginRedirect()
    return s
