from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import FrozenSet, Iterable, Optional

from .audit import AuditTrail
from .metrics import AUTH_FAIL, AUTH_OK

_log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuthResult:
    ok: bool
    user: str
    reason: Optional[str] = None


class AllowList:
    """
    Static set of user identifiers allowed to call the ledger routes.

    Loaded once at startup from a newline-delimited file; surrounding
    whitespace is stripped and blank lines are ignored. There is no
    quoting, escaping or reload.
    """

    def __init__(self, users: Iterable[str] = ()):
        self._users: FrozenSet[str] = frozenset(u for u in (x.strip() for x in users) if u)

    @classmethod
    def from_file(cls, path: str) -> "AllowList":
        with open(path, "r", encoding="utf-8") as f:
            return cls(f.read().splitlines())

    def __contains__(self, user: object) -> bool:
        return isinstance(user, str) and user in self._users

    def __len__(self) -> int:
        return len(self._users)


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


class AccessGate:
    """
    Classifies a request's identity token as allowed or denied.

    Denials are written to the unauthorized audit stream (token as supplied,
    even if empty, plus the remote address) before the result is returned.
    """

    def __init__(self, allowlist: AllowList, audit: AuditTrail):
        self.allowlist = allowlist
        self.audit = audit

    def authorize(self, token: Optional[str], remote: str) -> AuthResult:
        user = token or ""
        if not user:
            return self._deny(user, remote, "missing")
        if user not in self.allowlist:
            return self._deny(user, remote, "unknown")
        AUTH_OK.inc()
        return AuthResult(ok=True, user=user)

    def _deny(self, user: str, remote: str, reason: str) -> AuthResult:
        AUTH_FAIL.labels(reason=reason).inc()
        self.audit.log_unauthorized(user, remote)
        _log.warning("unauthorized request", extra={"remote": remote, "reason": reason})
        return AuthResult(ok=False, user=user, reason=reason)
