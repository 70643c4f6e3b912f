"""
The session state machine, kept free of I/O and of listeners.

    connecting -> qrcode | open | close
    qrcode     -> qrcode (new code) | connecting | open | close
    open       -> close | connecting (forced reconnect)
    close      -> connecting | qrcode | open

`open -> qrcode` is the one forbidden move: a paired session must drop before it can
show a new pairing code. The orchestrator feeds it transitions and decides what to
emit from the returned `Transition`.
"""
from dataclasses import dataclass
from typing import Dict, FrozenSet
from loguru import logger

from vex_client.shared.models import ConnectionStatus, Session

ALLOWED: Dict[str, FrozenSet[str]] = {
    "connecting": frozenset({"qrcode", "open", "close"}),
    "qrcode": frozenset({"qrcode", "connecting", "open", "close"}),
    "open": frozenset({"close", "connecting"}),
    "close": frozenset({"connecting", "qrcode", "open"}),
}


@dataclass(frozen=True)
class Transition:
    previous: ConnectionStatus
    current: ConnectionStatus
    accepted: bool

    @property
    def changed(self) -> bool:
        return self.accepted and self.previous != self.current


class SessionStateMachine:
    def __init__(self, session: Session | None = None):
        self.session = session or Session()

    @property
    def status(self) -> ConnectionStatus:
        return self.session.status

    @property
    def session_id(self) -> str:
        return self.session.session_id

    def assign_session_id(self, session_id: str) -> None:
        if self.session.session_id and self.session.session_id != session_id:
            raise ValueError(
                f"session id is immutable once assigned ({self.session.session_id!r} -> {session_id!r})"
            )
        self.session.session_id = session_id

    def set_identity(self, identity: str | None) -> None:
        if identity:
            self.session.last_known_identity = identity

    def can_transition(self, target: ConnectionStatus) -> bool:
        return target == self.session.status or target in ALLOWED[self.session.status]

    def transition(self, target: ConnectionStatus) -> Transition:
        previous = self.session.status
        if target == previous and target != "qrcode":
            return Transition(previous, target, accepted=True)
        if target not in ALLOWED[previous]:
            logger.debug(f"session_id={self.session.session_id} rejected transition {previous} -> {target}")
            return Transition(previous, previous, accepted=False)
        self.session.status = target
        return Transition(previous, target, accepted=True)
