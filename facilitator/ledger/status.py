"""
Statut effectif d'une session.

- expired est une vue: stored == active ET now > authorization_expiry
- le statut stocké n'est jamais réécrit par la lecture
- captured / voided sont terminaux et persistés
"""
from datetime import datetime
from typing import Iterable, List, Optional, Union

from facilitator.ledger.models import Session, SessionStatus


class EffectiveStatusResolver:

    def resolve(self, session: Session, now: datetime) -> SessionStatus:
        stored = SessionStatus(session.status)
        if stored == SessionStatus.ACTIVE and now > session.authorization_expiry:
            return SessionStatus.EXPIRED
        return stored

    def matches(self, session: Session, wanted: Optional[Union[str, SessionStatus]], now: datetime) -> bool:
        if not wanted:
            return True
        return self.resolve(session, now) == SessionStatus(wanted)

    def filter(self, sessions: Iterable[Session], wanted, now: datetime) -> List[Session]:
        return [s for s in sessions if self.matches(s, wanted, now)]

    def is_chargeable(self, session: Session, now: datetime) -> bool:
        return self.resolve(session, now) == SessionStatus.ACTIVE and not session.closing


resolver = EffectiveStatusResolver()


def parse_status_filter(value: Optional[str]) -> Optional[SessionStatus]:
    """Convertit un filtre de query string; valeur inconnue -> ValueError."""
    if value is None or value == "" or value == "all":
        return None
    return SessionStatus(value.lower())
