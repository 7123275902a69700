# module facilitator.ledger.repository
"""
Accès au stockage du ledger.

Chaque méthode mutante est une opération atomique de lecture-modification-écriture
bornée à UNE session (pas de verrou global):
- debit, reserve_capture/confirm_capture/release_capture,
  reserve_reclaim/confirm_reclaim/release_reclaim,
  attach_authorization, fail_authorization

MemoryLedgerRepository: verrou threading par session (mono-processus).
SupabaseLedgerRepository (supabase_repository.py): une fonction Postgres par opération.
"""
import threading
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from facilitator.errors import SessionNotFound, StateConflict
from facilitator.ledger import transitions
from facilitator.ledger.models import (
    CaptureRecord,
    CaptureStatus,
    Debit,
    Network,
    Session,
    SessionBalance,
    SessionStatus,
)
from facilitator.ledger.status import resolver


class SessionExists(StateConflict):
    reason = "session_exists"
    default_message = "Session déjà existante"


class LedgerRepository(ABC):

    # --- Réseaux ---
    @abstractmethod
    def get_network(self, network_id: str) -> Optional[Network]: ...

    @abstractmethod
    def list_networks(self, active_only: bool = True) -> List[Network]: ...

    # --- Lectures ---
    @abstractmethod
    def get_session(self, session_id: str) -> Optional[Session]: ...

    @abstractmethod
    def get_balance(self, session_id: str) -> Optional[SessionBalance]: ...

    @abstractmethod
    def list_sessions(self, *, payer: Optional[str] = None, receiver: Optional[str] = None,
                      operator_id: Optional[str] = None, status: Optional[SessionStatus] = None,
                      now: Optional[datetime] = None, limit: int = 50, offset: int = 0) -> List[Session]: ...

    @abstractmethod
    def find_debit(self, session_id: str, request_id: str) -> Optional[Debit]: ...

    @abstractmethod
    def list_debits(self, session_id: str) -> List[Debit]: ...

    @abstractmethod
    def list_capture_candidates(self, *, min_pending: Optional[int], expiring_before: Optional[datetime],
                                limit: int) -> List[str]: ...

    # --- Mutations atomiques ---
    @abstractmethod
    def insert_session(self, session: Session, balance: SessionBalance) -> None: ...

    @abstractmethod
    def debit(self, session_id: str, amount: int, request_id: str, description: Optional[str],
              now: datetime) -> Tuple[Debit, bool]:
        """Renvoie (debit, replayed). replayed=True si le requestId existait déjà."""

    @abstractmethod
    def attach_authorization(self, session_id: str, tx_id: str, token_hash: Optional[str] = None) -> Session: ...

    @abstractmethod
    def fail_authorization(self, session_id: str) -> Session: ...

    @abstractmethod
    def reserve_capture(self, session_id: str, amount: Optional[int], now: datetime) -> CaptureRecord: ...

    @abstractmethod
    def confirm_capture(self, capture_id: str, tx_id: str) -> SessionBalance: ...

    @abstractmethod
    def release_capture(self, capture_id: str, to_available: bool) -> SessionBalance: ...

    @abstractmethod
    def reserve_reclaim(self, session_id: str, now: datetime) -> int: ...

    @abstractmethod
    def confirm_reclaim(self, session_id: str, amount: int, tx_id: str) -> SessionBalance: ...

    @abstractmethod
    def release_reclaim(self, session_id: str) -> None: ...


class MemoryLedgerRepository(LedgerRepository):
    """
    Stockage en mémoire, thread-safe:
    - un verrou par session, créé paresseusement sous un verrou de registre
    - les lectures renvoient des copies (aucune fuite d'état mutable)
    """

    def __init__(self, networks: Optional[List[Network]] = None):
        self._networks: Dict[str, Network] = {n.id: n for n in (networks or [])}
        self._sessions: Dict[str, Session] = {}
        self._balances: Dict[str, SessionBalance] = {}
        self._debits: Dict[Tuple[str, str], Debit] = {}
        self._debits_by_session: Dict[str, List[Debit]] = defaultdict(list)
        self._captures: Dict[str, CaptureRecord] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock(self, session_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = self._locks[session_id] = threading.Lock()
            return lock

    def _load(self, session_id: str) -> Tuple[Session, SessionBalance]:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound()
        return session, self._balances[session_id]

    # --- Réseaux ---
    def add_network(self, network: Network) -> None:
        self._networks[network.id] = network

    def get_network(self, network_id):
        network = self._networks.get(network_id)
        return network.model_copy() if network else None

    def list_networks(self, active_only=True):
        return [n.model_copy() for n in self._networks.values() if n.is_active or not active_only]

    # --- Lectures ---
    def get_session(self, session_id):
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    def get_balance(self, session_id):
        balance = self._balances.get(session_id)
        return balance.model_copy() if balance else None

    def list_sessions(self, *, payer=None, receiver=None, operator_id=None, status=None,
                      now=None, limit=50, offset=0):
        rows = list(self._sessions.values())
        if payer:
            rows = [s for s in rows if s.payer == payer.lower()]
        if receiver:
            rows = [s for s in rows if s.receiver == receiver.lower()]
        if operator_id:
            rows = [s for s in rows if s.operator_id == operator_id]
        if status is not None:
            rows = resolver.filter(rows, status, now)
        rows.sort(key=lambda s: s.created_at, reverse=True)
        return [s.model_copy(deep=True) for s in rows[offset:offset + limit]]

    def find_debit(self, session_id, request_id):
        debit = self._debits.get((session_id, request_id))
        return debit.model_copy() if debit else None

    def list_debits(self, session_id):
        return [d.model_copy() for d in self._debits_by_session.get(session_id, [])]

    def list_capture_candidates(self, *, min_pending, expiring_before, limit):
        ids = []
        for session in sorted(self._sessions.values(), key=lambda s: s.authorization_expiry):
            balance = self._balances[session.id]
            if session.status != SessionStatus.ACTIVE or session.closing or balance.pending <= 0:
                continue
            if min_pending is not None and balance.pending < min_pending:
                continue
            if expiring_before is not None and session.authorization_expiry > expiring_before:
                continue
            ids.append(session.id)
        return ids[:limit]

    def _reserved_captures(self, session_id: str, exclude: Optional[str] = None) -> List[CaptureRecord]:
        return [
            c for c in self._captures.values()
            if c.session_id == session_id and c.status == CaptureStatus.RESERVED and c.id != exclude
        ]

    # --- Mutations ---
    def insert_session(self, session, balance):
        with self._lock(session.id):
            if session.id in self._sessions:
                raise SessionExists()
            if not balance.is_consistent():
                raise StateConflict("Solde initial incohérent", reason="balance_invariant_violated")
            self._sessions[session.id] = session.model_copy(deep=True)
            self._balances[session.id] = balance.model_copy()

    def debit(self, session_id, amount, request_id, description, now):
        with self._lock(session_id):
            # Relecture sous verrou: deux débits concurrents du même requestId
            existing = self._debits.get((session_id, request_id))
            if existing is not None:
                return existing.model_copy(), True
            session, balance = self._load(session_id)
            updated = transitions.apply_debit(session, balance, amount, now)
            debit = Debit(
                id=str(uuid.uuid4()),
                session_id=session_id,
                amount=amount,
                request_id=request_id,
                description=description,
                available_after=updated.available,
                created_at=now,
            )
            self._balances[session_id] = updated
            self._debits[(session_id, request_id)] = debit
            self._debits_by_session[session_id].append(debit)
            return debit.model_copy(), False

    def attach_authorization(self, session_id, tx_id, token_hash=None):
        with self._lock(session_id):
            session, _ = self._load(session_id)
            transactions = session.transactions.model_copy(update={"authorize_tx_id": tx_id})
            update = {"transactions": transactions}
            if token_hash:
                update["token_hash"] = token_hash
            self._sessions[session_id] = session.model_copy(update=update)
            return self._sessions[session_id].model_copy(deep=True)

    def fail_authorization(self, session_id):
        with self._lock(session_id):
            session, balance = self._load(session_id)
            session, balance = transitions.fail_authorization(session, balance)
            self._sessions[session_id] = session
            self._balances[session_id] = balance
            return session.model_copy(deep=True)

    def reserve_capture(self, session_id, amount, now):
        with self._lock(session_id):
            session, balance = self._load(session_id)
            updated, reserved = transitions.reserve_capture(session, balance, amount)
            record = CaptureRecord(id=str(uuid.uuid4()), session_id=session_id, amount=reserved, created_at=now)
            if reserved > 0:
                self._balances[session_id] = updated
                self._captures[record.id] = record
            return record.model_copy()

    def _capture(self, capture_id: str) -> CaptureRecord:
        record = self._captures.get(capture_id)
        if record is None or record.status != CaptureStatus.RESERVED:
            raise StateConflict("Capture inconnue ou déjà résolue", reason="capture_not_reserved")
        return record

    def confirm_capture(self, capture_id, tx_id):
        record = self._captures.get(capture_id)
        if record is None:
            raise StateConflict("Capture inconnue", reason="capture_not_reserved")
        with self._lock(record.session_id):
            record = self._capture(capture_id)
            session, balance = self._load(record.session_id)
            other = bool(self._reserved_captures(record.session_id, exclude=capture_id))
            self._sessions[record.session_id] = transitions.confirm_capture(session, balance, tx_id, other)
            self._captures[capture_id] = record.model_copy(update={"status": CaptureStatus.CONFIRMED, "tx_id": tx_id})
            return balance.model_copy()

    def release_capture(self, capture_id, to_available):
        record = self._captures.get(capture_id)
        if record is None:
            raise StateConflict("Capture inconnue", reason="capture_not_reserved")
        with self._lock(record.session_id):
            record = self._capture(capture_id)
            _, balance = self._load(record.session_id)
            updated = transitions.release_capture(balance, record.amount, to_available)
            self._balances[record.session_id] = updated
            self._captures[capture_id] = record.model_copy(update={"status": CaptureStatus.RELEASED})
            return updated.model_copy()

    def reserve_reclaim(self, session_id, now):
        with self._lock(session_id):
            session, balance = self._load(session_id)
            in_flight = bool(self._reserved_captures(session_id))
            updated, amount = transitions.reserve_reclaim(session, balance, now, in_flight)
            self._sessions[session_id] = updated
            return amount

    def confirm_reclaim(self, session_id, amount, tx_id):
        with self._lock(session_id):
            session, balance = self._load(session_id)
            session, balance = transitions.confirm_reclaim(session, balance, amount, tx_id)
            self._sessions[session_id] = session
            self._balances[session_id] = balance
            return balance.model_copy()

    def release_reclaim(self, session_id):
        with self._lock(session_id):
            session, _ = self._load(session_id)
            self._sessions[session_id] = transitions.release_reclaim(session)
