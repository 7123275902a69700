"""
Instances partagées du ledger (construites paresseusement, remplaçables en tests).

- LEDGER_BACKEND=memory: MemoryLedgerRepository amorcé avec les réseaux Base
- LEDGER_BACKEND=supabase: SupabaseLedgerRepository (fonctions Postgres atomiques)
"""
from typing import List, Optional

from facilitator.chain.gateway import get_gateway
from facilitator.config import DEFAULT_MAX_DEPOSIT, DEFAULT_MIN_DEPOSIT, LEDGER_BACKEND
from facilitator.ledger.capture import CapturePolicy
from facilitator.ledger.models import Network
from facilitator.ledger.reclaim import ReclaimEngine
from facilitator.ledger.repository import LedgerRepository, MemoryLedgerRepository
from facilitator.ledger.service import SessionLedger
from facilitator.tokens.store import get_token_store

_ledger: Optional[SessionLedger] = None
_policy: Optional[CapturePolicy] = None


def default_networks() -> List[Network]:
    return [
        Network(
            id="eip155:8453",
            name="Base Mainnet",
            chain_id=8453,
            token_address="0x833589fcd6edb6e08f4c7c32d4f71b54bda02913",
            eip712_name="USDC",
            eip712_version="2",
            escrow_contract="0xbdea0d1bcc5966192b070fdf62ab4ef5b4420cff",
            token_collector="0x0e3df9510de65469c4518d7843919c0b8c7a7757",
            min_deposit=int(DEFAULT_MIN_DEPOSIT),
            max_deposit=int(DEFAULT_MAX_DEPOSIT),
        ),
        Network(
            id="eip155:84532",
            name="Base Sepolia",
            chain_id=84532,
            token_address="0x036cbd53842c5426634e7929541ec2318f3dcf7e",
            eip712_name="USD Coin",
            eip712_version="2",
            escrow_contract="0xbdea0d1bcc5966192b070fdf62ab4ef5b4420cff",
            token_collector="0x0e3df9510de65469c4518d7843919c0b8c7a7757",
            min_deposit=int(DEFAULT_MIN_DEPOSIT),
            max_deposit=int(DEFAULT_MAX_DEPOSIT),
        ),
    ]


def build_repository() -> LedgerRepository:
    if LEDGER_BACKEND == "supabase":
        from facilitator.ledger.supabase_repository import SupabaseLedgerRepository
        return SupabaseLedgerRepository()
    return MemoryLedgerRepository(default_networks())


def get_ledger() -> SessionLedger:
    global _ledger
    if _ledger is None:
        _ledger = SessionLedger(build_repository(), get_token_store(), get_gateway())
    return _ledger


def get_reclaim_engine() -> ReclaimEngine:
    return ReclaimEngine(get_ledger())


def get_capture_policy() -> CapturePolicy:
    global _policy
    if _policy is None:
        _policy = CapturePolicy()
    return _policy


def set_ledger(ledger: Optional[SessionLedger]) -> None:
    global _ledger
    _ledger = ledger
