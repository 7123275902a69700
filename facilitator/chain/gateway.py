# module facilitator.chain.gateway
"""
Passerelle on-chain (collaborateur opaque).

Le ledger ne connaît ni le contrat d'escrow ni la soumission des transactions:
il appelle une opération qui renvoie un identifiant de transaction, ou échoue.
- SettlementTimeout: échec transitoire (timeout, relayer indisponible), retry sûr
- SettlementRejected: rejet définitif (revert, paramètres refusés)

RelayerGateway délègue au service relayer HTTP (clé privée du facilitateur côté relayer).
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from facilitator.config import (
    CHAIN_RELAYER_TOKEN,
    CHAIN_RELAYER_URL,
    RECLAIM_TIMEOUT_SECONDS,
    SETTLE_TIMEOUT_SECONDS,
    VERIFY_TIMEOUT_SECONDS,
)
from facilitator.errors import SettlementRejected, SettlementTimeout
from facilitator.ledger.models import Network

logger = logging.getLogger(__name__)


class ChainGateway(ABC):

    @abstractmethod
    def verify_authorization(self, network: Network, authorization: Dict[str, Any], signature: str) -> bool:
        """Signature EIP-712 ReceiveWithAuthorization (ERC-3009) valide pour `authorization.from`."""

    @abstractmethod
    def verify_message(self, address: str, message: str, signature: str, chain_id: int) -> bool:
        """Signature EIP-191 d'un message SIWE (EOA ou smart wallet ERC-1271)."""

    @abstractmethod
    def authorize(self, network: Network, payment_info: Dict[str, Any], amount: int,
                  authorization: Dict[str, Any], signature: str) -> str: ...

    @abstractmethod
    def capture(self, network: Network, payment_info: Dict[str, Any], amount: int) -> str: ...

    @abstractmethod
    def void(self, network: Network, payment_info: Dict[str, Any]) -> str: ...


class RelayerGateway(ChainGateway):

    def __init__(self, base_url: str = CHAIN_RELAYER_URL, token: str = CHAIN_RELAYER_TOKEN,
                 transport: Optional[httpx.BaseTransport] = None):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.Client(base_url=base_url, headers=headers, transport=transport)

    def close(self) -> None:
        self._client.close()

    def _post(self, path: str, payload: Dict[str, Any], timeout: int) -> Dict[str, Any]:
        try:
            resp = self._client.post(path, json=payload, timeout=timeout)
        except httpx.TimeoutException as e:
            logger.warning("Relayer timeout sur %s: %s", path, e)
            raise SettlementTimeout()
        except httpx.HTTPError as e:
            logger.warning("Relayer indisponible sur %s: %s", path, e)
            raise SettlementTimeout("Relayer indisponible", reason="settlement_unavailable")

        if resp.status_code >= 500:
            logger.warning("Relayer %s a répondu %s", path, resp.status_code)
            raise SettlementTimeout("Relayer en erreur", reason="settlement_unavailable")
        try:
            data = resp.json() if resp.content else {}
        except ValueError:
            data = None
        if not isinstance(data, dict):
            if resp.status_code >= 400:
                logger.warning("Relayer a rejeté %s (%s): %s", path, resp.status_code, resp.text[:200])
                raise SettlementRejected(f"Relayer a répondu {resp.status_code}")
            # 2xx illisible: issue on-chain inconnue, l'état d'avant l'appel est restauré
            logger.warning("Réponse illisible du relayer sur %s", path)
            raise SettlementTimeout("Réponse relayer illisible", reason="settlement_unavailable")
        if resp.status_code >= 400 or data.get("success") is False:
            detail = data.get("error") or resp.text
            logger.warning("Relayer a rejeté %s: %s", path, detail)
            raise SettlementRejected(str(detail or "Transaction rejetée"))
        return data

    def _tx(self, path: str, payload: Dict[str, Any], timeout: int) -> str:
        data = self._post(path, payload, timeout)
        tx_hash = data.get("transaction") or data.get("txHash")
        if not tx_hash:
            raise SettlementRejected("Réponse relayer sans transaction")
        return str(tx_hash)

    def verify_authorization(self, network, authorization, signature):
        payload = {
            "network": network.id,
            "chainId": network.chain_id,
            "domain": {
                "name": network.eip712_name,
                "version": network.eip712_version,
                "verifyingContract": network.token_address,
            },
            "primaryType": "ReceiveWithAuthorization",
            "authorization": authorization,
            "signature": signature,
        }
        data = self._post("/verify/authorization", payload, VERIFY_TIMEOUT_SECONDS)
        return bool(data.get("valid"))

    def verify_message(self, address, message, signature, chain_id):
        payload = {"address": address, "message": message, "signature": signature, "chainId": chain_id}
        data = self._post("/verify/message", payload, VERIFY_TIMEOUT_SECONDS)
        return bool(data.get("valid"))

    def authorize(self, network, payment_info, amount, authorization, signature):
        payload = {
            "network": network.id,
            "escrowContract": network.escrow_contract,
            "tokenCollector": network.token_collector,
            "paymentInfo": payment_info,
            "amount": str(amount),
            "authorization": authorization,
            "signature": signature,
        }
        return self._tx("/escrow/authorize", payload, SETTLE_TIMEOUT_SECONDS)

    def capture(self, network, payment_info, amount):
        payload = {
            "network": network.id,
            "escrowContract": network.escrow_contract,
            "paymentInfo": payment_info,
            "amount": str(amount),
        }
        return self._tx("/escrow/capture", payload, SETTLE_TIMEOUT_SECONDS)

    def void(self, network, payment_info):
        payload = {
            "network": network.id,
            "escrowContract": network.escrow_contract,
            "paymentInfo": payment_info,
        }
        return self._tx("/escrow/void", payload, RECLAIM_TIMEOUT_SECONDS)


_gateway: Optional[ChainGateway] = None


def get_gateway() -> ChainGateway:
    global _gateway
    if _gateway is None:
        _gateway = RelayerGateway()
    return _gateway


def set_gateway(gateway: Optional[ChainGateway]) -> None:
    global _gateway
    _gateway = gateway
