"""
Lecture d'un message Sign-In with Ethereum (EIP-4361).

Format attendu:
    {domain} wants you to sign in with your Ethereum account:
    {address}

    {statement optionnel}

    URI: ...
    Version: 1
    Chain ID: 8453
    Nonce: ...
    Issued At: ...
    Expiration Time: ... (optionnel)
"""
import re
from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from facilitator.errors import ValidationError
from facilitator.utils.clock import parse_timestamp

_HEADER = re.compile(r"^(?P<domain>\S+) wants you to sign in with your Ethereum account:$")
_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")
_FIELD = re.compile(r"^(?P<key>URI|Version|Chain ID|Nonce|Issued At|Expiration Time|Not Before|Request ID): (?P<value>.+)$")


class SiweMessage(BaseModel):
    domain: str
    address: str
    chain_id: int
    nonce: str
    uri: Optional[str] = None
    version: str = "1"
    issued_at: Optional[datetime] = None
    expiration_time: Optional[datetime] = None
    not_before: Optional[datetime] = None


def parse_siwe_message(message: str) -> SiweMessage:
    lines = (message or "").replace("\r\n", "\n").split("\n")
    if len(lines) < 2:
        raise ValidationError("Message SIWE invalide", reason="invalid_message")
    header = _HEADER.match(lines[0].strip())
    address = lines[1].strip()
    if not header or not _ADDRESS.match(address):
        raise ValidationError("Message SIWE invalide", reason="invalid_message")

    fields = {}
    for line in lines[2:]:
        m = _FIELD.match(line.strip())
        if m:
            fields[m.group("key")] = m.group("value").strip()

    if "Nonce" not in fields or "Chain ID" not in fields or not fields["Chain ID"].isdigit():
        raise ValidationError("Message SIWE incomplet", reason="invalid_message")

    try:
        return SiweMessage(
            domain=header.group("domain"),
            address=address,
            chain_id=int(fields["Chain ID"]),
            nonce=fields["Nonce"],
            uri=fields.get("URI"),
            version=fields.get("Version", "1"),
            issued_at=parse_timestamp(fields.get("Issued At")),
            expiration_time=parse_timestamp(fields.get("Expiration Time")),
            not_before=parse_timestamp(fields.get("Not Before")),
        )
    except ValueError:
        raise ValidationError("Dates SIWE invalides", reason="invalid_message")
