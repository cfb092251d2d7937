"""
Identity Signal Extractor

Derives a best-effort actor identity from an inbound submission.
The system is anonymous by design: the network address is only ever stored
as a salted fingerprint, and the self-reported contact is normalized but
never verified.
"""
import hashlib
import ipaddress
from dataclasses import dataclass
from typing import Mapping, Optional


UNKNOWN_ADDRESS = "unknown"
MAX_CLIENT_SIGNAL_LENGTH = 255


@dataclass(frozen=True)
class ActorIdentity:
    """Per-request identity signals. Fingerprint is the dedup/rate key."""
    fingerprint: str
    contact: Optional[str] = None
    client_signal: Optional[str] = None


def normalize_address(raw_address: Optional[str]) -> str:
    """
    Canonical form of a network address. IPv6 collapses to its /64 prefix,
    IPv4-mapped IPv6 to the plain IPv4 address.
    """
    if not raw_address:
        return UNKNOWN_ADDRESS
    candidate = raw_address.strip()
    try:
        address = ipaddress.ip_address(candidate)
    except ValueError:
        return candidate.lower() or UNKNOWN_ADDRESS

    if isinstance(address, ipaddress.IPv6Address):
        if address.ipv4_mapped is not None:
            return str(address.ipv4_mapped)
        network = ipaddress.ip_network(f"{address}/64", strict=False)
        return str(network)
    return str(address)


def fingerprint_address(address: str, salt: str) -> str:
    """Salted SHA-256 of the normalized address (hex, 64 chars)."""
    digest = hashlib.sha256(f"{salt}:{address}".encode("utf-8"))
    return digest.hexdigest()


def normalize_contact(contact: Optional[str]) -> Optional[str]:
    """Trim and lowercase a self-reported contact; blank means absent."""
    if contact is None:
        return None
    cleaned = contact.strip().lower()
    return cleaned or None


class IdentitySignalExtractor:
    """
    Builds an ActorIdentity from the network peer address and headers.

    Usage:
        extractor = IdentitySignalExtractor(salt="...", trust_proxy_headers=True)
        identity = extractor.extract(peer_address, headers, contact=body.actor_contact)
    """

    def __init__(self, salt: str, trust_proxy_headers: bool = False):
        self.salt = salt
        self.trust_proxy_headers = trust_proxy_headers

    def resolve_address(self, peer_address: Optional[str], headers: Mapping[str, str]) -> str:
        """Client address, honoring X-Forwarded-For only behind a trusted proxy."""
        if self.trust_proxy_headers:
            forwarded = headers.get("x-forwarded-for")
            if forwarded:
                first_hop = forwarded.split(",")[0].strip()
                if first_hop:
                    return normalize_address(first_hop)
        return normalize_address(peer_address)

    def extract(
        self,
        peer_address: Optional[str],
        headers: Mapping[str, str],
        contact: Optional[str] = None,
    ) -> ActorIdentity:
        address = self.resolve_address(peer_address, headers)
        user_agent = headers.get("user-agent")
        if user_agent:
            user_agent = user_agent[:MAX_CLIENT_SIGNAL_LENGTH]

        return ActorIdentity(
            fingerprint=fingerprint_address(address, self.salt),
            contact=normalize_contact(contact),
            client_signal=user_agent or None,
        )
