"""Per-request client risk classification from (ASN, country)."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from groundwave.core.ipasn import IPASNTable, parse_address, parse_asn_set, parse_country_code_set


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class ClientRisk:
    level: RiskLevel
    asn: Optional[int] = None
    country: Optional[str] = None


@dataclass(frozen=True)
class RiskPolicy:
    low_risk_asns: frozenset[int] = field(default_factory=frozenset)
    high_risk_asns: frozenset[int] = field(default_factory=frozenset)
    high_risk_countries: frozenset[str] = field(default_factory=frozenset)
    trust_local_networks: bool = True

    @classmethod
    def from_settings(cls, settings) -> "RiskPolicy":
        return cls(
            low_risk_asns=parse_asn_set(settings.POW_LOW_RISK_ASNS),
            high_risk_asns=parse_asn_set(settings.POW_HIGH_RISK_ASNS),
            high_risk_countries=parse_country_code_set(settings.POW_HIGH_RISK_COUNTRIES),
            trust_local_networks=settings.POW_TRUST_LOCAL_NETWORKS,
        )


def classify(asn: Optional[int], country: Optional[str], policy: RiskPolicy) -> RiskLevel:
    """High beats low; anything unresolved or unlisted is medium."""
    if asn is None:
        return RiskLevel.MEDIUM
    normalized_country = (country or "").strip().upper()
    if normalized_country and normalized_country in policy.high_risk_countries:
        return RiskLevel.HIGH
    if asn in policy.high_risk_asns:
        return RiskLevel.HIGH
    if asn in policy.low_risk_asns:
        return RiskLevel.LOW
    return RiskLevel.MEDIUM


# RFC 1918, RFC 4193 unique-local. Not ipaddress.is_private: that also covers the
# documentation ranges, which are routable test data here.
_LOCAL_NETWORKS = tuple(
    ipaddress.ip_network(n)
    for n in ("10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16", "fc00::/7")
)


def is_local_address(addr: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    if addr.is_loopback or addr.is_link_local:
        return True
    return any(addr in network for network in _LOCAL_NETWORKS if network.version == addr.version)


class RiskClassifier:
    def __init__(self, table: IPASNTable, policy: RiskPolicy):
        self.table = table
        self.policy = policy

    def resolve(self, ip: str) -> ClientRisk:
        addr = parse_address(ip)
        if addr is None:
            return ClientRisk(level=RiskLevel.MEDIUM)

        if self.policy.trust_local_networks and is_local_address(addr):
            return ClientRisk(level=RiskLevel.LOW)

        hit = self.table.lookup(addr)
        if not hit.found:
            return ClientRisk(level=RiskLevel.MEDIUM)

        country = hit.country or None
        return ClientRisk(level=classify(hit.asn, country, self.policy), asn=hit.asn, country=country)
