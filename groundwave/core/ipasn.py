"""IP -> (ASN, country) range index.

Dataset format (ip2asn "combined" TSV), one range per line:

    range_start<TAB>range_end<TAB>asn<TAB>country<TAB>owner

Ranges are kept in two arrays (IPv4, IPv6) sorted by start address; lookup is a
binary search for the last range starting at or before the address.
"""

from __future__ import annotations

import bisect
import ipaddress
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, NamedTuple, Optional

logger = logging.getLogger(__name__)

DEFAULT_DATA_PATH = Path(__file__).resolve().parent.parent / "data" / "ip2asn-combined.tsv"

_MAX_ASN = 0xFFFFFFFF


class Lookup(NamedTuple):
    asn: int
    country: str
    found: bool


NOT_FOUND = Lookup(asn=0, country="", found=False)


@dataclass(frozen=True)
class IPASNRange:
    start: int
    end: int
    asn: int
    country: str
    owner: str


def _unmap(addr: ipaddress.IPv4Address | ipaddress.IPv6Address):
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        return addr.ipv4_mapped
    return addr


def parse_address(value: str) -> Optional[ipaddress.IPv4Address | ipaddress.IPv6Address]:
    """Parse an address, unmapping IPv4-mapped IPv6. Returns None when invalid."""
    raw = (value or "").strip()
    if not raw:
        return None
    # Zone ids ("fe80::1%eth0") are not meaningful for range lookup.
    raw = raw.split("%", 1)[0]
    try:
        return _unmap(ipaddress.ip_address(raw))
    except ValueError:
        return None


def _parse_asn(value: str) -> int:
    raw = value.strip()
    if not (raw.isascii() and raw.isdigit()):
        raise ValueError(f"invalid ASN {value!r}")
    asn = int(raw)
    if asn > _MAX_ASN:
        raise ValueError(f"ASN {value!r} out of range")
    return asn


class IPASNTable:
    """Immutable, sorted range index for both address families."""

    def __init__(self, v4: Iterable[IPASNRange] = (), v6: Iterable[IPASNRange] = ()):
        # Stable sort keeps file order among equal starts: first hit wins.
        self._v4 = sorted(v4, key=lambda r: r.start)
        self._v6 = sorted(v6, key=lambda r: r.start)
        self._v4_starts = [r.start for r in self._v4]
        self._v6_starts = [r.start for r in self._v6]

    def __len__(self) -> int:
        return len(self._v4) + len(self._v6)

    @property
    def v4_count(self) -> int:
        return len(self._v4)

    @property
    def v6_count(self) -> int:
        return len(self._v6)

    def lookup(self, ip: str | ipaddress.IPv4Address | ipaddress.IPv6Address | None) -> Lookup:
        if ip is None:
            return NOT_FOUND
        addr = parse_address(ip) if isinstance(ip, str) else _unmap(ip)
        if addr is None:
            return NOT_FOUND

        if addr.version == 4:
            ranges, starts = self._v4, self._v4_starts
        else:
            ranges, starts = self._v6, self._v6_starts

        value = int(addr)
        index = bisect.bisect_right(starts, value) - 1
        if index < 0:
            return NOT_FOUND

        # Equal starts: bisect_right lands on the last one; walk back to the first.
        start = starts[index]
        while index > 0 and starts[index - 1] == start:
            index -= 1

        candidate = ranges[index]
        if value > candidate.end:
            return NOT_FOUND
        return Lookup(asn=candidate.asn, country=candidate.country, found=True)


def parse_tsv(lines: Iterable[str]) -> IPASNTable:
    """Build a table from TSV lines. Malformed lines are skipped with a warning."""
    v4: list[IPASNRange] = []
    v6: list[IPASNRange] = []
    skipped = 0

    for line_number, line in enumerate(lines, start=1):
        line = line.rstrip("\r\n")
        if not line.strip():
            continue

        fields = line.split("\t", 4)
        if len(fields) < 3:
            logger.warning("ipasn.skip line=%d reason=missing_columns", line_number)
            skipped += 1
            continue

        start = parse_address(fields[0])
        end = parse_address(fields[1])
        if start is None or end is None:
            logger.warning("ipasn.skip line=%d reason=invalid_address", line_number)
            skipped += 1
            continue
        if start.version != end.version:
            logger.warning("ipasn.skip line=%d reason=family_mismatch", line_number)
            skipped += 1
            continue
        if int(start) > int(end):
            logger.warning("ipasn.skip line=%d reason=range_order", line_number)
            skipped += 1
            continue

        try:
            asn = _parse_asn(fields[2])
        except ValueError:
            logger.warning("ipasn.skip line=%d reason=invalid_asn", line_number)
            skipped += 1
            continue

        country = fields[3].strip().upper() if len(fields) > 3 else ""
        if country == "NONE":
            country = ""
        owner = fields[4].strip() if len(fields) > 4 else ""

        entry = IPASNRange(start=int(start), end=int(end), asn=asn, country=country, owner=owner)
        (v4 if start.version == 4 else v6).append(entry)

    table = IPASNTable(v4, v6)
    logger.info("ipasn.parsed v4=%d v6=%d skipped=%d", table.v4_count, table.v6_count, skipped)
    return table


def load_table(path: str | Path | None = None) -> IPASNTable:
    """Load the dataset from disk. I/O errors propagate (startup is expected to fail)."""
    target = Path(path) if path else DEFAULT_DATA_PATH
    with target.open("r", encoding="utf-8") as handle:
        return parse_tsv(handle)


def parse_asn_set(raw: str) -> frozenset[int]:
    """Parse "13335, 15169, 0" into a set of ASNs. ASN 0 is a legitimate member."""
    result: set[int] = set()
    for part in (raw or "").split(","):
        token = part.strip()
        if not token:
            continue
        result.add(_parse_asn(token))
    return frozenset(result)


def parse_country_code_set(raw: str) -> frozenset[str]:
    """Parse "cn, RU" into upper-case ISO-3166 alpha-2 codes."""
    result: set[str] = set()
    for part in (raw or "").split(","):
        token = part.strip().upper()
        if not token:
            continue
        if len(token) != 2 or not ("A" <= token[0] <= "Z" and "A" <= token[1] <= "Z"):
            raise ValueError(f"invalid country code {part.strip()!r}")
        result.add(token)
    return frozenset(result)
