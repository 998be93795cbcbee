"""Record types shared by the tag parser, the DNS providers and the state store."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from consul_external_dns.errors import DataError

INT32_MIN = -(2**31)
INT32_MAX = 2**31 - 1


class DnsType(Enum):
    """Record types consul-external-dns knows how to manage."""

    A = "A"
    AAAA = "AAAA"
    CNAME = "CNAME"

    @classmethod
    def parse(cls, value: str) -> "DnsType":
        """Parse an exact, case-sensitive type name."""
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Invalid DNS type: {value!r}") from None


@dataclass(frozen=True)
class DnsRecord:
    """A record wanted by a service, derived from its discovery tags.

    Two records are the same record when all four fields match, no matter
    which service declared them.
    """

    hostname: str
    type: DnsType
    value: str
    ttl: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hostname": self.hostname,
            "type": self.type.value,
            "ttl": self.ttl,
            "value": self.value,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DnsRecord":
        """Decode a record written by to_dict. Raises DataError on bad input."""
        if not isinstance(data, Mapping):
            raise DataError(f"Expected a JSON object, got {type(data).__name__}")
        hostname = data.get("hostname")
        value = data.get("value")
        if not isinstance(hostname, str) or not isinstance(value, str):
            raise DataError(f"Record is missing hostname or value: {data}")
        try:
            record_type = DnsType.parse(str(data.get("type")))
        except ValueError as e:
            raise DataError(str(e)) from e
        ttl = data.get("ttl")
        if ttl is not None and (isinstance(ttl, bool) or not isinstance(ttl, int)):
            raise DataError(f"Record TTL must be an integer or null: {data}")
        return cls(hostname=hostname, type=record_type, value=value, ttl=ttl)

    def __str__(self) -> str:
        ttl = f" ttl={self.ttl}" if self.ttl is not None else ""
        return f"{self.hostname} {self.type.value} {self.value}{ttl}"


@dataclass(frozen=True)
class ProviderRecord:
    """A record as it exists in a DNS provider's zone."""

    id: str
    zone_id: str
    type: str
    name: str
    value: str
    ttl: Optional[int] = None
