"""Service tag parsing.

Services opt in with ``external-dns.enable=true`` and describe each record
with a group of tags sharing an identifier::

    external-dns.web.hostname=web.example.com
    external-dns.web.type=A
    external-dns.web.value=10.0.0.5
    external-dns.web.ttl=300

A group missing ``hostname``, ``type`` or ``value``, or carrying an invalid
``type`` or ``ttl``, is dropped with a warning. Other groups are unaffected.
"""

from __future__ import annotations

import logging
import re
from typing import Dict, Iterable, List, Set

from consul_external_dns.models import INT32_MAX, INT32_MIN, DnsRecord, DnsType

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "external-dns"
REQUIRED_FIELDS = ("hostname", "type", "value")

TTL_RE = re.compile(r"^[+-]?[0-9]+$")


def enable_tag(prefix: str = DEFAULT_PREFIX) -> str:
    """Return the sentinel tag a service must carry to be considered."""
    return f"{prefix}.enable=true"


def is_enabled(tags: Iterable[str], prefix: str = DEFAULT_PREFIX) -> bool:
    return enable_tag(prefix) in set(tags)


def _parse_ttl(raw: str) -> int:
    if not TTL_RE.fullmatch(raw):
        raise ValueError(f"invalid integer {raw!r}")
    ttl = int(raw)
    if not INT32_MIN <= ttl <= INT32_MAX:
        raise ValueError(f"{ttl} does not fit in a signed 32-bit integer")
    return ttl


def group_tags(tags: Iterable[str], prefix: str = DEFAULT_PREFIX) -> Dict[str, Dict[str, str]]:
    """Group ``<prefix>.<identifier>.<field>=<value>`` tags by identifier.

    Tags without the prefix, without an identifier, or without ``=`` are
    ignored. A field repeated for the same identifier keeps the last value.
    """
    full_prefix = f"{prefix}."
    groups: Dict[str, Dict[str, str]] = {}
    for tag in tags:
        if not tag.startswith(full_prefix):
            continue
        rest = tag[len(full_prefix):]
        identifier, sep, assignment = rest.partition(".")
        if not sep:
            continue
        field, sep, value = assignment.partition("=")
        if not sep:
            continue
        groups.setdefault(identifier, {})[field] = value
    return groups


def parse_dns_tags(tags: Iterable[str], prefix: str = DEFAULT_PREFIX) -> List[DnsRecord]:
    """Decode every valid tag group into a DnsRecord.

    Args:
        tags: Raw tags of one service
        prefix: Tag prefix, without the trailing dot

    Returns:
        Records in no particular order
    """
    records: List[DnsRecord] = []
    for identifier, fields in group_tags(tags, prefix).items():
        missing = [f for f in REQUIRED_FIELDS if f not in fields]
        if missing:
            logger.warning(
                f"Dropping tag group '{identifier}': missing {', '.join(missing)}"
            )
            continue

        try:
            record_type = DnsType.parse(fields["type"])
        except ValueError as e:
            logger.warning(f"Dropping tag group '{identifier}': {e}")
            continue

        ttl = None
        if "ttl" in fields:
            try:
                ttl = _parse_ttl(fields["ttl"])
            except ValueError as e:
                logger.warning(f"Dropping tag group '{identifier}': bad ttl: {e}")
                continue

        records.append(
            DnsRecord(
                hostname=fields["hostname"],
                type=record_type,
                value=fields["value"],
                ttl=ttl,
            )
        )
    return records


def desired_records(
    tag_groups: Iterable[Iterable[str]], prefix: str = DEFAULT_PREFIX
) -> Set[DnsRecord]:
    """Union of the records declared by every opted-in service.

    Identical records declared by several services collapse into one.
    """
    desired: Set[DnsRecord] = set()
    for tags in tag_groups:
        tags = list(tags)
        if not is_enabled(tags, prefix):
            continue
        desired.update(parse_dns_tags(tags, prefix))
    return desired
