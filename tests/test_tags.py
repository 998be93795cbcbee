"""Unit tests for service tag parsing."""

import logging

import pytest

from consul_external_dns.models import DnsRecord, DnsType
from consul_external_dns.tags import desired_records, group_tags, is_enabled, parse_dns_tags


def group(identifier: str, **fields: str) -> list:
    return [f"external-dns.{identifier}.{k}={v}" for k, v in fields.items()]


# =============================================================================
# Grouping
# =============================================================================


def test_group_tags_ignores_foreign_and_malformed_tags() -> None:
    tags = [
        "traefik.enable=true",
        "external-dns.enable=true",
        "external-dns.web",
        "external-dns.web.hostname",
        "external-dns.web.hostname=web.example.com",
    ]
    assert group_tags(tags) == {"web": {"hostname": "web.example.com"}}


def test_group_tags_splits_on_first_separator_only() -> None:
    tags = ["external-dns.web.value=1.2.3.4", "external-dns.web.hostname=a=b.example.com"]
    assert group_tags(tags) == {"web": {"value": "1.2.3.4", "hostname": "a=b.example.com"}}


def test_group_tags_last_write_wins() -> None:
    tags = ["external-dns.web.value=1.1.1.1", "external-dns.web.value=2.2.2.2"]
    assert group_tags(tags) == {"web": {"value": "2.2.2.2"}}


def test_group_tags_custom_prefix() -> None:
    tags = ["dns.web.type=A", "external-dns.other.type=A"]
    assert group_tags(tags, prefix="dns") == {"web": {"type": "A"}}


# =============================================================================
# Parsing
# =============================================================================


def test_parse_full_group() -> None:
    tags = group("web", hostname="example.com", type="A", value="1.2.3.4", ttl="300")

    assert parse_dns_tags(tags) == [
        DnsRecord(hostname="example.com", type=DnsType.A, value="1.2.3.4", ttl=300)
    ]


def test_parse_without_ttl_gives_none() -> None:
    tags = group("web", hostname="example.com", type="CNAME", value="target.example.com")

    (record,) = parse_dns_tags(tags)
    assert record.ttl is None
    assert record.type is DnsType.CNAME


@pytest.mark.parametrize("missing", ["hostname", "type", "value"])
def test_parse_drops_group_missing_required_field(missing: str, caplog) -> None:
    fields = {"hostname": "example.com", "type": "A", "value": "1.2.3.4"}
    del fields[missing]

    with caplog.at_level(logging.WARNING):
        records = parse_dns_tags(group("web", **fields))

    assert records == []
    assert "web" in caplog.text
    assert missing in caplog.text


def test_parse_drops_unknown_type() -> None:
    tags = group("web", hostname="example.com", type="FOO", value="1.2.3.4")
    assert parse_dns_tags(tags) == []


def test_parse_type_is_case_sensitive() -> None:
    tags = group("web", hostname="example.com", type="aaaa", value="::1")
    assert parse_dns_tags(tags) == []


@pytest.mark.parametrize("ttl", ["abc", "3.5", "", "2147483648", "-2147483649", " 300"])
def test_parse_drops_group_with_bad_ttl(ttl: str) -> None:
    tags = group("web", hostname="example.com", type="A", value="1.2.3.4", ttl=ttl)
    assert parse_dns_tags(tags) == []


@pytest.mark.parametrize("ttl,expected", [("2147483647", 2147483647), ("-5", -5), ("+60", 60)])
def test_parse_accepts_int32_ttl(ttl: str, expected: int) -> None:
    tags = group("web", hostname="example.com", type="A", value="1.2.3.4", ttl=ttl)
    (record,) = parse_dns_tags(tags)
    assert record.ttl == expected


def test_bad_group_does_not_affect_others() -> None:
    tags = group("good", hostname="a.example.com", type="AAAA", value="::1") + group(
        "bad", hostname="b.example.com", type="A"
    )

    assert parse_dns_tags(tags) == [
        DnsRecord(hostname="a.example.com", type=DnsType.AAAA, value="::1")
    ]


# =============================================================================
# Desired set
# =============================================================================


def test_is_enabled() -> None:
    assert is_enabled(["external-dns.enable=true"])
    assert not is_enabled(["external-dns.enable=false"])
    assert not is_enabled([])


def test_desired_records_skips_services_not_enabled() -> None:
    enabled = ["external-dns.enable=true"] + group(
        "web", hostname="a.example.com", type="A", value="1.1.1.1"
    )
    disabled = group("api", hostname="b.example.com", type="A", value="2.2.2.2")

    assert desired_records([enabled, disabled]) == {
        DnsRecord(hostname="a.example.com", type=DnsType.A, value="1.1.1.1")
    }


def test_desired_records_dedups_identical_records_across_services() -> None:
    svc1 = ["external-dns.enable=true"] + group(
        "one", hostname="a.example.com", type="A", value="1.1.1.1", ttl="300"
    )
    svc2 = ["external-dns.enable=true"] + group(
        "two", hostname="a.example.com", type="A", value="1.1.1.1", ttl="300"
    )

    assert len(desired_records([svc1, svc2])) == 1


def test_desired_records_keeps_records_differing_only_in_ttl() -> None:
    svc1 = ["external-dns.enable=true"] + group(
        "one", hostname="a.example.com", type="A", value="1.1.1.1", ttl="300"
    )
    svc2 = ["external-dns.enable=true"] + group(
        "two", hostname="a.example.com", type="A", value="1.1.1.1"
    )

    assert len(desired_records([svc1, svc2])) == 2
