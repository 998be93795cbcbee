"""Unit tests for ConsulClient."""

import base64
import json
from typing import Any, Dict, Optional
from unittest.mock import MagicMock, patch

import pytest
import requests

from consul_external_dns.consul import ConsulClient, _next_cursor
from consul_external_dns.errors import DataError, FatalError, TransientError
from consul_external_dns.models import DnsRecord, DnsType

ADDRESS = "http://consul.test:8500"


def make_response(
    status: int = 200,
    json_data: Any = None,
    text: str = "",
    headers: Optional[Dict[str, str]] = None,
) -> MagicMock:
    response = MagicMock()
    response.status_code = status
    response.text = text
    response.headers = headers or {}
    if isinstance(json_data, Exception):
        response.json.side_effect = json_data
    else:
        response.json.return_value = json_data
    return response


def kv_entry(value: Any) -> list:
    raw = value if isinstance(value, bytes) else json.dumps(value).encode()
    return [{"Key": "dns_records", "Value": base64.b64encode(raw).decode()}]


# =============================================================================
# Watch cursor
# =============================================================================


class TestNextCursor:
    def test_uses_header_index(self) -> None:
        assert _next_cursor(None, "42") == 42
        assert _next_cursor(10, "42") == 42

    def test_missing_or_invalid_header(self) -> None:
        assert _next_cursor(10, None) is None
        assert _next_cursor(10, "abc") is None

    def test_resets_when_index_goes_backwards(self) -> None:
        assert _next_cursor(100, "7") == 0

    def test_clamps_non_positive_index_to_one(self) -> None:
        assert _next_cursor(None, "0") == 1
        assert _next_cursor(5, "-3") == 1


# =============================================================================
# Catalog
# =============================================================================


class TestFetchServiceTags:
    def test_first_call_does_not_block(self) -> None:
        client = ConsulClient(ADDRESS)
        services = {"web": ["external-dns.enable=true", "external-dns.web.type=A"]}

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = make_response(
                200, services, headers={"X-Consul-Index": "12"}
            )

            cursor, groups = client.fetch_service_tags()

            assert cursor == 12
            assert groups == [["external-dns.enable=true", "external-dns.web.type=A"]]
            params = mock_request.call_args.kwargs["params"]
            assert "index" not in params
            assert "wait" not in params
            assert 'ServiceTags contains "external-dns.enable=true"' in params["filter"]
            assert mock_request.call_args.kwargs["timeout"] == 10.0

    def test_blocking_call_sends_index_and_wait(self) -> None:
        client = ConsulClient(ADDRESS, datacenter="dc2")

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = make_response(200, {}, headers={"X-Consul-Index": "13"})

            cursor, groups = client.fetch_service_tags(12, wait=100)

            assert cursor == 13
            assert groups == []
            args, kwargs = mock_request.call_args
            assert args == ("GET", f"{ADDRESS}/v1/catalog/services")
            assert kwargs["params"]["index"] == 12
            assert kwargs["params"]["wait"] == "100s"
            assert kwargs["params"]["dc"] == "dc2"
            assert kwargs["timeout"] > 100

    def test_services_without_sentinel_are_dropped(self) -> None:
        client = ConsulClient(ADDRESS)
        services = {
            "consul": [],
            "web": ["external-dns.enable=true"],
            "api": ["external-dns.api.type=A"],
        }

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = make_response(200, services, headers={"X-Consul-Index": "5"})

            _, groups = client.fetch_service_tags()

            assert groups == [["external-dns.enable=true"]]

    def test_custom_prefix_in_filter(self) -> None:
        client = ConsulClient(ADDRESS, tag_prefix="dns")

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = make_response(200, {}, headers={"X-Consul-Index": "5"})

            client.fetch_service_tags()

            assert '"dns.enable=true"' in mock_request.call_args.kwargs["params"]["filter"]

    def test_connection_error_is_transient(self) -> None:
        client = ConsulClient(ADDRESS)

        with patch.object(client._session, "request") as mock_request:
            mock_request.side_effect = requests.exceptions.ConnectionError("refused")

            with pytest.raises(TransientError):
                client.fetch_service_tags()

    def test_acl_denied_is_fatal(self) -> None:
        client = ConsulClient(ADDRESS, token="bad")

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = make_response(403, text="ACL not found")

            with pytest.raises(FatalError):
                client.fetch_service_tags()
            assert client._session.headers["X-Consul-Token"] == "bad"


# =============================================================================
# State store
# =============================================================================


class TestStateStore:
    def test_get_all_missing_key_is_empty(self) -> None:
        client = ConsulClient(ADDRESS)

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = make_response(404)

            assert client.get_all("dns_records") == {}

    def test_get_all_decodes_records(self) -> None:
        client = ConsulClient(ADDRESS)
        stored = {
            "id1": {"hostname": "a.com", "type": "A", "ttl": 300, "value": "1.1.1.1"},
            "id2": {"hostname": "b.com", "type": "CNAME", "ttl": None, "value": "a.com"},
        }

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = make_response(200, kv_entry(stored))

            records = client.get_all("dns_records")

            assert records == {
                "id1": DnsRecord(hostname="a.com", type=DnsType.A, value="1.1.1.1", ttl=300),
                "id2": DnsRecord(hostname="b.com", type=DnsType.CNAME, value="a.com"),
            }

    def test_get_all_drops_undecodable_entries(self) -> None:
        client = ConsulClient(ADDRESS)
        stored = {
            "id1": {"hostname": "a.com", "type": "A", "ttl": 300, "value": "1.1.1.1"},
            "id2": {"hostname": "b.com", "type": "MX", "value": "mail"},
            "id3": "garbage",
        }

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = make_response(200, kv_entry(stored))

            assert list(client.get_all("dns_records")) == ["id1"]

    def test_get_all_invalid_json_is_data_error(self) -> None:
        client = ConsulClient(ADDRESS)

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = make_response(200, kv_entry(b"not json {{{"))

            with pytest.raises(DataError):
                client.get_all("dns_records")

    def test_get_all_invalid_base64_is_data_error(self) -> None:
        client = ConsulClient(ADDRESS)

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = make_response(
                200, [{"Key": "dns_records", "Value": "!!!not-base64"}]
            )

            with pytest.raises(DataError):
                client.get_all("dns_records")

    def test_get_all_empty_value_is_empty(self) -> None:
        client = ConsulClient(ADDRESS)

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = make_response(200, [{"Key": "dns_records", "Value": None}])

            assert client.get_all("dns_records") == {}

    def test_put_all_writes_whole_map(self) -> None:
        client = ConsulClient(ADDRESS)
        records = {"id1": DnsRecord(hostname="a.com", type=DnsType.A, value="1.1.1.1", ttl=300)}

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = make_response(200, text="true")

            client.put_all("dns_records", records)

            args, kwargs = mock_request.call_args
            assert args == ("PUT", f"{ADDRESS}/v1/kv/dns_records")
            assert json.loads(kwargs["data"]) == {
                "id1": {"hostname": "a.com", "type": "A", "ttl": 300, "value": "1.1.1.1"}
            }

    def test_put_all_refused_is_transient(self) -> None:
        client = ConsulClient(ADDRESS)

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = make_response(200, text="false")

            with pytest.raises(TransientError):
                client.put_all("dns_records", {})


# =============================================================================
# Sessions and keys
# =============================================================================


class TestSessions:
    def test_create_session(self) -> None:
        client = ConsulClient(ADDRESS)

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = make_response(200, {"ID": "abc-123"})

            session_id = client.create_session("consul-external-dns", ttl=15, lock_delay=5)

            assert session_id == "abc-123"
            assert mock_request.call_args.kwargs["json"] == {
                "Name": "consul-external-dns",
                "TTL": "15s",
                "LockDelay": "5s",
                "Behavior": "release",
            }

    def test_renew_missing_session_is_fatal(self) -> None:
        client = ConsulClient(ADDRESS)

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = make_response(404, text="Session id 'x' not found")

            with pytest.raises(FatalError, match="no longer exists"):
                client.renew_session("x")

    def test_acquire_key_binds_session(self) -> None:
        client = ConsulClient(ADDRESS)

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = make_response(200, text="true")

            assert client.acquire_key("consul_lock", "abc", "{}") is True
            assert mock_request.call_args.kwargs["params"] == {"acquire": "abc"}

    def test_acquire_key_held_elsewhere(self) -> None:
        client = ConsulClient(ADDRESS)

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = make_response(200, text="false")

            assert client.acquire_key("consul_lock", "abc") is False

    def test_cas_create_key_uses_index_zero(self) -> None:
        client = ConsulClient(ADDRESS)

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = make_response(200, text="true\n")

            assert client.cas_create_key("consul_lock", "{}") is True
            assert mock_request.call_args.kwargs["params"] == {"cas": 0}

    def test_watch_key_missing(self) -> None:
        client = ConsulClient(ADDRESS)

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = make_response(404, headers={"X-Consul-Index": "9"})

            assert client.watch_key("consul_lock", 3, wait=2.5) == (9, None)
            assert mock_request.call_args.kwargs["params"] == {"index": 3, "wait": "3s"}

    def test_watch_key_returns_entry(self) -> None:
        client = ConsulClient(ADDRESS)
        entry = {"Key": "consul_lock", "Session": "abc"}

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = make_response(
                200, [entry], headers={"X-Consul-Index": "10"}
            )

            assert client.watch_key("consul_lock") == (10, entry)

    def test_test_connection(self) -> None:
        client = ConsulClient(ADDRESS)

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = make_response(200, "10.0.0.1:8300")
            assert client.test_connection() is True

            mock_request.side_effect = requests.exceptions.ConnectionError("refused")
            assert client.test_connection() is False
