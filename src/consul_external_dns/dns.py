"""DNS provider interface and implementations."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

import requests

from consul_external_dns.errors import (
    DataError,
    FatalError,
    TransientError,
    error_for_exception,
    error_for_response,
)
from consul_external_dns.models import DnsRecord, ProviderRecord

logger = logging.getLogger(__name__)

HETZNER_API_URL = "https://dns.hetzner.com/api/v1"

# Statuses that reject one record (bad value, conflict) rather than the
# credentials; the failure stays with that record.
RECORD_REJECTED_STATUS = {400, 404, 409, 422}

# =============================================================================
# DNS Provider Interface
# =============================================================================


class DNSProvider(ABC):
    """Abstract base class for DNS providers.

    Records are addressed by the id the provider assigns on creation. A
    change to a record is a delete followed by a create, so update_record
    is only an optimization.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def test_connection(self, zone_id: str) -> bool:
        """Test that the zone is reachable with the configured credentials."""
        pass

    @abstractmethod
    def list_records(self, zone_id: str) -> List[ProviderRecord]:
        """List all records in a zone."""
        pass

    @abstractmethod
    def create_record(self, zone_id: str, record: DnsRecord) -> str:
        """Create a record and return its provider id."""
        pass

    @abstractmethod
    def delete_record(self, zone_id: str, record_id: str) -> None:
        """Delete a record by id. Deleting a missing record succeeds."""
        pass

    def update_record(self, zone_id: str, record_id: str, record: DnsRecord) -> str:
        """Replace a record. Default implementation: delete + create."""
        self.delete_record(zone_id, record_id)
        return self.create_record(zone_id, record)


# =============================================================================
# Hetzner DNS
# =============================================================================


class HetznerDNSProvider(DNSProvider):
    """Hetzner DNS console API (https://dns.hetzner.com/api-docs)."""

    def __init__(self, token: str, api_url: str = HETZNER_API_URL, timeout: float = 10.0):
        self._url = api_url.rstrip("/")
        self._timeout = timeout
        self._session = requests.Session()
        self._session.headers["Auth-API-Token"] = token

    @property
    def name(self) -> str:
        return "Hetzner DNS"

    def _request(self, method: str, path: str, context: str, **kwargs: Any) -> requests.Response:
        try:
            response = self._session.request(
                method, f"{self._url}{path}", timeout=self._timeout, **kwargs
            )
        except requests.exceptions.RequestException as e:
            raise error_for_exception(e, context) from e
        return response

    def _raise_for_status(self, response: requests.Response, context: str) -> None:
        error = error_for_response(response, context)
        if error is not None:
            raise error

    def _raise_for_record_status(self, response: requests.Response, context: str) -> None:
        """Like _raise_for_status, but a rejected record is a DataError."""
        if response.status_code in RECORD_REJECTED_STATUS:
            detail = (response.text or "").strip()[:200]
            raise DataError(
                f"{context}: rejected with HTTP {response.status_code}"
                + (f" ({detail})" if detail else "")
            )
        self._raise_for_status(response, context)

    @staticmethod
    def _record_body(zone_id: str, record: DnsRecord) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "zone_id": zone_id,
            "type": record.type.value,
            "name": record.hostname,
            "value": record.value,
        }
        if record.ttl is not None:
            body["ttl"] = record.ttl
        return body

    def test_connection(self, zone_id: str) -> bool:
        try:
            response = self._request("GET", f"/zones/{zone_id}", f"get zone {zone_id}")
            self._raise_for_status(response, f"get zone {zone_id}")
        except (TransientError, FatalError) as e:
            logger.error(f"Failed to connect to {self.name}: {e}")
            return False
        logger.info(f"{self.name} connection successful (zone {zone_id})")
        return True

    def list_records(self, zone_id: str) -> List[ProviderRecord]:
        context = f"list records in zone {zone_id}"
        response = self._request("GET", "/records", context, params={"zone_id": zone_id})
        self._raise_for_status(response, context)
        try:
            data = response.json()
        except ValueError as e:
            raise TransientError(f"{context}: invalid JSON response: {e}") from e

        raw_records = data.get("records") if isinstance(data, dict) else None
        if not isinstance(raw_records, list):
            raise TransientError(f"{context}: unexpected response format")

        records: List[ProviderRecord] = []
        for r in raw_records:
            if not isinstance(r, dict) or not all(
                isinstance(r.get(k), str) for k in ("id", "type", "name", "value")
            ):
                logger.warning(f"Skipping malformed record: {r}")
                continue
            ttl = r.get("ttl")
            records.append(
                ProviderRecord(
                    id=r["id"],
                    zone_id=str(r.get("zone_id") or zone_id),
                    type=r["type"],
                    name=r["name"],
                    value=r["value"],
                    ttl=ttl if isinstance(ttl, int) else None,
                )
            )
        return records

    def create_record(self, zone_id: str, record: DnsRecord) -> str:
        context = f"create record {record}"
        response = self._request(
            "POST", "/records", context, json=self._record_body(zone_id, record)
        )
        self._raise_for_record_status(response, context)
        record_id = self._record_id(response, context)
        logger.info(f"Created DNS record {record} (id {record_id})")
        return record_id

    def update_record(self, zone_id: str, record_id: str, record: DnsRecord) -> str:
        context = f"update record {record_id} to {record}"
        response = self._request(
            "PUT", f"/records/{record_id}", context, json=self._record_body(zone_id, record)
        )
        self._raise_for_record_status(response, context)
        logger.info(f"Updated DNS record {record_id}: {record}")
        return self._record_id(response, context)

    def delete_record(self, zone_id: str, record_id: str) -> None:
        context = f"delete record {record_id}"
        response = self._request("DELETE", f"/records/{record_id}", context)
        if response.status_code == 404:
            logger.info(f"DNS record {record_id} already gone")
            return
        self._raise_for_record_status(response, context)
        logger.info(f"Deleted DNS record {record_id}")

    @staticmethod
    def _record_id(response: requests.Response, context: str) -> str:
        try:
            record_id = response.json()["record"]["id"]
        except (ValueError, KeyError, TypeError) as e:
            raise DataError(f"{context}: response has no record id: {e}") from e
        if not isinstance(record_id, str) or not record_id:
            raise DataError(f"{context}: response has an invalid record id: {record_id!r}")
        return record_id


# =============================================================================
# Provider Registry
# =============================================================================


def _create_hetzner(options: Dict[str, Any]) -> DNSProvider:
    return HetznerDNSProvider(
        token=options["token"],
        api_url=options.get("api_url") or HETZNER_API_URL,
        timeout=float(options.get("timeout") or 10.0),
    )


PROVIDERS: Dict[str, Callable[[Dict[str, Any]], DNSProvider]] = {
    "hetzner": _create_hetzner,
}


def create_dns_provider(name: str, options: Optional[Dict[str, Any]] = None) -> DNSProvider:
    """Factory function to create the configured DNS provider."""
    factory = PROVIDERS.get(name)
    if factory is None:
        raise FatalError(
            f"Unsupported DNS provider: '{name}'. Supported providers: "
            f"{', '.join(sorted(PROVIDERS))}"
        )
    return factory(options or {})
