"""Consul HTTP API client.

Covers the parts of the API consul-external-dns depends on:

    catalog   blocking query for the tags of opted-in services
    kv        reconciliation state, lock keys, key watches
    session   create / renew / destroy
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import math
from typing import Any, Dict, List, Optional, Tuple

import requests

from consul_external_dns.errors import (
    DataError,
    ExternalDNSError,
    FatalError,
    TransientError,
    error_for_exception,
    error_for_response,
)
from consul_external_dns.models import DnsRecord
from consul_external_dns.tags import DEFAULT_PREFIX, enable_tag, is_enabled

logger = logging.getLogger(__name__)

DEFAULT_ADDRESS = "http://127.0.0.1:8500"
DEFAULT_WATCH_WAIT = 100


def _wait_param(wait: float) -> str:
    # "0s" would mean Consul's default of five minutes.
    return f"{max(1, math.ceil(wait))}s"


def _next_cursor(previous: Optional[int], header: Optional[str]) -> Optional[int]:
    """Compute the cursor for the next blocking query from X-Consul-Index.

    Consul may return an index lower than the one sent (e.g. after a snapshot
    restore); the documented remedy is to start over from 0. An index below 1
    is clamped to 1, since a query with index 0 never blocks.
    """
    try:
        index = int(header) if header is not None else None
    except ValueError:
        index = None
    if index is None:
        return None
    if index < 1:
        return 1
    if previous is not None and index < previous:
        return 0
    return index


class ConsulClient:
    def __init__(
        self,
        address: str = DEFAULT_ADDRESS,
        datacenter: Optional[str] = None,
        token: Optional[str] = None,
        timeout: float = 10.0,
        tag_prefix: str = DEFAULT_PREFIX,
    ):
        self._url = address.rstrip("/")
        self.datacenter = datacenter or None
        self.tag_prefix = tag_prefix
        self._timeout = timeout
        self._session = requests.Session()
        if token:
            self._session.headers["X-Consul-Token"] = token

    # -------------------------------------------------------------------------
    # Plumbing
    # -------------------------------------------------------------------------

    def _params(self, **params: Any) -> Dict[str, Any]:
        if self.datacenter:
            params["dc"] = self.datacenter
        return {k: v for k, v in params.items() if v is not None}

    def _request(
        self,
        method: str,
        path: str,
        context: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        allow_not_found: bool = False,
        **kwargs: Any,
    ) -> requests.Response:
        try:
            response = self._session.request(
                method,
                f"{self._url}/v1/{path}",
                params=self._params(**(params or {})),
                timeout=timeout if timeout is not None else self._timeout,
                **kwargs,
            )
        except requests.exceptions.RequestException as e:
            raise error_for_exception(e, context) from e

        if allow_not_found and response.status_code == 404:
            return response
        error = error_for_response(response, context)
        if error is not None:
            raise error
        return response

    def _blocking_timeout(self, wait: float) -> float:
        # Consul adds up to wait/16 of jitter to a blocking query.
        return wait + wait / 16 + self._timeout

    @staticmethod
    def _json(response: requests.Response, context: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise TransientError(f"{context}: invalid JSON response: {e}") from e

    @staticmethod
    def _is_true(response: requests.Response) -> bool:
        return response.text.strip().startswith("true")

    # -------------------------------------------------------------------------
    # Catalog
    # -------------------------------------------------------------------------

    def fetch_service_tags(
        self, cursor: Optional[int] = None, wait: float = DEFAULT_WATCH_WAIT
    ) -> Tuple[Optional[int], List[List[str]]]:
        """Return the tags of every service opted in to external-dns.

        Without a cursor the call returns immediately. With one it blocks
        until the catalog changes past that index or ``wait`` seconds pass,
        and always returns the full current tag set, never a delta.

        Args:
            cursor: Index returned by the previous call, or None
            wait: Server-side wait bound in seconds

        Returns:
            (next cursor, list of tag lists, one per service)
        """
        params: Dict[str, Any] = {
            "filter": f'ServiceKind == "" and ServiceTags contains "{enable_tag(self.tag_prefix)}"'
        }
        timeout = None
        if cursor is not None:
            params["index"] = cursor
            params["wait"] = _wait_param(wait)
            timeout = self._blocking_timeout(wait)

        response = self._request(
            "GET", "catalog/services", "watch catalog services", params=params, timeout=timeout
        )
        next_cursor = _next_cursor(cursor, response.headers.get("X-Consul-Index"))
        services = self._json(response, "watch catalog services")
        if not isinstance(services, dict):
            raise TransientError("watch catalog services: unexpected response format")

        tag_groups: List[List[str]] = []
        for service_name, tags in sorted(services.items()):
            if not isinstance(tags, list):
                logger.warning(f"Skipping service '{service_name}': tags are not a list")
                continue
            tags = [t for t in tags if isinstance(t, str)]
            if not is_enabled(tags, self.tag_prefix):
                logger.debug(f"Skipping service '{service_name}': not enabled")
                continue
            tag_groups.append(tags)
        return next_cursor, tag_groups

    # -------------------------------------------------------------------------
    # KV store
    # -------------------------------------------------------------------------

    def get_key(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the raw KV entry for a key, or None if it doesn't exist."""
        response = self._request("GET", f"kv/{key}", f"get key {key}", allow_not_found=True)
        if response.status_code == 404:
            return None
        entries = self._json(response, f"get key {key}")
        if not isinstance(entries, list) or not entries or not isinstance(entries[0], dict):
            raise DataError(f"get key {key}: unexpected response format")
        return entries[0]

    @staticmethod
    def decode_value(entry: Dict[str, Any]) -> bytes:
        encoded = entry.get("Value")
        if encoded is None:
            return b""
        try:
            return base64.b64decode(encoded, validate=True)
        except (binascii.Error, TypeError, ValueError) as e:
            raise DataError(f"Can't decode base64 value of key {entry.get('Key')}: {e}") from e

    def get_all(self, key: str) -> Dict[str, DnsRecord]:
        """Load the reconciliation state stored under ``key``.

        A missing key is an empty state. Entries that don't decode are
        dropped with a warning; a value that isn't a JSON object raises
        DataError.
        """
        entry = self.get_key(key)
        if entry is None:
            return {}
        raw = self.decode_value(entry)
        if not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise DataError(f"State under key {key} is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise DataError(f"State under key {key} is not a JSON object")

        records: Dict[str, DnsRecord] = {}
        for record_id, value in data.items():
            try:
                records[record_id] = DnsRecord.from_dict(value)
            except DataError as e:
                logger.warning(f"Dropping undecodable state entry {record_id}: {e}")
        return records

    def put_all(self, key: str, records: Dict[str, DnsRecord]) -> None:
        """Replace the state under ``key`` with ``records`` in one write."""
        body = {record_id: record.to_dict() for record_id, record in records.items()}
        response = self._request(
            "PUT",
            f"kv/{key}",
            f"store state under key {key}",
            data=json.dumps(body, sort_keys=True),
        )
        if not self._is_true(response):
            raise TransientError(f"store state under key {key}: Consul refused the write")

    def cas_create_key(self, key: str, value: str) -> bool:
        """Create ``key`` only if it doesn't exist yet (check-and-set index 0)."""
        response = self._request(
            "PUT", f"kv/{key}", f"create key {key}", params={"cas": 0}, data=value
        )
        return self._is_true(response)

    def delete_key(self, key: str) -> None:
        self._request("DELETE", f"kv/{key}", f"delete key {key}")

    def acquire_key(self, key: str, session_id: str, value: str = "") -> bool:
        """Try to bind ``key`` to a session. True if this session now holds it."""
        response = self._request(
            "PUT", f"kv/{key}", f"acquire key {key}", params={"acquire": session_id}, data=value
        )
        return self._is_true(response)

    def release_key(self, key: str, session_id: str) -> bool:
        response = self._request(
            "PUT", f"kv/{key}", f"release key {key}", params={"release": session_id}
        )
        return self._is_true(response)

    def watch_key(
        self, key: str, cursor: Optional[int] = None, wait: float = DEFAULT_WATCH_WAIT
    ) -> Tuple[Optional[int], Optional[Dict[str, Any]]]:
        """Blocking read of a key; returns (next cursor, entry or None)."""
        params: Dict[str, Any] = {}
        timeout = None
        if cursor is not None:
            params = {"index": cursor, "wait": _wait_param(wait)}
            timeout = self._blocking_timeout(wait)
        response = self._request(
            "GET",
            f"kv/{key}",
            f"watch key {key}",
            params=params,
            timeout=timeout,
            allow_not_found=True,
        )
        next_cursor = _next_cursor(cursor, response.headers.get("X-Consul-Index"))
        if response.status_code == 404:
            return next_cursor, None
        entries = self._json(response, f"watch key {key}")
        if not isinstance(entries, list) or not entries:
            return next_cursor, None
        return next_cursor, entries[0]

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    def create_session(self, name: str, ttl: int, lock_delay: int) -> str:
        """Register a session whose locks are released when it goes away."""
        body = {
            "Name": name,
            "TTL": f"{int(ttl)}s",
            "LockDelay": f"{int(lock_delay)}s",
            "Behavior": "release",
        }
        response = self._request("PUT", "session/create", "create session", json=body)
        data = self._json(response, "create session")
        session_id = data.get("ID") if isinstance(data, dict) else None
        if not isinstance(session_id, str) or not session_id:
            raise TransientError(f"create session: response has no session id: {data}")
        return session_id

    def renew_session(self, session_id: str) -> None:
        context = f"renew session {session_id}"
        response = self._request(
            "PUT", f"session/renew/{session_id}", context, allow_not_found=True
        )
        if response.status_code == 404:
            raise FatalError(f"{context}: session no longer exists")

    def destroy_session(self, session_id: str) -> None:
        self._request("PUT", f"session/destroy/{session_id}", f"destroy session {session_id}")

    def leader(self) -> str:
        """Return the address of the Consul leader; used as a connectivity check."""
        response = self._request("GET", "status/leader", "get cluster leader")
        return str(self._json(response, "get cluster leader"))

    def test_connection(self) -> bool:
        try:
            leader = self.leader()
        except ExternalDNSError as e:
            logger.error(f"Failed to connect to Consul at {self._url}: {e}")
            return False
        logger.info(f"Consul connection successful (leader {leader or 'unknown'})")
        return True
