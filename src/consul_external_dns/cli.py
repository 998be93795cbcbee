#!/usr/bin/env python3
"""consul-external-dns - DNS records from Consul service tags

Watches the Consul catalog for services tagged ``external-dns.enable=true``
and keeps the records described by their tags in sync with a DNS provider.
Several instances can run side by side; a Consul lock makes sure only one of
them touches the DNS zone at a time.

Supported DNS Providers:
    - hetzner: Hetzner DNS console API

Service tags:

    external-dns.enable=true                  opt the service in
    external-dns.<id>.hostname=web.example.com
    external-dns.<id>.type=A                  A, AAAA or CNAME
    external-dns.<id>.value=10.0.0.5
    external-dns.<id>.ttl=300                 optional

Usage:

    consul-external-dns [options] hetzner --dns-token TOKEN --dns-zone-id ZONE

Every option can also come from an environment variable or a YAML config
file (``--config``), in that order of precedence after the command line.
Config file keys are the option names with underscores, e.g.::

    consul_address: http://consul.service.consul:8500
    session_ttl: 30
    dns_zone_id: abc123

Environment variables:

    Hetzner DNS Provider:
        HETZNER_DNS_TOKEN      API token (required)
        HETZNER_DNS_ZONE_ID    Zone id (required)
        HETZNER_DNS_API_URL    API base URL (default: https://dns.hetzner.com/api/v1)

    Consul:
        CONSUL_HTTP_ADDR       Consul address (default: http://127.0.0.1:8500)
        CONSUL_DATACENTER      Datacenter (default: the agent's)
        CONSUL_HTTP_TOKEN      ACL token (optional)

    Locking:
        LOCK_MODE              "session" or "simple" (default: session)
        SESSION_TTL            Session TTL in seconds, 10-86400 (default: 15)
        LOCK_DELAY             Session lock delay in seconds (default: 15)
        FORCE_UNLOCK_AFTER     Simple mode only: seconds before a held lock is
                               assumed poisoned and deleted; 0 disables
                               (default: 10)

    Runtime:
        DNS_PROVIDER           DNS provider when no subcommand is given (default: hetzner)
        EXTERNAL_DNS_CONFIG    YAML config file path (optional)
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import yaml

from consul_external_dns.consul import DEFAULT_ADDRESS, DEFAULT_WATCH_WAIT, ConsulClient
from consul_external_dns.dns import HETZNER_API_URL, PROVIDERS, create_dns_provider
from consul_external_dns.errors import ExternalDNSError, FatalError
from consul_external_dns.lock import (
    DEFAULT_FORCE_UNLOCK_AFTER,
    DEFAULT_LOCK_DELAY,
    DEFAULT_LOCK_KEY,
    DEFAULT_RETRY_INTERVAL,
    DEFAULT_SESSION_TTL,
    MAX_SESSION_TTL,
    MIN_SESSION_TTL,
    Lock,
    SessionLock,
    SimpleLock,
)
from consul_external_dns.reconciler import DEFAULT_STATE_KEY, DEFAULT_SYNC_INTERVAL, Reconciler
from consul_external_dns.tags import DEFAULT_PREFIX

logger = logging.getLogger(__name__)

LOCK_MODES = ("session", "simple")

# Consul caps blocking queries at ten minutes.
MAX_WATCH_WAIT = 600

# =============================================================================
# Configuration
# =============================================================================


@dataclass
class Settings:
    dns_provider: str = "hetzner"
    dns_token: str = ""
    dns_zone_id: str = ""
    api_url: str = HETZNER_API_URL
    consul_address: str = DEFAULT_ADDRESS
    consul_datacenter: str = ""
    consul_token: str = ""
    lock_mode: str = "session"
    session_ttl: int = DEFAULT_SESSION_TTL
    lock_delay: int = DEFAULT_LOCK_DELAY
    force_unlock_after: float = DEFAULT_FORCE_UNLOCK_AFTER
    lock_key: str = DEFAULT_LOCK_KEY
    state_key: str = DEFAULT_STATE_KEY
    tag_prefix: str = DEFAULT_PREFIX
    watch_wait: float = DEFAULT_WATCH_WAIT
    retry_interval: float = DEFAULT_RETRY_INTERVAL
    sync_interval: float = DEFAULT_SYNC_INTERVAL
    log_level: str = "INFO"
    once: bool = False


ENV_VARS: Dict[str, str] = {
    "dns_provider": "DNS_PROVIDER",
    "dns_token": "HETZNER_DNS_TOKEN",
    "dns_zone_id": "HETZNER_DNS_ZONE_ID",
    "api_url": "HETZNER_DNS_API_URL",
    "consul_address": "CONSUL_HTTP_ADDR",
    "consul_datacenter": "CONSUL_DATACENTER",
    "consul_token": "CONSUL_HTTP_TOKEN",
    "lock_mode": "LOCK_MODE",
    "session_ttl": "SESSION_TTL",
    "lock_delay": "LOCK_DELAY",
    "force_unlock_after": "FORCE_UNLOCK_AFTER",
    "log_level": "LOG_LEVEL",
}


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


CONVERTERS: Dict[str, Callable[[Any], Any]] = {
    "session_ttl": int,
    "lock_delay": int,
    "force_unlock_after": float,
    "watch_wait": float,
    "retry_interval": float,
    "sync_interval": float,
    "once": lambda v: _parse_bool(v, default=False),
}


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load settings from a YAML file.

    Keys may use dashes or underscores. Unknown keys are logged and ignored.

    Raises:
        ValueError: if the file can't be read or isn't a YAML mapping
    """
    path = Path(config_path)
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ValueError(f"Failed to load config from {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")

    known = {f.name for f in fields(Settings)}
    values: Dict[str, Any] = {}
    for raw_key, value in data.items():
        key = str(raw_key).replace("-", "_")
        if key not in known:
            logger.warning(f"Ignoring unknown key '{raw_key}' in {path}")
            continue
        values[key] = value
    return values


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="consul-external-dns",
        description="Sync DNS records from Consul service tags to a DNS provider.",
    )
    parser.add_argument("--config", help="YAML config file")
    parser.add_argument("--consul-address", help=f"Consul address (default: {DEFAULT_ADDRESS})")
    parser.add_argument("--consul-datacenter", help="Consul datacenter")
    parser.add_argument("--consul-token", help="Consul ACL token")
    parser.add_argument("--lock-mode", choices=LOCK_MODES, help="Locking model (default: session)")
    parser.add_argument("--session-ttl", type=int, help="Session TTL in seconds")
    parser.add_argument("--lock-delay", type=int, help="Session lock delay in seconds")
    parser.add_argument(
        "--force-unlock-after",
        type=float,
        help="Simple lock mode: seconds before a held lock is force-deleted, 0 disables",
    )
    parser.add_argument("--lock-key", help=f"KV key of the lock (default: {DEFAULT_LOCK_KEY})")
    parser.add_argument("--state-key", help=f"KV key of the state (default: {DEFAULT_STATE_KEY})")
    parser.add_argument("--tag-prefix", help=f"Service tag prefix (default: {DEFAULT_PREFIX})")
    parser.add_argument("--watch-wait", type=float, help="Blocking query wait in seconds")
    parser.add_argument("--retry-interval", type=float, help="Retry interval in seconds")
    parser.add_argument("--sync-interval", type=float, help="Pause between passes in seconds")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument(
        "--once", action="store_true", default=None, help="Reconcile once and exit"
    )

    subparsers = parser.add_subparsers(dest="dns_provider", metavar="PROVIDER")
    hetzner = subparsers.add_parser("hetzner", help="Hetzner DNS")
    hetzner.add_argument("--dns-token", help="API token")
    hetzner.add_argument("--dns-zone-id", help="Zone id")
    hetzner.add_argument("--api-url", help=f"API base URL (default: {HETZNER_API_URL})")
    return parser


def load_settings(
    argv: Optional[Sequence[str]] = None, environ: Optional[Mapping[str, str]] = None
) -> Settings:
    """Resolve settings: command line, then environment, then config file, then defaults.

    Raises:
        ValueError: on an unreadable config file or a value of the wrong type
    """
    environ = os.environ if environ is None else environ
    args = build_parser().parse_args(argv)

    config_path = args.config or environ.get("EXTERNAL_DNS_CONFIG", "")
    file_values = load_config_file(config_path) if config_path else {}

    values: Dict[str, Any] = {}
    for f in fields(Settings):
        value = getattr(args, f.name, None)
        if value is None and f.name in ENV_VARS:
            value = environ.get(ENV_VARS[f.name]) or None
        if value is None:
            value = file_values.get(f.name)
        if value is None:
            continue

        converter = CONVERTERS.get(f.name, lambda v: str(v).strip())
        try:
            values[f.name] = converter(value)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid value for {f.name}: {value!r} ({e})") from e

    settings = Settings(**values)
    settings.dns_provider = settings.dns_provider.lower()
    settings.lock_mode = settings.lock_mode.lower()
    return settings


def validate_settings(settings: Settings) -> List[str]:
    """Return every configuration problem found; empty means valid."""
    errors = []

    if settings.dns_provider not in PROVIDERS:
        errors.append(
            f"Unsupported DNS provider: {settings.dns_provider}. "
            f"Supported: {', '.join(sorted(PROVIDERS))}"
        )
    elif settings.dns_provider == "hetzner":
        if not settings.dns_token:
            errors.append("A DNS API token is required (--dns-token or HETZNER_DNS_TOKEN)")
        if not settings.dns_zone_id:
            errors.append("A DNS zone id is required (--dns-zone-id or HETZNER_DNS_ZONE_ID)")

    if not settings.consul_address:
        errors.append("A Consul address is required")
    if settings.lock_mode not in LOCK_MODES:
        errors.append(f"Invalid lock mode: {settings.lock_mode}. Use one of {', '.join(LOCK_MODES)}")
    if not MIN_SESSION_TTL <= settings.session_ttl <= MAX_SESSION_TTL:
        errors.append(
            f"Session TTL must be between {MIN_SESSION_TTL} and {MAX_SESSION_TTL} seconds"
        )
    if settings.lock_delay < 0:
        errors.append("Lock delay can't be negative")
    if settings.force_unlock_after < 0:
        errors.append("Force unlock timeout can't be negative")
    if not 0 < settings.watch_wait <= MAX_WATCH_WAIT:
        errors.append(f"Watch wait must be between 0 and {MAX_WATCH_WAIT} seconds")
    if settings.retry_interval <= 0:
        errors.append("Retry interval must be positive")
    if settings.sync_interval < 0:
        errors.append("Sync interval can't be negative")
    if not settings.lock_key or not settings.state_key:
        errors.append("Lock and state keys can't be empty")
    if settings.lock_key == settings.state_key:
        errors.append("Lock and state keys must differ")
    return errors


# =============================================================================
# Wiring
# =============================================================================


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def build_lock(settings: Settings, consul: ConsulClient, shutdown: threading.Event) -> Lock:
    if settings.lock_mode == "simple":
        return SimpleLock(
            consul,
            shutdown,
            key=settings.lock_key,
            force_unlock_after=settings.force_unlock_after or None,
        )
    return SessionLock(
        consul,
        shutdown,
        key=settings.lock_key,
        ttl=settings.session_ttl,
        lock_delay=settings.lock_delay,
        retry_interval=settings.retry_interval,
    )


def interrupt_watch(reconciler: Reconciler) -> None:
    """Break the main thread out of a blocking catalog watch.

    Delivers SIGTERM to the main thread, whose handler raises
    KeyboardInterrupt while the reconciler is watching. Outside a watch the
    set shutdown event is enough.
    """
    if reconciler.watching:
        signal.pthread_kill(threading.main_thread().ident, signal.SIGTERM)


def install_signal_handlers(shutdown: threading.Event, reconciler: Reconciler) -> None:
    """Stop on SIGINT/SIGTERM.

    The event is always set. A blocking catalog watch is interrupted right
    away; anything else finishes its current step first so a provider call
    is never cut off halfway.
    """

    def _handle(signum: int, frame: Any) -> None:
        logger.info(f"Received {signal.Signals(signum).name}, shutting down")
        shutdown.set()
        if reconciler.watching:
            raise KeyboardInterrupt

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


# =============================================================================
# Main
# =============================================================================


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point."""
    try:
        settings = load_settings(argv)
    except ValueError as e:
        configure_logging("INFO")
        logger.error(str(e))
        sys.exit(1)

    configure_logging(settings.log_level)

    errors = validate_settings(settings)
    if errors:
        for error in errors:
            logger.error(error)
        logger.error("Configuration validation failed")
        sys.exit(1)

    consul = ConsulClient(
        settings.consul_address,
        datacenter=settings.consul_datacenter,
        token=settings.consul_token,
        tag_prefix=settings.tag_prefix,
    )
    dns_provider = create_dns_provider(
        settings.dns_provider, {"token": settings.dns_token, "api_url": settings.api_url}
    )

    logger.info(f"consul-external-dns: consul -> {settings.dns_provider}")
    logger.info(f"DNS Provider: {dns_provider.name} (zone {settings.dns_zone_id})")
    logger.info(f"Consul: {settings.consul_address} (dc {settings.consul_datacenter or 'default'})")
    logger.info(f"Lock: {settings.lock_mode} on key '{settings.lock_key}'")
    logger.info(f"State key: {settings.state_key}")

    if not consul.test_connection():
        logger.error("Cannot connect to Consul. Exiting.")
        sys.exit(1)
    if not dns_provider.test_connection(settings.dns_zone_id):
        logger.error(f"Cannot connect to {dns_provider.name}. Exiting.")
        sys.exit(1)

    shutdown = threading.Event()
    lock = build_lock(settings, consul, shutdown)
    reconciler = Reconciler(
        consul=consul,
        dns_provider=dns_provider,
        zone_id=settings.dns_zone_id,
        lock=lock,
        shutdown=shutdown,
        state_key=settings.state_key,
        tag_prefix=settings.tag_prefix,
        watch_wait=settings.watch_wait,
        retry_interval=settings.retry_interval,
        sync_interval=settings.sync_interval,
    )
    install_signal_handlers(shutdown, reconciler)
    lock.on_lost = lambda: interrupt_watch(reconciler)

    exit_code = 0
    try:
        if settings.once:
            exit_code = 0 if reconciler.run_once() else 1
        else:
            reconciler.run()
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except FatalError as e:
        logger.error(f"Fatal error: {e}")
        exit_code = 1
    except ExternalDNSError as e:
        logger.error(f"Reconciliation failed: {e}")
        exit_code = 1
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        exit_code = 1
    finally:
        shutdown.set()
        lock.close()

    if lock.lost:
        logger.error("Lost the Consul session")
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
