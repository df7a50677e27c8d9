#!/usr/bin/env python3
"""cloudflare-dynamic-dns - Kubernetes to Cloudflare dynamic DNS

Watches Services and Ingresses and publishes an A record pointing at the
cluster's current public IP for every resource annotated with a hostname. A
TXT record holding the resource's key ("service/<namespace>/<name>" or
"ingress/<namespace>/<name>") marks each A record as owned by this controller,
so records are only ever deleted when the resource that created them is gone.

Orphaned markers: with STRICT_CLEANUP disabled, a failed cleanup can leave a
TXT marker behind after its resource was deleted. A new resource claiming the
same hostname is then refused on every sync ("... is already owned by ...").
The marker is never reclaimed automatically, because another controller
instance (e.g. one watching a different namespace) may still own it. Delete
the TXT record named in the error to release the hostname.

Annotations (prefix configurable with ANNOTATION_DOMAIN):

    cloudflare-dynamic-dns.alpha.kubernetes.io/hostname   Hostname to publish (required)
    cloudflare-dynamic-dns.alpha.kubernetes.io/proxied    "true"/"false", proxy the A record
                                                          through Cloudflare (default: false)

Environment variables:

    Cloudflare (required):
        CF_AUTH_EMAIL          Cloudflare account email
        CF_AUTH_TOKEN          Cloudflare API key
        CF_ZONE_ID             Zone the records are managed in

    Settings file:
        CONFIG_PATH            Optional YAML file with any of the keys below
                               (default: /config/cloudflare-dynamic-dns.yaml).
                               Environment variables take precedence.
                               Example:
                                 threadiness: 2
                                 watch_namespace: "web"
                                 resync_period_seconds: 120

    Runtime:                                 (YAML key)
        ANNOTATION_DOMAIN            annotation_domain            (default: cloudflare-dynamic-dns.alpha.kubernetes.io)
        THREADINESS                  threadiness                  Worker threads (default: 1)
        MAX_RETRIES                  max_retries                  Retries before a key is dropped (default: 5)
        RECORD_TTL                   record_ttl                   TTL of created records, 1 = automatic (default: 1)
        IP_REFRESH_INTERVAL_SECONDS  ip_refresh_interval_seconds  Public IP check interval (default: 30)
        PUBLIC_IP_URL                public_ip_url                IP echo service (default: https://api.ipify.org)
        RESYNC_PERIOD_SECONDS        resync_period_seconds        Full re-enqueue interval (default: 300)
        WATCH_NAMESPACE              watch_namespace              Namespace to watch, empty = all (default: "")
        STRICT_CLEANUP               strict_cleanup               Retry failed cleanups of deleted resources
                                                                  instead of only logging them (default: false)
        HTTP_TIMEOUT_SECONDS         http_timeout_seconds         Timeout for Cloudflare/IP requests (default: 10)
        KUBECONFIG                                                Kubeconfig used outside the cluster
        LOG_LEVEL                                                 DEBUG, INFO, WARNING, ERROR (default: INFO)
"""

from __future__ import annotations

import logging
import os
import signal
import sys
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

import requests
import yaml
from kubernetes import client as kube_client
from kubernetes import config as kube_config

from cloudflare_dynamic_dns.cloudflare import AUTOMATIC_TTL, CloudflareClient
from cloudflare_dynamic_dns.controller import (
    DEFAULT_ANNOTATION_DOMAIN,
    DEFAULT_MAX_RETRIES,
    Controller,
)
from cloudflare_dynamic_dns.informer import Informer, wait_for_cache_sync
from cloudflare_dynamic_dns.public_ip import (
    DEFAULT_PUBLIC_IP_URL,
    PublicIPTracker,
    lookup_public_ip,
)
from cloudflare_dynamic_dns.resources import ResourceCache
from cloudflare_dynamic_dns.workqueue import RateLimitingQueue

DEFAULT_CONFIG_PATH = "/config/cloudflare-dynamic-dns.yaml"
CACHE_SYNC_TIMEOUT_SECONDS = 120

# =============================================================================
# Logging Setup
# =============================================================================

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Configuration
# =============================================================================


class ConfigError(ValueError):
    """Raised when a configuration value cannot be used."""


@dataclass(frozen=True)
class Settings:
    cf_auth_email: str = ""
    cf_auth_token: str = ""
    cf_zone_id: str = ""
    annotation_domain: str = DEFAULT_ANNOTATION_DOMAIN
    threadiness: int = 1
    max_retries: int = DEFAULT_MAX_RETRIES
    record_ttl: int = AUTOMATIC_TTL
    ip_refresh_interval_seconds: int = 30
    public_ip_url: str = DEFAULT_PUBLIC_IP_URL
    resync_period_seconds: int = 300
    watch_namespace: str = ""
    strict_cleanup: bool = False
    http_timeout_seconds: float = 10.0
    kubeconfig: str = ""


def load_file_config(config_path: str) -> Dict[str, Any]:
    """Load the optional YAML settings file. Missing or unreadable files yield {}."""
    if not config_path or not os.path.isfile(config_path):
        return {}
    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Failed to load config file {config_path}: {e}")
        return {}

    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Config file {config_path} must contain a mapping, ignoring it")
        return {}
    return data


def _parse_bool(value: Any, *, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_int(name: str, value: Any, *, minimum: Optional[int] = None) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer, got: {value!r}") from None
    if minimum is not None and parsed < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {parsed}")
    return parsed


def _parse_float(name: str, value: Any, *, minimum: float = 0.0) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number, got: {value!r}") from None
    if parsed <= minimum:
        raise ConfigError(f"{name} must be > {minimum}, got: {parsed}")
    return parsed


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build settings from the YAML file (if any) overlaid with environment variables."""
    env = os.environ if environ is None else environ
    file_cfg = load_file_config(env.get("CONFIG_PATH", DEFAULT_CONFIG_PATH))
    defaults = Settings()

    def pick(env_name: str, key: str, default: Any) -> Any:
        raw = env.get(env_name, "")
        if raw.strip():
            return raw.strip()
        value = file_cfg.get(key)
        return default if value is None else value

    return Settings(
        cf_auth_email=env.get("CF_AUTH_EMAIL", "").strip(),
        cf_auth_token=env.get("CF_AUTH_TOKEN", "").strip(),
        cf_zone_id=env.get("CF_ZONE_ID", "").strip(),
        annotation_domain=str(
            pick("ANNOTATION_DOMAIN", "annotation_domain", defaults.annotation_domain)
        ).strip("/"),
        threadiness=_parse_int(
            "THREADINESS", pick("THREADINESS", "threadiness", defaults.threadiness), minimum=1
        ),
        max_retries=_parse_int(
            "MAX_RETRIES", pick("MAX_RETRIES", "max_retries", defaults.max_retries), minimum=0
        ),
        record_ttl=_parse_int(
            "RECORD_TTL", pick("RECORD_TTL", "record_ttl", defaults.record_ttl), minimum=1
        ),
        ip_refresh_interval_seconds=_parse_int(
            "IP_REFRESH_INTERVAL_SECONDS",
            pick(
                "IP_REFRESH_INTERVAL_SECONDS",
                "ip_refresh_interval_seconds",
                defaults.ip_refresh_interval_seconds,
            ),
            minimum=1,
        ),
        public_ip_url=str(pick("PUBLIC_IP_URL", "public_ip_url", defaults.public_ip_url)),
        resync_period_seconds=_parse_int(
            "RESYNC_PERIOD_SECONDS",
            pick("RESYNC_PERIOD_SECONDS", "resync_period_seconds", defaults.resync_period_seconds),
            minimum=1,
        ),
        watch_namespace=str(
            pick("WATCH_NAMESPACE", "watch_namespace", defaults.watch_namespace)
        ).strip(),
        strict_cleanup=_parse_bool(
            pick("STRICT_CLEANUP", "strict_cleanup", defaults.strict_cleanup)
        ),
        http_timeout_seconds=_parse_float(
            "HTTP_TIMEOUT_SECONDS",
            pick("HTTP_TIMEOUT_SECONDS", "http_timeout_seconds", defaults.http_timeout_seconds),
        ),
        kubeconfig=env.get("KUBECONFIG", "").strip(),
    )


def validate_config(settings: Settings) -> bool:
    """Validate configuration."""
    errors: List[str] = []

    if not settings.cf_auth_email:
        errors.append("CF_AUTH_EMAIL is required")
    if not settings.cf_auth_token:
        errors.append("CF_AUTH_TOKEN is required")
    if not settings.cf_zone_id:
        errors.append("CF_ZONE_ID is required")
    if not settings.annotation_domain:
        errors.append("ANNOTATION_DOMAIN must not be empty")

    if errors:
        for error in errors:
            logger.error(error)
        return False

    return True


# =============================================================================
# Main
# =============================================================================


def load_kube_config(kubeconfig: str = "") -> None:
    """Use the in-cluster service account, falling back to a kubeconfig file."""
    try:
        kube_config.load_incluster_config()
        logger.info("Using in-cluster Kubernetes configuration")
    except kube_config.ConfigException:
        kube_config.load_kube_config(config_file=kubeconfig or None)
        logger.info(f"Using kubeconfig {kubeconfig or '(default location)'}")


def enqueue_all(cache: ResourceCache, queue: RateLimitingQueue) -> None:
    """Queue every known resource, e.g. after the public IP changed."""
    keys = cache.keys()
    if keys:
        logger.info(f"Re-queueing {len(keys)} resource(s)")
    for key in keys:
        queue.add(str(key))


def main():
    """Main entry point."""
    try:
        settings = load_settings()
    except ConfigError as e:
        logger.error(e)
        logger.error("Configuration validation failed")
        sys.exit(1)

    if not validate_config(settings):
        logger.error("Configuration validation failed")
        sys.exit(1)

    logger.info(f"cloudflare-dynamic-dns: zone {settings.cf_zone_id}")
    logger.info(f"Annotations: {settings.annotation_domain}/hostname, {settings.annotation_domain}/proxied")
    logger.info(f"Watching namespace: {settings.watch_namespace or '(all)'}")
    logger.info(f"Workers: {settings.threadiness}, max retries: {settings.max_retries}")
    if settings.strict_cleanup:
        logger.info("Strict cleanup enabled: failed record deletions are retried")

    stop_event = threading.Event()

    def _handle_signal(signum, _frame):
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        stop_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        load_kube_config(settings.kubeconfig)
    except Exception as e:
        logger.error(f"Failed to load Kubernetes configuration: {e}")
        sys.exit(1)

    queue = RateLimitingQueue()
    cache = ResourceCache()
    cloudflare = CloudflareClient(
        settings.cf_auth_email,
        settings.cf_auth_token,
        settings.cf_zone_id,
        timeout=settings.http_timeout_seconds,
    )

    ip_session = requests.Session()
    tracker = PublicIPTracker(
        lookup=lambda: lookup_public_ip(
            ip_session, settings.public_ip_url, settings.http_timeout_seconds
        ),
        interval=settings.ip_refresh_interval_seconds,
        on_change=lambda _ip: enqueue_all(cache, queue),
    )

    informer_options = {
        "namespace": settings.watch_namespace,
        "resync_period": settings.resync_period_seconds,
    }
    informers = [
        Informer.for_services(kube_client.CoreV1Api(), cache, queue, **informer_options),
        Informer.for_ingresses(kube_client.NetworkingV1Api(), cache, queue, **informer_options),
    ]

    controller = Controller(
        queue=queue,
        cloudflare=cloudflare,
        public_ip=tracker,
        cache=cache,
        annotation_domain=settings.annotation_domain,
        record_ttl=settings.record_ttl,
        max_retries=settings.max_retries,
        strict_cleanup=settings.strict_cleanup,
    )

    try:
        tracker.start(stop_event)
        tracker.wait_for_ip(stop_event)

        for informer in informers:
            informer.start(stop_event)

        if not wait_for_cache_sync(informers, stop_event, timeout=CACHE_SYNC_TIMEOUT_SECONDS):
            if not stop_event.is_set():
                logger.error("Timed out waiting for caches to sync")
                stop_event.set()
                sys.exit(1)
            return

        controller.run(settings.threadiness, stop_event)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        stop_event.set()
        for informer in informers:
            informer.stop()


if __name__ == "__main__":
    main()
