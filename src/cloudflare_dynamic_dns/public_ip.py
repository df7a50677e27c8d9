"""Tracks the externally visible IP address of the cluster."""

from __future__ import annotations

import ipaddress
import logging
import threading
from typing import Callable, Optional

import requests

from cloudflare_dynamic_dns.errors import PublicIPLookupError

logger = logging.getLogger(__name__)

DEFAULT_PUBLIC_IP_URL = "https://api.ipify.org"


def lookup_public_ip(
    session: Optional[requests.Session] = None,
    url: str = DEFAULT_PUBLIC_IP_URL,
    timeout: float = 10.0,
) -> str:
    """Ask an IP echo service for our public address.

    Raises:
        PublicIPLookupError: on network errors, non-2xx responses or a body that
            is not an IP address.
    """
    http = session or requests.Session()
    try:
        response = http.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        raise PublicIPLookupError(f"Failed to query {url}: {e}") from e

    candidate = response.text.strip()
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        raise PublicIPLookupError(f"{url} returned an invalid IP address: {candidate!r}") from None


class PublicIPTracker:
    """Lock-guarded current public IP, refreshed by a background thread.

    The refresh thread is the only writer; reconcile workers only call ``get``.
    """

    def __init__(
        self,
        lookup: Callable[[], str],
        interval: float = 30.0,
        on_change: Optional[Callable[[str], None]] = None,
    ):
        self._lookup = lookup
        self.interval = interval
        self.on_change = on_change
        self._lock = threading.Lock()
        self._ip = ""

    def get(self) -> str:
        with self._lock:
            return self._ip

    def set(self, ip: str) -> None:
        with self._lock:
            self._ip = ip

    def refresh(self) -> bool:
        """Run one lookup. Returns True when the tracked address changed.

        A failed lookup keeps the previous address.
        """
        try:
            ip = self._lookup()
        except PublicIPLookupError as e:
            logger.warning(f"Could not retrieve public IP, retrying on next check: {e}")
            return False

        previous = self.get()
        if ip == previous:
            logger.debug(f"Public IP unchanged: {ip}")
            return False

        self.set(ip)
        if previous:
            logger.info(f"Public IP changed: {previous} -> {ip}")
        else:
            logger.info(f"Public IP: {ip}")
        if self.on_change is not None:
            self.on_change(ip)
        return True

    def run(self, stop_event: threading.Event) -> None:
        """Refresh immediately, then every ``interval`` seconds until ``stop_event`` is set."""
        logger.info(f"Watching public IP every {self.interval}s")
        while not stop_event.is_set():
            try:
                self.refresh()
            except Exception as e:
                logger.error(f"Unexpected error refreshing public IP: {e}", exc_info=True)
            stop_event.wait(self.interval)
        logger.info("Stopped public IP watcher")

    def start(self, stop_event: threading.Event) -> threading.Thread:
        thread = threading.Thread(
            target=self.run, args=(stop_event,), name="public-ip-watcher", daemon=True
        )
        thread.start()
        return thread

    def wait_for_ip(self, stop_event: threading.Event, poll_interval: float = 1.0) -> str:
        """Block until an address is known. Returns "" if stopped first."""
        while not stop_event.is_set():
            ip = self.get()
            if ip:
                return ip
            logger.info("Waiting to get public IP...")
            stop_event.wait(poll_interval)
        return self.get()
