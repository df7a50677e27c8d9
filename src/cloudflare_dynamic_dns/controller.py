"""Reconciles annotated Services and Ingresses into Cloudflare A/TXT record pairs.

Every managed hostname gets two records:

    A    <hostname> -> current public IP
    TXT  <hostname> -> "<kind>/<namespace>/<name>"

The TXT record is the ownership marker. When a resource disappears, the
controller finds its records by scanning the zone's TXT records for the
resource's key, so records it did not create are never touched.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol

from cloudflare_dynamic_dns.cloudflare import AUTOMATIC_TTL, Record
from cloudflare_dynamic_dns.errors import (
    AnnotationParseError,
    CloudflareError,
    PublicIPUnavailableError,
    RecordConflictError,
    RecordNotFoundError,
    ResourceLookupError,
)
from cloudflare_dynamic_dns.public_ip import PublicIPTracker
from cloudflare_dynamic_dns.resources import ReconcileKey, ResourceCache, WatchedResource
from cloudflare_dynamic_dns.workqueue import RateLimitingQueue

logger = logging.getLogger(__name__)

DEFAULT_ANNOTATION_DOMAIN = "cloudflare-dynamic-dns.alpha.kubernetes.io"
DEFAULT_MAX_RETRIES = 5

_TRUE_VALUES = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_VALUES = {"0", "f", "F", "FALSE", "false", "False"}


class ZoneClient(Protocol):
    """The subset of :class:`~cloudflare_dynamic_dns.cloudflare.CloudflareClient` the controller uses."""

    def list_records(self, record_type: str, name: Optional[str] = None) -> List[Record]: ...

    def create_record(
        self, record_type: str, name: str, content: str, ttl: int = ..., proxied: bool = ...
    ) -> Record: ...

    def update_record(
        self, record_id: str, record_type: str, name: str, content: str, ttl: int = ..., proxied: bool = ...
    ) -> Record: ...

    def delete_record_by_id(self, record_id: str) -> None: ...


@dataclass(frozen=True)
class DesiredRecordSet:
    hostname: str
    proxied: bool = False


def parse_bool(value: str) -> bool:
    """Strict boolean parsing for annotation values."""
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise AnnotationParseError(f"invalid boolean value {value!r}")


def report_error(err: BaseException) -> None:
    """Process-wide sink for errors the controller gave up on."""
    logger.error(f"Unhandled reconcile error: {err}", exc_info=err)


class Controller:
    def __init__(
        self,
        *,
        queue: RateLimitingQueue,
        cloudflare: ZoneClient,
        public_ip: PublicIPTracker,
        cache: ResourceCache,
        annotation_domain: str = DEFAULT_ANNOTATION_DOMAIN,
        record_ttl: int = AUTOMATIC_TTL,
        max_retries: int = DEFAULT_MAX_RETRIES,
        strict_cleanup: bool = False,
        error_reporter: Callable[[BaseException], None] = report_error,
    ):
        self.queue = queue
        self.cloudflare = cloudflare
        self.public_ip = public_ip
        self.cache = cache
        self.hostname_annotation = f"{annotation_domain}/hostname"
        self.proxied_annotation = f"{annotation_domain}/proxied"
        self.record_ttl = record_ttl
        self.max_retries = max_retries
        self.strict_cleanup = strict_cleanup
        self.error_reporter = error_reporter

    # =========================================================================
    # Worker loop
    # =========================================================================

    def process_next_item(self) -> bool:
        """Reconcile one key. Returns False once the queue has shut down."""
        key, shutdown = self.queue.get()
        if shutdown:
            return False

        try:
            err: Optional[Exception] = None
            try:
                self.sync(key)
            except Exception as e:
                err = e
            self.handle_err(err, key)
        finally:
            self.queue.done(key)
        return True

    def handle_err(self, err: Optional[Exception], key: str) -> None:
        if err is None:
            # A success resets the backoff so the next event for this key is not delayed.
            self.queue.forget(key)
            return

        if self.queue.num_requeues(key) < self.max_retries:
            logger.info(f"Error syncing {key}: {err}")
            self.queue.add_rate_limited(key)
            return

        self.queue.forget(key)
        self.error_reporter(err)
        logger.info(f"Dropping {key!r} out of the queue: {err}")

    def run_worker(self) -> None:
        """Process keys until the queue shuts down. Unexpected errors never end the worker."""
        while True:
            try:
                if not self.process_next_item():
                    return
            except Exception as e:
                logger.error(f"Unexpected error in reconcile worker: {e}", exc_info=True)

    def run(self, threadiness: int, stop_event: threading.Event) -> None:
        """Run ``threadiness`` workers until ``stop_event`` is set, then drain and stop."""
        logger.info(f"Starting controller with {threadiness} worker(s)")
        workers = [
            threading.Thread(target=self.run_worker, name=f"reconcile-worker-{i}", daemon=True)
            for i in range(threadiness)
        ]
        for worker in workers:
            worker.start()

        stop_event.wait()
        logger.info("Stopping controller")
        self.queue.shut_down()
        for worker in workers:
            worker.join()
        logger.info("Controller stopped")

    # =========================================================================
    # Sync
    # =========================================================================

    def sync(self, key: str) -> None:
        """Converge the Cloudflare zone towards the current state of ``key``'s resource."""
        resource_key = ReconcileKey.parse(key)
        try:
            resource = self.cache.get(resource_key)
        except Exception as e:
            raise ResourceLookupError(
                f"Fetching object with key {key} from store failed: {e}"
            ) from e

        if resource is None:
            logger.info(f"{resource_key.kind.value.capitalize()} {key} does not exist anymore")
            self.delete_record_pair(key)
            return

        try:
            desired = self.desired_record_set(resource)
        except AnnotationParseError as e:
            # The value will not change until the resource is edited, so retrying is pointless.
            logger.warning(f"Could not parse {self.proxied_annotation} for {key}: {e}")
            return

        if desired is None:
            logger.debug(f"Skipping: {key}")
            return

        ip = self.public_ip.get()
        if not ip:
            raise PublicIPUnavailableError(f"No public IP known yet, cannot sync {key}")

        self.sync_record_pair(key, desired.hostname, ip, desired.proxied)
        logger.info(f"Sync/Add/Update {key}, hostname: {desired.hostname}, ip: {ip}")

    def desired_record_set(self, resource: WatchedResource) -> Optional[DesiredRecordSet]:
        annotations = resource.annotations or {}
        hostname = (annotations.get(self.hostname_annotation) or "").strip()
        if not hostname:
            return None

        proxied = False
        if self.proxied_annotation in annotations:
            proxied = parse_bool(annotations[self.proxied_annotation])
        return DesiredRecordSet(hostname=hostname, proxied=proxied)

    # =========================================================================
    # Record pair management
    # =========================================================================

    def _list_or_empty(self, record_type: str, name: Optional[str] = None) -> List[Record]:
        try:
            return self.cloudflare.list_records(record_type, name)
        except RecordNotFoundError:
            return []

    def sync_record_pair(self, key: str, hostname: str, ip: str, proxied: bool) -> None:
        """Ensure the TXT marker and then the A record for ``hostname`` exist and match."""
        txt_records = self._list_or_empty("TXT", hostname)

        foreign = [
            r for r in txt_records if r.content != key and ReconcileKey.is_valid(r.content)
        ]
        if foreign:
            owner = foreign[0]
            raise RecordConflictError(
                f"{hostname} is already owned by {owner.content} (TXT record {owner.id}), "
                f"refusing to sync {key}. If {owner.content} no longer exists, delete that "
                "TXT record to release the hostname"
            )

        self._ensure_txt_record(key, hostname, [r for r in txt_records if r.content == key])
        self._ensure_a_record(hostname, ip, proxied)

    def _ensure_txt_record(self, key: str, hostname: str, owned: List[Record]) -> None:
        if not owned:
            self.cloudflare.create_record("TXT", hostname, key, self.record_ttl, False)
            return

        for duplicate in owned[1:]:
            logger.warning(f"Removing duplicate TXT marker for {hostname} ({key})")
            self.cloudflare.delete_record_by_id(duplicate.id)

    def _ensure_a_record(self, hostname: str, ip: str, proxied: bool) -> None:
        existing = self._list_or_empty("A", hostname)
        matching = [r for r in existing if r.content == ip and r.proxied == proxied]

        if len(existing) == 1 and matching:
            return

        if len(existing) > 1:
            logger.warning(f"Found {len(existing)} A records for {hostname}, consolidating")

        if not existing:
            self.cloudflare.create_record("A", hostname, ip, self.record_ttl, proxied)
            return

        if matching:
            keep = matching[0]
        else:
            # Rewritten in place: the hostname is never left without an A record.
            stale = existing[0]
            logger.info(f"Updating A record {hostname}: {stale.content} -> {ip}")
            keep = self.cloudflare.update_record(
                stale.id, "A", hostname, ip, self.record_ttl, proxied
            )

        for record in existing:
            if record.id == keep.id:
                continue
            logger.info(f"Removing A record {hostname} -> {record.content}")
            self.cloudflare.delete_record_by_id(record.id)

    def delete_record_pair(self, key: str) -> None:
        """Delete every A/TXT pair whose TXT marker carries ``key``.

        Best effort: a failure on one record does not stop the sweep. Failures are
        only raised when ``strict_cleanup`` is enabled.
        """
        try:
            txt_records = self.cloudflare.list_records("TXT")
        except RecordNotFoundError:
            logger.debug(f"No TXT records in zone, nothing to clean up for {key}")
            return
        except CloudflareError as e:
            logger.warning(f"Failed to get list of TXT records: {e}")
            if self.strict_cleanup:
                raise
            return

        failures: List[CloudflareError] = []
        for marker in txt_records:
            if marker.content != key:
                continue

            failed_before = len(failures)
            for record in self._list_or_empty_logged("A", marker.name, failures):
                try:
                    self.cloudflare.delete_record_by_id(record.id)
                    logger.info(f"Deleted A record {record.name} -> {record.content} ({key})")
                except CloudflareError as e:
                    logger.warning(f"Failed to delete A record {record.name}: {e}")
                    failures.append(e)

            if self.strict_cleanup and len(failures) > failed_before:
                # Keep the marker so the retry can still find the A record.
                continue

            try:
                self.cloudflare.delete_record_by_id(marker.id)
                logger.info(f"Deleted TXT record {marker.name} ({key})")
            except CloudflareError as e:
                logger.warning(f"Failed to delete TXT record {marker.name}: {e}")
                failures.append(e)

        if failures and self.strict_cleanup:
            raise CloudflareError(
                f"{len(failures)} record operation(s) failed while cleaning up {key}"
            ) from failures[0]

    def _list_or_empty_logged(
        self, record_type: str, name: str, failures: List[CloudflareError]
    ) -> List[Record]:
        try:
            return self._list_or_empty(record_type, name)
        except CloudflareError as e:
            logger.warning(f"Failed to look up {record_type} records for {name}: {e}")
            failures.append(e)
            return []
