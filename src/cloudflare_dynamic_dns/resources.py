"""Reconcile keys, watched resources and the local resource cache."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from cloudflare_dynamic_dns.errors import InvalidKeyError


class ResourceKind(Enum):
    """Kubernetes object kinds whose annotations drive DNS records."""

    SERVICE = "service"
    INGRESS = "ingress"


# =============================================================================
# Reconcile Keys
# =============================================================================


@dataclass(frozen=True)
class ReconcileKey:
    """Identifies one reconciliation unit.

    Serialized as ``<kind>/<namespace>/<name>``. The serialized form is both the
    work queue item and the content of the TXT ownership marker, so it must stay
    stable across releases.
    """

    kind: ResourceKind
    namespace: str
    name: str

    @classmethod
    def parse(cls, key: str) -> "ReconcileKey":
        if not isinstance(key, str):
            raise InvalidKeyError(f"Reconcile key must be a string, got {type(key).__name__}")
        parts = key.split("/")
        if len(parts) != 3 or not all(parts):
            raise InvalidKeyError(f"Malformed reconcile key '{key}'")
        kind, namespace, name = parts
        try:
            resource_kind = ResourceKind(kind)
        except ValueError:
            raise InvalidKeyError(f"Unknown resource kind '{kind}' in key '{key}'") from None
        return cls(kind=resource_kind, namespace=namespace, name=name)

    @classmethod
    def is_valid(cls, key: str) -> bool:
        try:
            cls.parse(key)
        except InvalidKeyError:
            return False
        return True

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.namespace}/{self.name}"


# =============================================================================
# Watched Resources
# =============================================================================


@dataclass(frozen=True)
class WatchedResource:
    """A Service or Ingress reduced to what reconciliation needs."""

    kind: ResourceKind
    namespace: str
    name: str
    annotations: Mapping[str, str] = field(default_factory=dict)

    @property
    def key(self) -> ReconcileKey:
        return ReconcileKey(kind=self.kind, namespace=self.namespace, name=self.name)


class ResourceCache:
    """Thread-safe local store of watched resources, written by informers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: Dict[ReconcileKey, WatchedResource] = {}
        self._synced: Set[ResourceKind] = set()

    def get(self, key: ReconcileKey) -> Optional[WatchedResource]:
        with self._lock:
            return self._items.get(key)

    def upsert(self, resource: WatchedResource) -> None:
        with self._lock:
            self._items[resource.key] = resource

    def delete(self, key: ReconcileKey) -> Optional[WatchedResource]:
        with self._lock:
            return self._items.pop(key, None)

    def replace(
        self, kind: ResourceKind, resources: Iterable[WatchedResource]
    ) -> Tuple[List[ReconcileKey], List[ReconcileKey]]:
        """Replace every cached resource of ``kind`` with a fresh listing.

        Returns ``(present, removed)``: keys of the listed resources and keys that
        were cached before but are missing from the listing.
        """
        fresh = {r.key: r for r in resources if r.kind == kind}
        with self._lock:
            previous = [k for k in self._items if k.kind == kind]
            removed = [k for k in previous if k not in fresh]
            for k in removed:
                del self._items[k]
            self._items.update(fresh)
            self._synced.add(kind)
        return list(fresh), removed

    def keys(self, kind: Optional[ResourceKind] = None) -> List[ReconcileKey]:
        with self._lock:
            return [k for k in self._items if kind is None or k.kind == kind]

    def has_synced(self, kind: ResourceKind) -> bool:
        with self._lock:
            return kind in self._synced

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
