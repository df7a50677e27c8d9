"""Cloudflare v4 DNS records client.

Only the operations the controller needs: list by type, get by type and name,
create, update and delete. Every call is a single blocking request; retrying failed
calls is left to the controller's work queue.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from cloudflare_dynamic_dns.errors import (
    ProviderError,
    RecordNotFoundError,
    TransportError,
)

logger = logging.getLogger(__name__)

API_BASE_URL = "https://api.cloudflare.com/client/v4"

# A TTL of 1 means "automatic" to Cloudflare.
AUTOMATIC_TTL = 1


@dataclass(frozen=True)
class Record:
    """A DNS record as stored by Cloudflare."""

    id: str
    type: str
    name: str
    content: str
    ttl: int = AUTOMATIC_TTL
    proxied: bool = False


def _unquote(content: str) -> str:
    """Cloudflare may hand TXT content back wrapped in double quotes."""
    if len(content) >= 2 and content.startswith('"') and content.endswith('"'):
        return content[1:-1]
    return content


class CloudflareClient:
    """Client for the DNS records of a single Cloudflare zone."""

    def __init__(
        self,
        auth_email: str,
        auth_token: str,
        zone_id: str,
        *,
        timeout: float = 10.0,
        base_url: str = API_BASE_URL,
        per_page: int = 100,
        session: Optional[requests.Session] = None,
    ):
        self.zone_id = zone_id
        self._timeout = timeout
        self._base_url = base_url.rstrip("/")
        self._per_page = per_page
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "X-Auth-Email": auth_email,
                "X-Auth-Key": auth_token,
                "Content-Type": "application/json",
            }
        )

    @property
    def records_url(self) -> str:
        return f"{self._base_url}/zones/{self.zone_id}/dns_records"

    def _request(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = self._session.request(method, url, timeout=self._timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            raise TransportError(f"{method} {url} failed: {e}") from e

        try:
            body = response.json()
        except ValueError as e:
            raise TransportError(
                f"{method} {url} returned HTTP {response.status_code} with a non-JSON body"
            ) from e
        if not isinstance(body, dict):
            raise TransportError(f"{method} {url} returned an unexpected body: {body!r}")

        if not body.get("success", False):
            raise ProviderError.from_response(
                body.get("errors") or [],
                f"{method} {url} failed with HTTP {response.status_code}",
            )
        return body

    @staticmethod
    def _parse_record(data: Any) -> Optional[Record]:
        if not isinstance(data, dict):
            logger.warning(f"Skipping malformed record: {data}")
            return None
        record_id = data.get("id")
        record_type = data.get("type")
        name = data.get("name")
        content = data.get("content")
        if not all(isinstance(v, str) for v in (record_id, record_type, name, content)):
            logger.warning(f"Skipping malformed record: {data}")
            return None
        if record_type == "TXT":
            content = _unquote(content)
        return Record(
            id=record_id,
            type=record_type,
            name=name,
            content=content,
            ttl=int(data.get("ttl") or AUTOMATIC_TTL),
            proxied=bool(data.get("proxied", False)),
        )

    def list_records(self, record_type: str, name: Optional[str] = None) -> List[Record]:
        """List every record of ``record_type`` (optionally only those named ``name``).

        Raises:
            RecordNotFoundError: if nothing matches.
            ProviderError: if Cloudflare rejects the request.
            TransportError: if Cloudflare cannot be reached.
        """
        records: List[Record] = []
        page = 1
        while True:
            params: Dict[str, Any] = {"type": record_type, "page": page, "per_page": self._per_page}
            if name:
                params["name"] = name
            body = self._request("GET", self.records_url, params=params)

            for item in body.get("result") or []:
                record = self._parse_record(item)
                if record is not None:
                    records.append(record)

            info = body.get("result_info") or {}
            total_pages = int(info.get("total_pages") or 1)
            if page >= total_pages:
                break
            page += 1

        if not records:
            target = f"{record_type} records named {name}" if name else f"{record_type} records"
            raise RecordNotFoundError(f"Could not find any {target}")
        return records

    def get_record(self, record_type: str, name: str) -> Record:
        return self.list_records(record_type, name)[0]

    def create_record(
        self,
        record_type: str,
        name: str,
        content: str,
        ttl: int = AUTOMATIC_TTL,
        proxied: bool = False,
    ) -> Record:
        payload = {
            "type": record_type,
            "name": name,
            "content": content,
            "ttl": ttl,
            "proxied": proxied,
        }
        body = self._request("POST", self.records_url, json=payload)
        record = self._parse_record(body.get("result"))
        if record is None:
            raise TransportError(f"Cloudflare did not return the created {record_type} record")
        logger.info(f"Created {record_type} record: {name} -> {content}")
        return record

    def update_record(
        self,
        record_id: str,
        record_type: str,
        name: str,
        content: str,
        ttl: int = AUTOMATIC_TTL,
        proxied: bool = False,
    ) -> Record:
        """Overwrite an existing record in place (PUT), keeping its ID."""
        payload = {
            "type": record_type,
            "name": name,
            "content": content,
            "ttl": ttl,
            "proxied": proxied,
        }
        body = self._request("PUT", f"{self.records_url}/{record_id}", json=payload)
        record = self._parse_record(body.get("result"))
        if record is None:
            raise TransportError(f"Cloudflare did not return the updated {record_type} record")
        logger.info(f"Updated {record_type} record: {name} -> {content}")
        return record

    def delete_record(self, record_type: str, name: str) -> None:
        """Delete the first ``record_type`` record named ``name``."""
        record = self.get_record(record_type, name)
        self.delete_record_by_id(record.id)
        logger.info(f"Deleted {record_type} record: {name} -> {record.content}")

    def delete_record_by_id(self, record_id: str) -> None:
        self._request("DELETE", f"{self.records_url}/{record_id}")
