"""Exception types raised while reconciling Kubernetes resources into Cloudflare DNS."""

from __future__ import annotations

from typing import List, Optional


# =============================================================================
# Cloudflare Errors
# =============================================================================


class CloudflareError(Exception):
    """Base class for every failure reported by the Cloudflare client."""


class TransportError(CloudflareError):
    """The Cloudflare API could not be reached or returned an unreadable response."""


class ProviderError(CloudflareError):
    """The Cloudflare API answered but reported a failure."""

    def __init__(
        self,
        message: str,
        codes: Optional[List[int]] = None,
        messages: Optional[List[str]] = None,
    ):
        super().__init__(message)
        self.codes = codes or []
        self.messages = messages or []

    @classmethod
    def from_response(cls, errors: List[dict], fallback: str) -> "ProviderError":
        """Build an error from the ``errors`` array of a Cloudflare response body."""
        codes: List[int] = []
        messages: List[str] = []
        parts: List[str] = []
        for err in errors or []:
            if not isinstance(err, dict):
                continue
            code = err.get("code")
            message = str(err.get("message", ""))
            if isinstance(code, int):
                codes.append(code)
            messages.append(message)
            parts.append(f"Error code {code}, {message}.")
        return cls("".join(parts) or fallback, codes=codes, messages=messages)


class RecordNotFoundError(CloudflareError):
    """No record matched the requested type and name."""


class RecordConflictError(CloudflareError):
    """The hostname is already claimed by the ownership marker of another resource."""


# =============================================================================
# Reconciliation Errors
# =============================================================================


class AnnotationParseError(ValueError):
    """An annotation value could not be parsed."""


class InvalidKeyError(ValueError):
    """A work queue key is not of the form ``<kind>/<namespace>/<name>``."""


class ResourceLookupError(LookupError):
    """The local resource cache could not be read."""


# =============================================================================
# Public IP Errors
# =============================================================================


class PublicIPLookupError(Exception):
    """The public IP address could not be determined."""


class PublicIPUnavailableError(Exception):
    """No public IP address has been resolved yet."""
