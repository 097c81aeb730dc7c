"""Error taxonomy for the caching proxy."""

from __future__ import annotations

from fastapi import status


class ProxyError(Exception):
    """Base class for errors surfaced to HTTP callers."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    expose_detail = False

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail

    @property
    def public_detail(self) -> str:
        return self.detail if self.expose_detail else "internal error"


class InputError(ProxyError):
    status_code = status.HTTP_400_BAD_REQUEST
    expose_detail = True


class AuthError(ProxyError):
    status_code = status.HTTP_403_FORBIDDEN
    expose_detail = True


class FetchError(ProxyError):
    """Origin or fallback could not be reached, or replied with an unusable status."""


class StoreError(ProxyError):
    """The object store rejected or failed a head, put or get call."""
