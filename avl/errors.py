"""Typed failures returned by the lifecycle manager.

Every failure carries a stable ``kind`` (mapped to a status code by the HTTP layer)
and a human-readable ``detail``.
"""
from __future__ import annotations


class AvlError(Exception):
    kind = "error"
    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "error": self.detail}


class ValidationError(AvlError):
    """Bad input from the client; never retried."""

    kind = "validation"
    status_code = 400


class NotFound(AvlError):
    kind = "not_found"
    status_code = 404


class InvalidTransition(AvlError):
    """The requested operation is not valid from the node's current status."""

    kind = "invalid_transition"
    status_code = 409

    def __init__(self, detail: str, status: str | None = None):
        if status is not None:
            detail = f"{detail} (current status: {status})"
        super().__init__(detail)
        self.status = status


class ContainerRuntimeError(AvlError):
    """A container runtime call failed or timed out. May be transient."""

    kind = "runtime"
    status_code = 502


class StoreError(AvlError):
    kind = "store"
    status_code = 500
