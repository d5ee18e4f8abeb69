"""
Classified relay errors.

Every failure the relay core can report belongs to one of three classes:

    permanent  — reject and discard; retrying the same request cannot succeed
    retryable  — state is preserved; retry after ``retry_after`` seconds
    benign     — nothing further is needed (``AlreadySeen``)

Each error carries a stable ``code`` string so it can cross the wire as an
ERROR frame and be rebuilt on the other side with ``error_from_code``.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for classified relay errors."""

    code = "relay_error"
    retryable = False
    benign = False

    def __init__(self, detail: str = "", retry_after: float = 0.0) -> None:
        super().__init__(detail or self.code)
        self.detail = detail
        self.retry_after = retry_after

    def to_payload(self) -> dict:
        return {
            "code": self.code,
            "detail": self.detail,
            "retry_after": self.retry_after,
        }


# --- Permanent ---

class Expired(RelayError):
    code = "expired"


class TooManyHops(RelayError):
    code = "too_many_hops"


class TooBig(RelayError):
    code = "too_big"


class InvalidSignature(RelayError):
    code = "invalid_signature"


class ContentMismatch(RelayError):
    code = "content_mismatch"


class MessageIdCollision(RelayError):
    code = "message_id_collision"


class IncorrectOffset(RelayError):
    code = "incorrect_offset"


class NoRoute(RelayError):
    code = "no_route"


class UnknownMessage(RelayError):
    code = "unknown_message"


class StorageError(RelayError):
    """Local disk failure while receiving; the partial is discarded."""

    code = "storage_error"


# --- Retryable ---

class Busy(RelayError):
    code = "busy"
    retryable = True


class RateLimitExceeded(RelayError):
    code = "rate_limit_exceeded"
    retryable = True

    def __init__(self, limit: float, retry_after: float = 0.0, detail: str = "") -> None:
        super().__init__(detail or f"rate limit {limit}/s exceeded", retry_after)
        self.limit = limit

    def to_payload(self) -> dict:
        payload = super().to_payload()
        payload["limit"] = self.limit
        return payload


# --- Benign ---

class AlreadySeen(RelayError):
    code = "already_seen"
    benign = True


_BY_CODE: dict[str, type[RelayError]] = {
    cls.code: cls
    for cls in (
        Expired, TooManyHops, TooBig, InvalidSignature, ContentMismatch,
        MessageIdCollision, IncorrectOffset, NoRoute, UnknownMessage,
        StorageError, Busy, RateLimitExceeded, AlreadySeen,
    )
}


def error_from_code(payload: dict) -> RelayError:
    """Rebuild a classified error from an ERROR frame payload.

    Unknown codes become a plain ``RelayError`` so a newer peer cannot crash
    an older client.
    """
    code = payload.get("code", "")
    detail = str(payload.get("detail", ""))
    try:
        retry_after = float(payload.get("retry_after", 0.0) or 0.0)
    except (TypeError, ValueError):
        retry_after = 0.0

    cls = _BY_CODE.get(code)
    if cls is None:
        err = RelayError(detail or f"remote error {code!r}", retry_after)
        return err
    if cls is RateLimitExceeded:
        try:
            limit = float(payload.get("limit", 0.0) or 0.0)
        except (TypeError, ValueError):
            limit = 0.0
        return RateLimitExceeded(limit, retry_after, detail)
    return cls(detail, retry_after)


def is_retryable(exc: BaseException) -> bool:
    """True if the caller should re-attempt the transfer later."""
    return isinstance(exc, RelayError) and exc.retryable
