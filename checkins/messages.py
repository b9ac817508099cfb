import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Tuple

from . import crypto
from .errors import ParseError, ValidationError

"""
messages.py — the CheckIn entity, wire frames, canonicalization and signatures.

What this module does:
- Defines the immutable CheckIn record and its wire shape (`new_checkin`).
- Builds every frame type we send (checkin, hello, requests, relay replies).
- Creates a deterministic string for signing so both ends hash the same bytes.
- Signs/verifies submissions with HMAC-SHA256 plus a signing timestamp.

Why a separate signing timestamp?
- `timestamp` is when the user checked in (shown in the UI, used for ordering).
- `signingTimestamp` is when the bytes were signed; the relay uses it to
  reject replays of an old, otherwise valid, submission.
"""

MAX_MESSAGE_CHARS = 42
MAX_TAGS = 3

# -----------------------
# Public message type tags
# -----------------------
HELLO = "hello"
CHECKIN = "checkin"
NEW_CHECKIN = "new_checkin"
ONLINE_USERS = "online_users"
ONLINE_USERS_REQUEST = "online_users_request"
HISTORY_REQUEST = "history_request"
HISTORY_END = "history_end"
ERROR = "error"

# Fields covered by the signature, in this exact order.
SIGNED_FIELDS = ("type", "identity", "tags", "message", "timestamp", "avatarRef", "decorativeSnippet")


def now_ms() -> int:
    """Current time in milliseconds (used for signingTimestamp)."""
    return int(time.time() * 1000)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(ts: datetime) -> str:
    """ISO-8601 UTC with milliseconds and a 'Z' suffix: 2024-05-01T12:00:00.000Z."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Any) -> datetime:
    """Inverse of format_timestamp(); naive inputs are read as UTC."""
    if not isinstance(value, str) or not value:
        raise ParseError(f"Invalid timestamp: {value!r}")
    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ParseError(f"Invalid timestamp: {value!r}") from exc
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def truncate_message(text: str, limit: int = MAX_MESSAGE_CHARS) -> str:
    """
    Cut `text` to at most `limit` UTF-16 code units. Never rejects.

    Counting in UTF-16 keeps the limit identical to what browser-based peers
    enforce. A surrogate pair that would be split at the edge is dropped whole.
    """
    encoded = text.encode("utf-16-le")
    if len(encoded) <= limit * 2:
        return text
    return encoded[: limit * 2].decode("utf-16-le", errors="ignore")


@dataclass(frozen=True)
class CheckIn:
    """One identity's presence broadcast. Superseded, never mutated."""

    identity: str
    tags: Tuple[str, ...]
    message: str
    timestamp: datetime
    avatar_ref: Optional[str] = None
    decorative_snippet: Optional[str] = None
    # Local echo that the relay hasn't confirmed yet. Never sent on the wire.
    pending: bool = field(default=False, compare=False)

    def to_wire(self, msg_type: str = NEW_CHECKIN) -> Dict[str, Any]:
        frame: Dict[str, Any] = {
            "type": msg_type,
            "identity": self.identity,
            "tags": list(self.tags),
            "message": self.message,
            "timestamp": format_timestamp(self.timestamp),
        }
        if self.avatar_ref is not None:
            frame["avatarRef"] = self.avatar_ref
        if self.decorative_snippet is not None:
            frame["decorativeSnippet"] = self.decorative_snippet
        return frame

    @classmethod
    def from_wire(cls, frame: Dict[str, Any]) -> "CheckIn":
        """Build from a `checkin`/`new_checkin` frame. Raises ParseError on bad shape."""
        identity = frame.get("identity")
        if not isinstance(identity, str) or not identity:
            raise ParseError("check-in is missing an identity")
        tags = frame.get("tags", [])
        if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
            raise ParseError("check-in tags must be a list of strings")
        message = frame.get("message", "")
        if not isinstance(message, str):
            raise ParseError("check-in message must be a string")
        avatar_ref = frame.get("avatarRef")
        snippet = frame.get("decorativeSnippet")
        if avatar_ref is not None and not isinstance(avatar_ref, str):
            raise ParseError("avatarRef must be a string")
        if snippet is not None and not isinstance(snippet, str):
            raise ParseError("decorativeSnippet must be a string")
        return cls(
            identity=identity,
            tags=tuple(tags),
            message=message,
            timestamp=parse_timestamp(frame.get("timestamp")),
            avatar_ref=avatar_ref,
            decorative_snippet=snippet,
        )


def new_checkin(
    identity: str,
    tags: Optional[Iterable[str]] = None,
    message: str = "",
    timestamp: Optional[datetime] = None,
    avatar_ref: Optional[str] = None,
    decorative_snippet: Optional[str] = None,
    max_chars: int = MAX_MESSAGE_CHARS,
    pending: bool = False,
) -> CheckIn:
    """
    Validate local input and build a CheckIn stamped with the current time.

    Raises ValidationError for input we refuse to send; an over-long message
    is truncated, never refused.
    """
    if not isinstance(identity, str) or not identity.strip():
        raise ValidationError("identity must be a non-empty string")
    tag_list = list(tags or [])
    if len(tag_list) > MAX_TAGS:
        raise ValidationError(f"at most {MAX_TAGS} tags allowed, got {len(tag_list)}")
    if not all(isinstance(t, str) and t for t in tag_list):
        raise ValidationError("tags must be non-empty strings")
    if not isinstance(message, str):
        raise ValidationError("message must be a string")
    ts = timestamp or utcnow()
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    # Wire precision is milliseconds; keep the local copy identical to what peers see.
    ts = ts.replace(microsecond=ts.microsecond // 1000 * 1000)
    return CheckIn(
        identity=identity,
        tags=tuple(tag_list),
        message=truncate_message(message, max_chars),
        timestamp=ts,
        avatar_ref=avatar_ref,
        decorative_snippet=decorative_snippet,
        pending=pending,
    )


# -----------------------
# Frame builders
# -----------------------

def hello(auth_token: Optional[str] = None) -> Dict[str, Any]:
    frame: Dict[str, Any] = {"type": HELLO}
    if auth_token:
        frame["authToken"] = auth_token
    return frame


def history_request() -> Dict[str, Any]:
    return {"type": HISTORY_REQUEST}


def history_end() -> Dict[str, Any]:
    return {"type": HISTORY_END}


def online_users_request() -> Dict[str, Any]:
    return {"type": ONLINE_USERS_REQUEST}


def online_users(count: int) -> Dict[str, Any]:
    return {"type": ONLINE_USERS, "count": count}


def error(message: str, code: str, **extra: Any) -> Dict[str, Any]:
    return {"type": ERROR, "message": message, "code": code, **extra}


# -----------------------
# Canonicalization & signatures
# -----------------------

def canonical_string(frame: Dict[str, Any]) -> str:
    """
    Deterministic JSON of the signed fields in their fixed order.

    Absent optional fields are left out entirely (not null), and auth data
    (authToken, signature, signingTimestamp) never takes part.
    """
    clean = {}
    for key in SIGNED_FIELDS:
        value = frame.get(key)
        if value is None:
            continue
        clean[key] = value
    return json.dumps(clean, separators=(",", ":"), ensure_ascii=False)


def sign_checkin(frame: Dict[str, Any], secret, signing_ts: Optional[int] = None) -> Tuple[str, str]:
    """
    Sign a checkin-shaped frame. Returns (signature, signingTimestamp).

    The signing timestamp is appended to the canonical string before hashing so
    a captured submission can't be replayed once it leaves the freshness window.
    """
    ts = str(signing_ts if signing_ts is not None else now_ms())
    data = (canonical_string(frame) + ts).encode("utf-8")
    return crypto.sign(secret, data), ts


def verify_checkin(frame: Dict[str, Any], secret) -> bool:
    """Check frame['signature'] against its canonical string + signingTimestamp."""
    sig = frame.get("signature")
    ts = frame.get("signingTimestamp")
    if not isinstance(sig, str) or not isinstance(ts, str) or not sig:
        return False
    data = (canonical_string(frame) + ts).encode("utf-8")
    return crypto.verify(secret, data, sig)


def signed_checkin_frame(checkin: CheckIn, secret, auth_token: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience helper: wire frame for a submission, signed and ready to send.

    Typical usage:
        ci = new_checkin("alice", ["python"], "debugging")
        await write_frame(writer, signed_checkin_frame(ci, secret, token))
    """
    frame = checkin.to_wire(CHECKIN)
    signature, signing_ts = sign_checkin(frame, secret)
    if auth_token:
        frame["authToken"] = auth_token
    frame["signature"] = signature
    frame["signingTimestamp"] = signing_ts
    return frame
