"""Event normalizer — provider payload → CanonicalEvent.

Every function here is pure: no clock, no database, no randomness. Retries
and dead-letter replays re-run normalization and must get the same event
back, so nothing may depend on when or how often it is called.
"""
import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from outreach_events.errors import MalformedEvent
from outreach_events.schemas.event import CanonicalEvent

logger = logging.getLogger(__name__)

EMAIL = "email"
LINKEDIN = "linkedin"
VIDEO = "video"

EVENT_CHANNELS: dict[str, str] = {
    "sent": EMAIL,
    "delivered": EMAIL,
    "opened": EMAIL,
    "clicked": EMAIL,
    "replied": EMAIL,
    "bounced": EMAIL,
    "unsubscribed": EMAIL,
    "spam_reported": EMAIL,
    "profile_visited": LINKEDIN,
    "connection_sent": LINKEDIN,
    "connection_accepted": LINKEDIN,
    "connection_rejected": LINKEDIN,
    "message_sent": LINKEDIN,
    "message_read": LINKEDIN,
    "message_replied": LINKEDIN,
    "voice_message_sent": LINKEDIN,
    "action_failed": LINKEDIN,
    "video_generated": VIDEO,
    "video_generation_failed": VIDEO,
    "video_viewed": VIDEO,
    "video_completed": VIDEO,
    "video_shared": VIDEO,
}

# Provider spellings that differ from the canonical vocabulary.
EVENT_TYPE_ALIASES: dict[str, str] = {
    "email.sent": "sent",
    "email.delivered": "delivered",
    "email.opened": "opened",
    "email.clicked": "clicked",
    "email.replied": "replied",
    "email.bounced": "bounced",
    "email.unsubscribed": "unsubscribed",
    "spam_complaint": "spam_reported",
    "spam": "spam_reported",
    "linkedin.profile_visited": "profile_visited",
    "linkedin.connection_sent": "connection_sent",
    "linkedin.connection_accepted": "connection_accepted",
    "linkedin.connection_rejected": "connection_rejected",
    "linkedin.message_sent": "message_sent",
    "linkedin.message_read": "message_read",
    "linkedin.message_replied": "message_replied",
    "video.completed": "video_generated",
    "video.failed": "video_generation_failed",
    "video.viewed": "video_viewed",
    "video.watch_completed": "video_completed",
    "video.shared": "video_shared",
}

LEMLIST_EVENTS: dict[str, str] = {
    "emailssent": "sent",
    "emailsdelivered": "delivered",
    "emailsopened": "opened",
    "emailsclicked": "clicked",
    "emailsreplied": "replied",
    "emailsbounced": "bounced",
    "emailsunsubscribed": "unsubscribed",
    "emailsspam": "spam_reported",
    "linkedinvisitdone": "profile_visited",
    "linkedininvitedone": "connection_sent",
    "linkedininviteaccepted": "connection_accepted",
    "linkedinsent": "message_sent",
    "linkedinreplied": "message_replied",
}

POSTMARK_RECORD_TYPES: dict[str, str] = {
    "Delivery": "delivered",
    "Bounce": "bounced",
    "Open": "opened",
    "Click": "clicked",
    "SpamComplaint": "spam_reported",
    "SubscriptionChange": "unsubscribed",
}

PHANTOMBUSTER_RESULTS: dict[str, str] = {
    "visited": "profile_visited",
    "invited": "connection_sent",
    "connected": "connection_accepted",
    "rejected": "connection_rejected",
    "sent": "message_sent",
    "read": "message_read",
    "replied": "message_replied",
    "voice_sent": "voice_message_sent",
}


def payload_digest(payload: dict[str, Any]) -> str:
    """Stable SHA-256 of a payload, used as the raw payload reference."""
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _first(payload: dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = _text(payload.get(key))
        if value:
            return value
    return None


def _nested(payload: dict[str, Any], *path: str) -> Any:
    current: Any = payload
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def parse_timestamp(provider: str, value: Any) -> Optional[datetime]:
    """Parse ISO-8601 strings, datetimes and unix seconds/milliseconds to aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise MalformedEvent(provider, f"unparseable timestamp {value!r}")
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        seconds = value / 1000 if value >= 10_000_000_000 else value
        try:
            parsed = datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise MalformedEvent(provider, f"unparseable timestamp {value!r}") from exc
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise MalformedEvent(provider, f"unparseable timestamp {value!r}") from exc
    else:
        raise MalformedEvent(provider, f"unparseable timestamp {value!r}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def canonical_event_type(provider: str, raw_type: Optional[str]) -> str:
    """Map a provider event name into the canonical vocabulary."""
    if not raw_type:
        raise MalformedEvent(provider, "event type is required")
    candidate = EVENT_TYPE_ALIASES.get(raw_type, raw_type)
    candidate = EVENT_TYPE_ALIASES.get(candidate.lower(), candidate.lower())
    if candidate not in EVENT_CHANNELS:
        raise MalformedEvent(provider, f"unknown event type {raw_type!r}")
    return candidate


def _build(
    provider: str,
    payload: dict[str, Any],
    *,
    event_type: str,
    event_id: Optional[str],
    enrollment_key: Optional[str],
    occurred_at: Optional[datetime],
    channel: Optional[str] = None,
) -> CanonicalEvent:
    if not event_id:
        raise MalformedEvent(provider, "provider event id is required for deduplication")
    if not enrollment_key:
        raise MalformedEvent(provider, "no enrollment key material in payload")
    return CanonicalEvent(
        provider=provider,
        provider_event_id=event_id,
        event_type=event_type,
        channel=channel or EVENT_CHANNELS[event_type],
        enrollment_key=enrollment_key,
        occurred_at=occurred_at,
        raw_payload_ref=payload_digest(payload),
        raw_payload=payload,
    )


def _metadata_enrollment_id(payload: dict[str, Any]) -> Optional[str]:
    for container in ("Metadata", "metadata"):
        value = _text(_nested(payload, container, "enrollment_id"))
        if value:
            return value
    return _first(payload, "enrollment_id", "enrollmentId")


def parse_lemlist(provider: str, payload: dict[str, Any]) -> CanonicalEvent:
    raw_type = _first(payload, "eventName", "type")
    if raw_type is None:
        raise MalformedEvent(provider, "event type is required")
    key = raw_type.replace("_", "").lower()
    # lemlist has used both "emailsOpened" and "emailOpened".
    if key.startswith("email") and not key.startswith("emails"):
        key = "emails" + key[len("email"):]
    event_type = LEMLIST_EVENTS.get(key) or canonical_event_type(provider, raw_type)
    return _build(
        provider,
        payload,
        event_type=event_type,
        event_id=_first(payload, "_id", "id"),
        enrollment_key=_metadata_enrollment_id(payload),
        occurred_at=parse_timestamp(provider, payload.get("eventDate") or payload.get("createdAt")),
    )


def parse_postmark(provider: str, payload: dict[str, Any]) -> CanonicalEvent:
    record_type = _first(payload, "RecordType")
    if record_type is None:
        raise MalformedEvent(provider, "RecordType is required")
    event_type = POSTMARK_RECORD_TYPES.get(record_type) or canonical_event_type(provider, record_type)
    raw_ts = _first(payload, "ReceivedAt", "DeliveredAt", "BouncedAt", "ChangedAt")
    occurred_at = parse_timestamp(provider, raw_ts)
    message_id = _first(payload, "MessageID")
    event_id = _first(payload, "ID")
    if event_id is None and message_id and raw_ts:
        event_id = f"{message_id}:{record_type}:{raw_ts}"
    return _build(
        provider,
        payload,
        event_type=event_type,
        event_id=event_id,
        enrollment_key=_metadata_enrollment_id(payload) or message_id,
        occurred_at=occurred_at,
    )


def parse_phantombuster(provider: str, payload: dict[str, Any]) -> CanonicalEvent:
    container_id = _first(payload, "containerId")
    results = _nested(payload, "output", "results")
    first_result = results[0] if isinstance(results, list) and results and isinstance(results[0], dict) else {}
    if _text(payload.get("status")) == "error":
        event_type = "action_failed"
    else:
        result_status = _text(first_result.get("status"))
        if result_status is None:
            raise MalformedEvent(provider, "event type is required")
        event_type = PHANTOMBUSTER_RESULTS.get(result_status.lower()) or canonical_event_type(provider, result_status)
    return _build(
        provider,
        payload,
        event_type=event_type,
        event_id=container_id,
        enrollment_key=_text(first_result.get("enrollment_id")) or container_id,
        occurred_at=parse_timestamp(provider, payload.get("endedAt") or payload.get("timestamp")),
        channel=LINKEDIN,
    )


def parse_heygen(provider: str, payload: dict[str, Any]) -> CanonicalEvent:
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    event_type = canonical_event_type(provider, _first(payload, "event_type"))
    video_id = _text(data.get("video_id"))
    return _build(
        provider,
        payload,
        event_type=event_type,
        # One video emits several lifecycle events, so the video id alone is not unique.
        event_id=f"{video_id}:{event_type}" if video_id else None,
        enrollment_key=_text(data.get("callback_id")),
        occurred_at=parse_timestamp(provider, data.get("timestamp")),
        channel=VIDEO,
    )


def parse_canonical(provider: str, payload: dict[str, Any]) -> CanonicalEvent:
    """Payloads already shaped like a canonical event (internal senders, tests)."""
    event_type = canonical_event_type(provider, _first(payload, "event_type", "type"))
    channel = _first(payload, "channel")
    return _build(
        provider,
        payload,
        event_type=event_type,
        event_id=_first(payload, "provider_event_id", "event_id", "id"),
        enrollment_key=_first(payload, "enrollment_id", "enrollment_key", "key", "provider_message_id", "provider_action_id"),
        occurred_at=parse_timestamp(provider, payload.get("timestamp") or payload.get("occurred_at")),
        channel=channel.lower() if channel else None,
    )


PARSERS: dict[str, Callable[[str, dict[str, Any]], CanonicalEvent]] = {
    "lemlist": parse_lemlist,
    "postmark": parse_postmark,
    "phantombuster": parse_phantombuster,
    "heygen": parse_heygen,
}


def normalize(provider: str, payload: Any) -> CanonicalEvent:
    """Translate an authenticated provider payload into a CanonicalEvent.

    Raises MalformedEvent when the event type, event id or enrollment key
    material is missing, or when a timestamp cannot be parsed.
    """
    provider_name = (_text(provider) or "").lower()
    if not provider_name:
        raise MalformedEvent("unknown", "provider name is required")
    if not isinstance(payload, dict):
        raise MalformedEvent(provider_name, f"payload must be a JSON object, got {type(payload).__name__}")
    parser = PARSERS.get(provider_name, parse_canonical)
    event = parser(provider_name, payload)
    logger.debug(
        "Normalized %s event %s (%s) for key %s",
        provider_name, event.provider_event_id, event.event_type, event.enrollment_key,
    )
    return event
