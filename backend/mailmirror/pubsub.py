"""Pub/Sub push envelope decoding for Gmail change notifications.

Push body:
    {"message": {"data": "<base64 JSON>", "messageId": "...", "publishTime": "..."},
     "subscription": "projects/<project>/subscriptions/<name>"}

Decoded data:
    {"emailAddress": "user@example.com", "historyId": 12345}
"""
import base64
import binascii
import json
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


class InvalidPushMessage(ValueError):
    """Envelope or payload is not a Gmail notification. Redelivery will not fix it."""


class PubSubMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    data: str
    message_id: Optional[str] = Field(default=None, alias="messageId")
    publish_time: Optional[str] = Field(default=None, alias="publishTime")


class PubSubEnvelope(BaseModel):
    message: PubSubMessage
    subscription: Optional[str] = None


class GmailNotification(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email_address: str = Field(alias="emailAddress", min_length=1)
    history_id: str = Field(alias="historyId")

    @field_validator("history_id", mode="before")
    @classmethod
    def history_id_is_decimal(cls, v: Any) -> str:
        # Gmail sends a JSON number; tests and older publishers send a string.
        s = str(v).strip()
        if not s.isdigit():
            raise ValueError(f"historyId must be a non-negative integer, got {v!r}")
        return s


def decode_push_envelope(body: Any) -> GmailNotification:
    try:
        envelope = PubSubEnvelope.model_validate(body)
    except ValidationError as e:
        raise InvalidPushMessage(f"Invalid Pub/Sub message format: {e.errors()[0]['msg']}") from e
    if not envelope.message.data:
        raise InvalidPushMessage("Pub/Sub message has no data")
    try:
        raw = base64.b64decode(envelope.message.data, altchars=b"-_", validate=False)
        payload = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise InvalidPushMessage(f"Could not decode Pub/Sub data: {e}") from e
    try:
        return GmailNotification.model_validate(payload)
    except ValidationError as e:
        raise InvalidPushMessage(f"Not a Gmail notification: {e.errors()[0]['msg']}") from e
