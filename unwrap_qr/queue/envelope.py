"""
Task statuses and the v2 wire envelope.

A message body is a one-key JSON object naming the status:

    {"InProgress": "<base64 image>"}   or   {"InProgress": null}
    {"Success": "<decoded text>"}
    {"Failure": "<reason>"}

Pending exists only in the registry and never travels over the broker.
"""

from __future__ import annotations

import base64
import binascii
import uuid
from typing import Annotated, Literal, Optional, Union

import orjson
from pydantic import BaseModel, ConfigDict, Field

from ..common.errors import ProtocolMismatchError

WIRE_PROTOCOL = "v2"
CONTENT_TYPE = "application/json"
CONTENT_ENCODING = "utf-8"


class Pending(BaseModel):
    model_config = ConfigDict(frozen=True)
    kind: Literal["Pending"] = "Pending"


class InProgress(BaseModel):
    model_config = ConfigDict(frozen=True)
    kind: Literal["InProgress"] = "InProgress"
    data: Optional[bytes] = None


class Success(BaseModel):
    model_config = ConfigDict(frozen=True)
    kind: Literal["Success"] = "Success"
    text: str


class Failure(BaseModel):
    model_config = ConfigDict(frozen=True)
    kind: Literal["Failure"] = "Failure"
    reason: str


Status = Annotated[Union[Pending, InProgress, Success, Failure], Field(discriminator="kind")]
WireStatus = Union[InProgress, Success, Failure]

_RANKS = {"Pending": 0, "InProgress": 1, "Success": 2, "Failure": 2}


def new_correlation_id() -> str:
    return str(uuid.uuid4())


def status_rank(status: Status) -> int:
    return _RANKS[status.kind]


def is_terminal(status: Status) -> bool:
    return status.kind in ("Success", "Failure")


def can_transition(current: Status, new: Status) -> bool:
    """Statuses only move forward; terminal ones never change."""
    return status_rank(new) > status_rank(current)


def encode_status(status: WireStatus) -> bytes:
    if isinstance(status, InProgress):
        data = None if status.data is None else base64.b64encode(status.data).decode("ascii")
        return orjson.dumps({"InProgress": data})
    if isinstance(status, Success):
        return orjson.dumps({"Success": status.text})
    if isinstance(status, Failure):
        return orjson.dumps({"Failure": status.reason})
    raise ProtocolMismatchError(
        f"{getattr(status, 'kind', type(status).__name__)} cannot be sent over the broker",
        details={"protocol": WIRE_PROTOCOL},
    )


def _mismatch(reason: str) -> ProtocolMismatchError:
    return ProtocolMismatchError(
        f"Body is not a {WIRE_PROTOCOL} envelope: {reason}",
        details={"protocol": WIRE_PROTOCOL},
    )


def decode_status(body: bytes) -> WireStatus:
    try:
        raw = orjson.loads(body)
    except orjson.JSONDecodeError as e:
        raise _mismatch(f"invalid JSON ({e})") from e

    if not isinstance(raw, dict) or len(raw) != 1:
        raise _mismatch("expected an object with exactly one tag")

    tag, value = next(iter(raw.items()))
    if tag == "InProgress":
        if value is None:
            return InProgress()
        if not isinstance(value, str):
            raise _mismatch("InProgress payload must be base64 text or null")
        try:
            return InProgress(data=base64.b64decode(value, validate=True))
        except binascii.Error as e:
            raise _mismatch(f"InProgress payload is not valid base64 ({e})") from e
    if tag == "Success":
        if not isinstance(value, str):
            raise _mismatch("Success payload must be text")
        return Success(text=value)
    if tag == "Failure":
        if not isinstance(value, str):
            raise _mismatch("Failure payload must be text")
        return Failure(reason=value)
    raise _mismatch(f"unknown tag {tag!r}")
