"""
Upstream Twitch chat events.

Every event the upstream client can produce is one of the dataclasses
below. Lifecycle events describe the connection itself; channel events
are scoped to a single chat channel and carry the name of the downstream
event they are relayed as, plus the payload shape downstream consumers
receive.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Union


def normalize_channel(name: str) -> str:
    """'#SomeChannel ' -> 'somechannel'"""
    return (name or "").strip().lstrip("#").strip().lower()


def _now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------- #
# Lifecycle
# ---------------------------------------------------------------------- #


@dataclass
class Connected:
    event_name: ClassVar[str] = "connected"

    def to_payload(self) -> Optional[Dict[str, Any]]:
        return None


@dataclass
class Disconnected:
    event_name: ClassVar[str] = "disconnected"

    reason: str = ""

    def to_payload(self) -> Optional[Dict[str, Any]]:
        return {"reason": self.reason}


@dataclass
class Reconnecting:
    event_name: ClassVar[str] = "reconnect"

    attempt: int = 1
    delay: float = 0.0

    def to_payload(self) -> Optional[Dict[str, Any]]:
        return {"attempt": self.attempt, "delay": self.delay}


@dataclass
class ConnectFailed:
    event_name: ClassVar[str] = "connectfail"

    reason: str = ""

    def to_payload(self) -> Optional[Dict[str, Any]]:
        return {"reason": self.reason}


@dataclass
class RateLimited:
    event_name: ClassVar[str] = "limitation"

    detail: str = ""

    def to_payload(self) -> Optional[Dict[str, Any]]:
        return {"detail": self.detail}


@dataclass
class Crashed:
    event_name: ClassVar[str] = "crash"

    message: str = ""
    stack: str = ""

    def to_payload(self) -> Optional[Dict[str, Any]]:
        return {"message": self.message, "stack": self.stack}


# ---------------------------------------------------------------------- #
# Channel scoped
# ---------------------------------------------------------------------- #


@dataclass
class SubMethod:
    prime: bool = False
    plan: Optional[str] = None
    plan_name: Optional[str] = None

    @classmethod
    def from_plan(cls, plan: Optional[str], plan_name: Optional[str] = None) -> "SubMethod":
        return cls(prime=(plan or "").lower() == "prime", plan=plan, plan_name=plan_name)

    def to_dict(self) -> Dict[str, Any]:
        return {"prime": self.prime, "plan": self.plan, "planName": self.plan_name}


@dataclass
class ChatMessage:
    event_name: ClassVar[str] = "chat"

    channel: str
    user: Dict[str, str]
    message: str
    self_: bool = False

    def to_payload(self) -> Dict[str, Any]:
        return {
            "channel": self.channel,
            "user": dict(self.user),
            "message": self.message,
            "self": self.self_,
        }


@dataclass
class Subscription:
    """
    New subscription or resubscription. `resub` is derived from the
    month count unless the notice stated it explicitly.
    """

    event_name: ClassVar[str] = "subscription"

    channel: str
    username: str
    months: int = 1
    message: Optional[str] = None
    method: SubMethod = field(default_factory=SubMethod)
    resub: Optional[bool] = None
    ts: int = field(default_factory=_now_ms)

    def __post_init__(self):
        self.months = max(1, int(self.months or 1))
        if self.resub is None:
            self.resub = self.months > 1

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            "channel": self.channel,
            "username": self.username,
            "resub": bool(self.resub),
            "months": self.months,
            "method": self.method.to_dict(),
            "ts": self.ts,
        }
        if self.message is not None:
            payload["message"] = self.message
        return payload


@dataclass
class Cheer:
    event_name: ClassVar[str] = "cheer"

    channel: str
    userstate: Dict[str, str]
    message: str
    bits: int = 0

    def to_payload(self) -> Dict[str, Any]:
        return {
            "channel": self.channel,
            "userstate": dict(self.userstate),
            "message": self.message,
            "bits": self.bits,
        }


@dataclass
class UserTimeout:
    event_name: ClassVar[str] = "timeout"

    channel: str
    username: str
    duration: int
    reason: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "channel": self.channel,
            "username": self.username,
            "reason": self.reason,
            "duration": self.duration,
        }


@dataclass
class ClearChat:
    event_name: ClassVar[str] = "clearchat"

    channel: str

    def to_payload(self) -> Dict[str, Any]:
        return {"channel": self.channel}


@dataclass
class SubGift:
    event_name: ClassVar[str] = "subgift"

    channel: str
    username: str
    recipient: str
    months: int = 1
    method: SubMethod = field(default_factory=SubMethod)
    ts: int = field(default_factory=_now_ms)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "channel": self.channel,
            "username": self.username,
            "recipient": self.recipient,
            "months": self.months,
            "method": self.method.to_dict(),
            "ts": self.ts,
        }


@dataclass
class MysteryGift:
    event_name: ClassVar[str] = "submysterygift"

    channel: str
    username: str
    amount: int
    method: SubMethod = field(default_factory=SubMethod)
    ts: int = field(default_factory=_now_ms)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "channel": self.channel,
            "username": self.username,
            "amount": self.amount,
            "method": self.method.to_dict(),
            "ts": self.ts,
        }


@dataclass
class MysteryGiftComplete:
    event_name: ClassVar[str] = "submysterygiftcomplete"

    channel: str
    username: str
    amount: int
    recipients: List[str] = field(default_factory=list)
    method: SubMethod = field(default_factory=SubMethod)
    ts: int = field(default_factory=_now_ms)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "channel": self.channel,
            "username": self.username,
            "amount": self.amount,
            "method": self.method.to_dict(),
            "recipients": list(self.recipients),
            "ts": self.ts,
        }


@dataclass
class Raid:
    event_name: ClassVar[str] = "hosted"

    channel: str
    username: str
    viewers: int = 0

    def to_payload(self) -> Dict[str, Any]:
        return {
            "channel": self.channel,
            "username": self.username,
            "viewers": self.viewers,
            "autohost": False,
            "raid": True,
        }


LifecycleEvent = Union[Connected, Disconnected, Reconnecting, ConnectFailed, RateLimited, Crashed]

ChannelEvent = Union[
    ChatMessage,
    Subscription,
    Cheer,
    UserTimeout,
    ClearChat,
    SubGift,
    MysteryGift,
    MysteryGiftComplete,
    Raid,
]

UpstreamEvent = Union[LifecycleEvent, ChannelEvent]

CHANNEL_EVENTS = (
    ChatMessage,
    Subscription,
    Cheer,
    UserTimeout,
    ClearChat,
    SubGift,
    MysteryGift,
    MysteryGiftComplete,
    Raid,
)


__all__ = [
    "normalize_channel",
    "Connected",
    "Disconnected",
    "Reconnecting",
    "ConnectFailed",
    "RateLimited",
    "Crashed",
    "SubMethod",
    "ChatMessage",
    "Subscription",
    "Cheer",
    "UserTimeout",
    "ClearChat",
    "SubGift",
    "MysteryGift",
    "MysteryGiftComplete",
    "Raid",
    "LifecycleEvent",
    "ChannelEvent",
    "UpstreamEvent",
    "CHANNEL_EVENTS",
]
