"""
Twitch IRC line parsing and translation into upstream events.

`parse_line` splits a raw IRC line (IRCv3 tags included) into an
`IrcLine`. `EventTranslator` turns the channel-scoped commands
(PRIVMSG, USERNOTICE, CLEARCHAT) into the event dataclasses from
`services.twitch.models.events`.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from services.twitch.models.events import (
    ChannelEvent,
    ChatMessage,
    Cheer,
    ClearChat,
    MysteryGift,
    MysteryGiftComplete,
    Raid,
    SubGift,
    SubMethod,
    Subscription,
    UserTimeout,
    normalize_channel,
)
from shared.logging.logger import get_logger

log = get_logger("twitch.parser")

_TAG_ESCAPES = {
    "s": " ",
    ":": ";",
    "\\": "\\",
    "r": "\r",
    "n": "\n",
}

ANONYMOUS_GIFTER = "AnAnonymousGifter"


@dataclass
class IrcLine:
    raw: str
    command: str
    tags: Dict[str, str] = field(default_factory=dict)
    prefix: str = ""
    params: Tuple[str, ...] = ()

    @property
    def nick(self) -> str:
        # Prefix example: nickname!nickname@nickname.tmi.twitch.tv
        if "!" in self.prefix:
            return self.prefix.split("!", 1)[0]
        return self.prefix

    @property
    def channel(self) -> Optional[str]:
        if self.params and self.params[0].startswith("#"):
            return normalize_channel(self.params[0])
        return None

    @property
    def trailing(self) -> Optional[str]:
        return self.params[-1] if len(self.params) > 1 else None


def unescape_tag(value: str) -> str:
    if "\\" not in value:
        return value

    out = []
    chars = iter(value)
    for ch in chars:
        if ch != "\\":
            out.append(ch)
            continue
        nxt = next(chars, None)
        if nxt is None:
            break
        out.append(_TAG_ESCAPES.get(nxt, nxt))
    return "".join(out)


def _split_tags(raw: str) -> Tuple[Dict[str, str], str]:
    if raw.startswith("@"):
        if " " not in raw:
            return {}, ""
        tags_part, remainder = raw.split(" ", 1)
        tags = {}
        for pair in tags_part[1:].split(";"):
            if "=" in pair:
                k, v = pair.split("=", 1)
                tags[k] = unescape_tag(v)
            elif pair:
                tags[pair] = ""
        return tags, remainder

    return {}, raw


def _split_prefix_and_command(raw: str) -> Tuple[str, str, Tuple[str, ...]]:
    prefix = ""
    rest = raw
    if raw.startswith(":"):
        if " " in raw:
            prefix, rest = raw[1:].split(" ", 1)
        else:
            prefix = raw[1:]
            rest = ""

    if " :" in rest:
        middle, trailing = rest.split(" :", 1)
        parts = middle.split()
        if not parts:
            return prefix, "", tuple()
        command = parts[0]
        params = tuple(parts[1:] + [trailing])
    else:
        parts = rest.split()
        if not parts:
            return prefix, "", tuple()
        command = parts[0]
        params = tuple(parts[1:])

    return prefix, command, params


def parse_line(raw: str) -> Optional[IrcLine]:
    raw = raw.rstrip("\r\n")
    if not raw:
        return None

    tags, remainder = _split_tags(raw)
    prefix, command, params = _split_prefix_and_command(remainder.lstrip())
    if not command:
        return None

    return IrcLine(
        raw=raw,
        command=command.upper(),
        tags=tags,
        prefix=prefix,
        params=params,
    )


def _int(value: Optional[str], default: int = 0) -> int:
    try:
        return int(value) if value not in (None, "") else default
    except (TypeError, ValueError):
        return default


@dataclass
class _PendingGift:
    username: str
    amount: int
    method: SubMethod
    recipients: List[str] = field(default_factory=list)
    started: float = field(default_factory=time.monotonic)


class EventTranslator:
    """
    Stateful translator from IRC lines to channel events.

    The only state is mystery gift aggregation: after a `submysterygift`
    notice announcing N gifts, the next N `subgift` notices from the same
    gifter in the same channel are folded into a single
    `submysterygiftcomplete` event instead of being relayed one by one.
    """

    GIFT_TIMEOUT = 60.0

    def __init__(self, nickname: str = ""):
        self.nickname = (nickname or "").lower()
        self._gifts: Dict[Tuple[str, str], _PendingGift] = {}

    # ------------------------------------------------------------------ #

    def translate(self, line: IrcLine) -> List[ChannelEvent]:
        self._prune_gifts()

        channel = line.channel
        if not channel:
            return []

        if line.command == "PRIVMSG":
            return self._privmsg(channel, line)
        if line.command == "USERNOTICE":
            return self._usernotice(channel, line)
        if line.command == "CLEARCHAT":
            return self._clearchat(channel, line)
        return []

    @property
    def pending_gifts(self) -> int:
        return len(self._gifts)

    # ------------------------------------------------------------------ #

    def _privmsg(self, channel: str, line: IrcLine) -> List[ChannelEvent]:
        text = line.trailing or ""
        login = line.nick
        user = dict(line.tags)
        user.setdefault("username", login)

        if text.startswith("\x01ACTION ") and text.endswith("\x01"):
            text = text[8:-1]
            user["message-type"] = "action"
        else:
            user.setdefault("message-type", "chat")

        bits = _int(line.tags.get("bits"))
        if bits > 0:
            return [Cheer(channel=channel, userstate=user, message=text, bits=bits)]

        return [
            ChatMessage(
                channel=channel,
                user=user,
                message=text,
                self_=bool(self.nickname) and login.lower() == self.nickname,
            )
        ]

    def _usernotice(self, channel: str, line: IrcLine) -> List[ChannelEvent]:
        tags = line.tags
        msg_id = tags.get("msg-id", "")
        display = tags.get("display-name") or tags.get("login") or ""
        method = SubMethod.from_plan(
            tags.get("msg-param-sub-plan"),
            tags.get("msg-param-sub-plan-name"),
        )

        if msg_id in ("sub", "resub"):
            months = _int(tags.get("msg-param-cumulative-months")) or _int(
                tags.get("msg-param-months"), 1
            )
            return [
                Subscription(
                    channel=channel,
                    username=display,
                    months=months,
                    message=line.trailing,
                    method=method,
                    resub=msg_id == "resub",
                )
            ]

        if msg_id in ("subgift", "anonsubgift"):
            return self._subgift(channel, line, method)

        if msg_id in ("submysterygift", "anonsubmysterygift"):
            amount = _int(tags.get("msg-param-mass-gift-count"), 1)
            username = display if msg_id == "submysterygift" else ANONYMOUS_GIFTER
            key = (channel, (tags.get("login") or username).lower())
            self._gifts[key] = _PendingGift(username=username, amount=amount, method=method)
            log.debug(f"[#{channel}] {username} announced {amount} gift(s)")
            return [MysteryGift(channel=channel, username=username, amount=amount, method=method)]

        if msg_id == "raid":
            return [
                Raid(
                    channel=channel,
                    username=tags.get("msg-param-displayName") or display,
                    viewers=_int(tags.get("msg-param-viewerCount")),
                )
            ]

        log.debug(f"[#{channel}] Ignoring USERNOTICE msg-id={msg_id!r}")
        return []

    def _subgift(self, channel: str, line: IrcLine, method: SubMethod) -> List[ChannelEvent]:
        tags = line.tags
        anonymous = tags.get("msg-id") == "anonsubgift"
        username = ANONYMOUS_GIFTER if anonymous else (
            tags.get("display-name") or tags.get("login") or ""
        )
        recipient = (
            tags.get("msg-param-recipient-display-name")
            or tags.get("msg-param-recipient-user-name")
            or ""
        )

        key = (channel, (tags.get("login") or username).lower())
        pending = self._gifts.get(key)
        if pending is not None:
            pending.recipients.append(recipient)
            if len(pending.recipients) < pending.amount:
                return []

            del self._gifts[key]
            return [
                MysteryGiftComplete(
                    channel=channel,
                    username=pending.username,
                    amount=pending.amount,
                    recipients=list(pending.recipients),
                    method=pending.method,
                )
            ]

        return [
            SubGift(
                channel=channel,
                username=username,
                recipient=recipient,
                months=_int(tags.get("msg-param-months"), 1),
                method=method,
            )
        ]

    def _clearchat(self, channel: str, line: IrcLine) -> List[ChannelEvent]:
        target = line.trailing
        if not target:
            return [ClearChat(channel=channel)]

        duration = line.tags.get("ban-duration")
        if duration is None:
            # Permanent bans are not relayed
            log.debug(f"[#{channel}] {target} was banned")
            return []

        return [
            UserTimeout(
                channel=channel,
                username=target,
                duration=_int(duration),
                reason=line.tags.get("ban-reason") or None,
            )
        ]

    def _prune_gifts(self) -> None:
        if not self._gifts:
            return
        cutoff = time.monotonic() - self.GIFT_TIMEOUT
        for key, pending in list(self._gifts.items()):
            if pending.started < cutoff:
                log.warning(
                    f"[#{key[0]}] Dropping incomplete mystery gift from {pending.username} "
                    f"({len(pending.recipients)}/{pending.amount} recipients)"
                )
                del self._gifts[key]


__all__ = ["IrcLine", "EventTranslator", "parse_line", "unescape_tag", "ANONYMOUS_GIFTER"]
