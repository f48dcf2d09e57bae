"""
Wire Protocol Module

Line-based framing between client and server.

Requests (client -> server) are one line each:

    <command> [<arg1>] [<arg2 and the rest of the line>]

Responses (server -> client) pack every message of one request cycle into a
single line:

    :::<tag1>::<payload1>:::<tag2>::<payload2>...

Newlines inside payloads are replaced by a sentinel character so that a batch
always stays on one line. The substitution is lossless only for payloads that
do not already contain the sentinel; that case is reported, not repaired.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional, Tuple, Union


MESSAGE_SEPARATOR = ":::"
FIELD_SEPARATOR = "::"
NEWLINE_SENTINEL = "_"


class ProtocolError(ValueError):
    """Raised when a payload cannot be encoded unambiguously in strict mode"""
    pass


class Tag(Enum):
    """Semantic kind of a response message"""
    TEXT = "text"
    USERNAME = "username"
    LOGIN = "login"
    LOGOUT = "logout"
    BALANCE = "balance"
    HELP = "help"
    ACTION_NOT_ALLOWED = "actionnotallowed"


@dataclass(frozen=True)
class Message:
    """One tagged response message with its decoded payload"""
    tag: str
    payload: str


@dataclass(frozen=True)
class MalformedFragment:
    """A response fragment that did not split into exactly tag and payload"""
    raw: str


@dataclass(frozen=True)
class Request:
    """Decoded request line"""
    command: str
    args: Tuple[str, ...] = field(default_factory=tuple)


DecodedItem = Union[Message, MalformedFragment]


def find_collisions(payload: str) -> List[str]:
    """Return the reserved sequences a payload contains"""
    collisions = [
        reserved for reserved in (NEWLINE_SENTINEL, FIELD_SEPARATOR)
        if reserved in payload
    ]
    # A colon at either edge merges with the surrounding separators
    if FIELD_SEPARATOR not in collisions and (payload.startswith(":") or payload.endswith(":")):
        collisions.append(":")
    return collisions


def encode_message(tag: Union[Tag, str], payload: str, strict: bool = False) -> str:
    """
    Encode one message as ":::tag::payload"

    An empty payload is replaced with the tag text so that consumers never
    see an empty field.

    Raises:
        ProtocolError: In strict mode, if the payload contains the sentinel
            or a separator and would not decode back to itself
    """
    tag_text = tag.value if isinstance(tag, Tag) else tag
    if not payload:
        payload = tag_text

    if strict:
        collisions = find_collisions(payload)
        if collisions:
            raise ProtocolError(f"Payload for {tag_text!r} contains reserved {collisions}")

    payload = payload.replace("\r\n", "\n").replace("\n", NEWLINE_SENTINEL)
    return f"{MESSAGE_SEPARATOR}{tag_text}{FIELD_SEPARATOR}{payload}"


def encode_batch(messages: Iterable[Union[Message, Tuple[Union[Tag, str], str]]],
                 strict: bool = False) -> str:
    """Encode messages, in order, into one response line (without newline)"""
    parts = []
    for message in messages:
        if isinstance(message, Message):
            tag, payload = message.tag, message.payload
        else:
            tag, payload = message
        parts.append(encode_message(tag, payload, strict=strict))
    return "".join(parts)


def decode_batch(line: str) -> List[DecodedItem]:
    """
    Decode one response line

    Never raises: fragments that do not split into exactly two fields are
    returned as MalformedFragment, in their original position.
    """
    items: List[DecodedItem] = []
    for fragment in line.rstrip("\r\n").split(MESSAGE_SEPARATOR):
        if not fragment:
            continue
        fields = fragment.split(FIELD_SEPARATOR)
        if len(fields) != 2:
            items.append(MalformedFragment(fragment))
            continue
        items.append(Message(fields[0], fields[1].replace(NEWLINE_SENTINEL, "\n")))
    return items


def decode_request(line: Optional[str], fold_case: bool = False) -> Request:
    """
    Decode one request line

    None (end of stream) is an implicit "quit". Only the first two whitespace
    boundaries are significant; the third token keeps the rest of the line.
    The command name is case-insensitive. With fold_case the whole line is
    lower-cased first, arguments included.
    """
    if line is None:
        return Request("quit")

    line = line.rstrip("\r\n")
    if fold_case:
        line = line.lower()

    tokens = line.split(None, 2)
    if not tokens:
        return Request("")
    return Request(tokens[0].lower(), tuple(tokens[1:]))
