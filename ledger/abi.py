"""Typed ABI codec.

Encodes contract calls and decodes event logs and revert data using eth-abi.
Event decoding is typed: EventSpec.decode() returns a DecodedEvent or None,
and EventSpec.first_match() scans a receipt's logs and keeps the first log
that decodes as that event. A log that belongs to a different event, or
that is malformed, is simply not a match.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_utils import (
    decode_hex,
    encode_hex,
    event_signature_to_log_topic,
    function_signature_to_4byte_selector,
    to_checksum_address,
)

from schemas.transaction import LogEntry

ERROR_SELECTOR = "0x08c379a0"   # Error(string)
PANIC_SELECTOR = "0x4e487b71"   # Panic(uint256)


def to_bytes(data: str | bytes) -> bytes:
    """Accept 0x-hex or raw bytes and return bytes."""
    if isinstance(data, bytes):
        return data
    return decode_hex(data) if data not in ("", "0x") else b""


def _normalize(abi_type: str, value: Any) -> Any:
    """Checksum decoded addresses so callers can compare them directly."""
    if abi_type == "address":
        return to_checksum_address(value)
    if abi_type == "address[]":
        return [to_checksum_address(v) for v in value]
    return value


class ContractFunction:
    """One callable contract function.

    Example:
        APPROVE = ContractFunction("approve", ("address", "uint256"), ("bool",))
        calldata = APPROVE.encode(pool_address, 1_000_000)

    Attributes:
        name: Function name.
        inputs: ABI input types. Structs are written as tuple types,
            e.g. "(uint256,address)".
        outputs: ABI output types, for view calls.
        signature: Canonical signature used to derive the selector.
        selector: 4-byte selector as 0x-hex.
    """

    def __init__(self, name: str, inputs: Sequence[str] = (), outputs: Sequence[str] = ()) -> None:
        self.name = name
        self.inputs = tuple(inputs)
        self.outputs = tuple(outputs)
        self.signature = f"{name}({','.join(self.inputs)})"
        self.selector = encode_hex(function_signature_to_4byte_selector(self.signature))

    def encode(self, *args: Any) -> str:
        """ABI-encode a call to this function and return 0x-hex calldata."""
        if len(args) != len(self.inputs):
            raise ValueError(
                f"{self.signature} takes {len(self.inputs)} arguments, got {len(args)}"
            )
        body = encode(list(self.inputs), list(args)) if self.inputs else b""
        return self.selector + body.hex()

    def decode_output(self, data: str | bytes) -> tuple:
        """Decode the return data of an eth_call to this function."""
        raw = decode(list(self.outputs), to_bytes(data))
        return tuple(_normalize(t, v) for t, v in zip(self.outputs, raw))

    def __repr__(self) -> str:
        return f"ContractFunction({self.signature})"


@dataclass(frozen=True)
class EventInput:
    """One event parameter."""

    name: str
    type: str
    indexed: bool = False


@dataclass(frozen=True)
class DecodedEvent:
    """A log that matched an EventSpec.

    Attributes:
        name: Event name.
        address: Contract that emitted the log.
        args: Decoded parameters by name.
    """

    name: str
    address: str
    args: dict[str, Any] = field(default_factory=dict)

    def __getitem__(self, key: str) -> Any:
        return self.args[key]


class EventSpec:
    """Decoder for one event shape.

    Indexed parameters are read from topics[1:], the rest from the data
    field. Only static types may be indexed (dynamic indexed values are
    stored as hashes and cannot be recovered).
    """

    def __init__(self, name: str, inputs: Sequence[EventInput]) -> None:
        self.name = name
        self.inputs = tuple(inputs)
        self.signature = f"{name}({','.join(i.type for i in self.inputs)})"
        self.topic = encode_hex(event_signature_to_log_topic(self.signature))

    def decode(self, log: LogEntry) -> DecodedEvent | None:
        """Decode a log as this event.

        Returns:
            The decoded event, or None if the log is a different event or
            cannot be decoded as this one.
        """
        if not log.topics or log.topics[0].lower() != self.topic.lower():
            return None

        indexed = [i for i in self.inputs if i.indexed]
        plain = [i for i in self.inputs if not i.indexed]
        if len(log.topics) - 1 != len(indexed):
            return None

        try:
            args: dict[str, Any] = {}
            for item, topic in zip(indexed, log.topics[1:]):
                (value,) = decode([item.type], to_bytes(topic))
                args[item.name] = _normalize(item.type, value)
            values = decode([i.type for i in plain], to_bytes(log.data)) if plain else ()
            for item, value in zip(plain, values):
                args[item.name] = _normalize(item.type, value)
        except (DecodingError, ValueError):
            return None

        return DecodedEvent(name=self.name, address=log.address, args=args)

    def first_match(self, logs: Iterable[LogEntry]) -> DecodedEvent | None:
        """Return the first log in logs that decodes as this event, else None."""
        for log in logs:
            decoded = self.decode(log)
            if decoded is not None:
                return decoded
        return None

    def encode_log(self, address: str, **args: Any) -> LogEntry:
        """Build a LogEntry for this event. Used by fixtures and tests."""
        topics = [self.topic]
        for item in self.inputs:
            if item.indexed:
                topics.append(encode_hex(encode([item.type], [args[item.name]])))
        plain = [i for i in self.inputs if not i.indexed]
        data = encode([i.type for i in plain], [args[i.name] for i in plain]) if plain else b""
        return LogEntry(address=address, topics=topics, data=encode_hex(data))

    def __repr__(self) -> str:
        return f"EventSpec({self.signature})"


class ContractErrorSpec:
    """A custom Solidity error, for decoding revert data."""

    def __init__(self, name: str, inputs: Sequence[str] = ()) -> None:
        self.name = name
        self.inputs = tuple(inputs)
        self.signature = f"{name}({','.join(self.inputs)})"
        self.selector = encode_hex(function_signature_to_4byte_selector(self.signature))

    def encode(self, *args: Any) -> str:
        body = encode(list(self.inputs), list(args)) if self.inputs else b""
        return self.selector + body.hex()


def decode_revert_reason(data: Any, errors: Sequence[ContractErrorSpec] = ()) -> str | None:
    """Turn raw revert data into a readable reason.

    Understands Error(string), Panic(uint256) and any custom errors passed
    in. Unknown custom errors are reported by selector.

    Data that is not hex (some nodes put a plain message or an object
    there) is returned as text.

    Returns:
        A reason string, or None when there is no revert data at all.
    """
    if not data:
        return None
    if not isinstance(data, (str, bytes)):
        return str(data)
    try:
        raw = to_bytes(data)
    except (ValueError, TypeError):
        return str(data)
    if len(raw) < 4:
        return None

    selector = encode_hex(raw[:4])
    body = raw[4:]
    try:
        if selector == ERROR_SELECTOR:
            (message,) = decode(["string"], body)
            return message
        if selector == PANIC_SELECTOR:
            (code,) = decode(["uint256"], body)
            return f"panic 0x{code:02x}"
        for err in errors:
            if err.selector == selector:
                values = decode(list(err.inputs), body) if err.inputs else ()
                rendered = ", ".join(str(_normalize(t, v)) for t, v in zip(err.inputs, values))
                return f"{err.name}({rendered})"
    except DecodingError:
        return f"undecodable revert data {selector}"
    return f"custom error {selector}"
