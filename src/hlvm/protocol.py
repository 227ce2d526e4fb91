"""Bytecode container format and the blinding transform.

Container layout (big-endian)::

    byte 0      magic 0xC3
    byte 1      format version 0x04
    bytes 2-5   seed (u32)
    bytes 6-7   body length (u16)
    bytes 8-    blinded body

Blinding XORs every body byte with a byte drawn from a linear congruential
sequence seeded by the container seed. Body offset ``i`` is keyed by the
``i + 1``-th draw, so a straight-line fetch loop consumes exactly one draw
per byte while a jump simply re-positions into the same sequence. The
transform is its own inverse and is not encryption.
"""

import base64
import hashlib
import json
import struct
from dataclasses import dataclass, field
from typing import Iterator, List, Sequence, Union

from .errors import ContainerError

MAGIC = 0xC3
VERSION = 0x04
DEFAULT_SEED = 0x13572468
HEADER = struct.Struct(">BBIH")
HEADER_SIZE = HEADER.size
MAX_BODY = 0xFFFF

LCG_MULTIPLIER = 1664525
LCG_INCREMENT = 1013904223

BUNDLE_FORMAT = "hlvm-bundle/1"

BytesLike = Union[bytes, bytearray, Sequence[int]]


def lcg(seed: int) -> Iterator[int]:
    """Yield successive generator states (u32) after each step."""
    state = seed & 0xFFFFFFFF
    while True:
        state = (state * LCG_MULTIPLIER + LCG_INCREMENT) & 0xFFFFFFFF
        yield state


def keystream(seed: int, length: int) -> bytes:
    """Return the first ``length`` key bytes for ``seed``."""
    gen = lcg(seed)
    return bytes(next(gen) & 0xFF for _ in range(length))


def blind(body: BytesLike, seed: int = DEFAULT_SEED) -> bytes:
    """XOR ``body`` with the keystream for ``seed``."""
    body = bytes(body)
    key = keystream(seed, len(body))
    return bytes(b ^ k for b, k in zip(body, key))


# XOR is an involution
deblind = blind


def encode(body: BytesLike, seed: int = DEFAULT_SEED) -> bytes:
    """Blind a plain instruction body and frame it in a container."""
    body = bytes(body)
    if len(body) > MAX_BODY:
        raise ContainerError(f"Body too long: {len(body)} bytes (max {MAX_BODY})")
    return HEADER.pack(MAGIC, VERSION, seed & 0xFFFFFFFF, len(body)) + blind(body, seed)


@dataclass(frozen=True)
class Container:
    """A parsed container. ``body`` is still blinded."""

    version: int
    seed: int
    body: bytes

    def __len__(self) -> int:
        return len(self.body)

    def plain(self) -> bytes:
        """Return the de-blinded instruction body."""
        return deblind(self.body, self.seed)


def decode(data: BytesLike) -> Container:
    """Parse and validate a container."""
    data = bytes(data)
    if len(data) < HEADER_SIZE:
        raise ContainerError(f"Container too short: {len(data)} bytes")
    magic, version, seed, length = HEADER.unpack_from(data)
    if magic != MAGIC:
        raise ContainerError(f"Bad magic byte 0x{magic:02x}")
    if version != VERSION:
        raise ContainerError(f"Unsupported format version 0x{version:02x}")
    body = data[HEADER_SIZE:]
    if len(body) != length:
        raise ContainerError(
            f"Body length mismatch: header says {length}, found {len(body)}"
        )
    return Container(version=version, seed=seed, body=body)


def digest(bytecode: bytes, strings: Sequence[str]) -> str:
    """SHA-256 over a container and the string table it was compiled with."""
    h = hashlib.sha256()
    h.update(bytes(bytecode))
    for s in strings:
        encoded = s.encode("utf-8")
        h.update(struct.pack(">I", len(encoded)))
        h.update(encoded)
    return h.hexdigest()


@dataclass
class Bundle:
    """A container bound to its string table."""

    bytecode: bytes
    strings: List[str] = field(default_factory=list)
    digest: str = ""

    def __post_init__(self):
        if not self.digest:
            self.digest = digest(self.bytecode, self.strings)

    @classmethod
    def from_program(cls, program) -> "Bundle":
        bytecode, strings = program
        return cls(bytes(bytecode), list(strings))

    def verify(self) -> None:
        decode(self.bytecode)
        expected = digest(self.bytecode, self.strings)
        if expected != self.digest:
            raise ContainerError("Bundle digest does not match its container and string table")

    def dumps(self) -> str:
        return json.dumps({
            "format": BUNDLE_FORMAT,
            "bytecode": base64.b64encode(self.bytecode).decode("ascii"),
            "strings": self.strings,
            "digest": self.digest,
        }, indent=2)

    @classmethod
    def loads(cls, text: str) -> "Bundle":
        try:
            data = json.loads(text)
            if data.get("format") != BUNDLE_FORMAT:
                raise ContainerError(f"Unknown bundle format: {data.get('format')!r}")
            bundle = cls(
                bytecode=base64.b64decode(data["bytecode"]),
                strings=list(data["strings"]),
                digest=data["digest"],
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise ContainerError(f"Malformed bundle: {e}") from e
        bundle.verify()
        return bundle
