"""Adaptive, collision-resistant issue ID generation.

IDs look like ``<prefix>-<base36 hash>``. The hash length grows with the
number of issues so that the birthday-bound probability of a collision stays
under a configured threshold, and every candidate is checked against the
caller's existence predicate before it is returned.
"""

from __future__ import annotations

import hashlib
import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

BASE36_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"

NONCES_PER_LENGTH = 10
FALLBACK_LENGTH = 12
MAX_FALLBACK_NONCE = 1000
MAX_HIERARCHY_DEPTH = 3

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_ID_RE = re.compile(
    r"^(?P<prefix>[a-z0-9_]+(?:-[a-z0-9_]+)*?)"
    r"-(?P<hash>[0-9a-z]{3,12})"
    r"(?:-(?P<nonce>\d+))?"
    r"(?P<children>(?:\.\d+)*)$"
)


@dataclass
class IdConfig:
    prefix: str = "tl"
    min_length: int = 3
    max_length: int = 8
    max_collision_prob: float = 0.25


def encode_base36(data: bytes, length: int) -> str:
    """Base36-encode the leading 64 bits of ``data`` to exactly ``length`` chars.

    Short encodings are zero-padded on the left; long ones keep the most
    significant digits.
    """
    num = int.from_bytes(data[:8].ljust(8, b"\x00"), byteorder="big")

    chars: list[str] = []
    while num > 0:
        num, remainder = divmod(num, 36)
        chars.append(BASE36_ALPHABET[remainder])
    chars.reverse()
    result = "".join(chars) or "0"

    if len(result) < length:
        result = "0" * (length - len(result)) + result
    return result[:length]


def collision_probability(num_issues: int, length: int) -> float:
    """Birthday-bound estimate: 1 - e^(-n^2 / (2 * 36^L))."""
    space = 36.0 ** length
    return 1.0 - math.exp(-(float(num_issues) ** 2) / (2.0 * space))


def optimal_length(num_issues: int, config: IdConfig) -> int:
    """Shortest length in [min, max] whose collision estimate is under threshold."""
    for length in range(config.min_length, config.max_length + 1):
        if collision_probability(num_issues, length) < config.max_collision_prob:
            return length
    return config.max_length


def _timestamp_nanos(ts: datetime) -> int:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ((ts - _EPOCH) // timedelta(microseconds=1)) * 1000


class IdGenerator:
    """Generates IDs for a single project prefix."""

    def __init__(self, config: IdConfig | None = None):
        self.config = config or IdConfig()

    def hash_for(self, title: str, description: str | None, creator: str | None,
                 created_at: datetime, nonce: int, length: int) -> str:
        seed = (
            f"{title}|{description or ''}|{creator or ''}"
            f"|{_timestamp_nanos(created_at)}|{nonce}"
        )
        digest = hashlib.sha256(seed.encode("utf-8")).digest()
        return encode_base36(digest, length)

    def candidate(self, title: str, description: str | None, creator: str | None,
                  created_at: datetime, nonce: int, length: int) -> str:
        h = self.hash_for(title, description, creator, created_at, nonce, length)
        return f"{self.config.prefix}-{h}"

    def generate(self, title: str, description: str | None = None,
                 creator: str | None = None, created_at: datetime | None = None,
                 existing_count: int = 0,
                 exists: Callable[[str], bool] = lambda _id: False) -> str:
        """Return an ID for which ``exists`` is false.

        Tries ten nonces per length starting at the optimal length, then a
        12-char hash with increasing nonces, then a ``prefix-hash-nonce`` suffix.
        Every path consults ``exists`` before returning.
        """
        if created_at is None:
            created_at = datetime.now(timezone.utc)

        length = optimal_length(existing_count, self.config)
        while length <= self.config.max_length:
            for nonce in range(NONCES_PER_LENGTH):
                cid = self.candidate(title, description, creator, created_at, nonce, length)
                if not exists(cid):
                    return cid
            length += 1

        for nonce in range(MAX_FALLBACK_NONCE + 1):
            cid = self.candidate(title, description, creator, created_at, nonce, FALLBACK_LENGTH)
            if not exists(cid):
                return cid

        base = self.hash_for(title, description, creator, created_at, 0, FALLBACK_LENGTH)
        nonce = MAX_FALLBACK_NONCE + 1
        while True:
            cid = f"{self.config.prefix}-{base}-{nonce}"
            if not exists(cid):
                return cid
            nonce += 1


# --- Hierarchical (child) IDs ---

@dataclass(frozen=True)
class ParsedId:
    prefix: str
    hash: str
    nonce: int | None
    child_path: tuple[int, ...]

    @property
    def depth(self) -> int:
        return len(self.child_path)

    @property
    def root_id(self) -> str:
        base = f"{self.prefix}-{self.hash}"
        return base if self.nonce is None else f"{base}-{self.nonce}"

    @property
    def parent_id(self) -> str | None:
        if not self.child_path:
            return None
        return ".".join([self.root_id, *(str(n) for n in self.child_path[:-1])])


def parse_id(issue_id: str) -> ParsedId | None:
    """Parse ``prefix-hash[-nonce][.N...]``. Returns None when malformed."""
    m = _ID_RE.match(issue_id)
    if m is None:
        return None
    children = m.group("children")
    path = tuple(int(p) for p in children.split(".")[1:]) if children else ()
    nonce = m.group("nonce")
    return ParsedId(
        prefix=m.group("prefix"),
        hash=m.group("hash"),
        nonce=int(nonce) if nonce is not None else None,
        child_path=path,
    )


def is_valid_id(issue_id: str) -> bool:
    return parse_id(issue_id) is not None


def has_prefix(issue_id: str, prefix: str) -> bool:
    return issue_id.startswith(f"{prefix}-")


def generate_child_id(parent_id: str, child_number: int) -> str:
    """Create a hierarchical child ID.

    Format: parent.N (e.g., "tl-af78e9.1", "tl-af78e9.1.2")
    """
    return f"{parent_id}.{child_number}"


def check_hierarchy_depth(parent_id: str, max_depth: int = 0) -> str | None:
    """Check if adding a child would exceed max depth. Returns error msg or None."""
    if max_depth < 1:
        max_depth = MAX_HIERARCHY_DEPTH
    parsed = parse_id(parent_id)
    depth = parsed.depth if parsed else parent_id.count(".")
    if depth >= max_depth:
        return f"maximum hierarchy depth ({max_depth}) exceeded for parent {parent_id}"
    return None
