"""Semantic version parsing and ordering for image tags.

Tags are parsed leniently: an optional ``v`` prefix is accepted and missing
minor/patch components default to 0, so ``v1.2`` equals ``1.2.0``.
Ordering follows semver 2.0: numeric triple first, then prerelease
(a release sorts above any of its prereleases).  Build metadata never takes
part in ordering.
"""

import re
from functools import total_ordering
from typing import Optional, Tuple

LATEST_TAG = "latest"

_VERSION_RE = re.compile(
    r"^v?([0-9]+)(\.[0-9]+)?(\.[0-9]+)?"
    r"(-([0-9A-Za-z\-]+(\.[0-9A-Za-z\-]+)*))?"
    r"(\+([0-9A-Za-z\-]+(\.[0-9A-Za-z\-]+)*))?$"
)


class InvalidVersion(ValueError):
    """Raised when a tag is not a semantic version."""


def _compare_prerelease_part(a: str, b: str) -> int:
    if a == b:
        return 0
    # Fewer identifiers sort lower when all preceding ones are equal
    if a == "":
        return -1
    if b == "":
        return 1
    a_num, b_num = a.isdigit(), b.isdigit()
    if a_num and b_num:
        return -1 if int(a) < int(b) else 1
    # Numeric identifiers sort below alphanumeric ones
    if a_num:
        return -1
    if b_num:
        return 1
    return -1 if a < b else 1


def _compare_prerelease(a: str, b: str) -> int:
    if a == b:
        return 0
    # A version without prerelease has higher precedence
    if not a:
        return 1
    if not b:
        return -1
    a_parts = a.split(".")
    b_parts = b.split(".")
    for i in range(max(len(a_parts), len(b_parts))):
        a_part = a_parts[i] if i < len(a_parts) else ""
        b_part = b_parts[i] if i < len(b_parts) else ""
        result = _compare_prerelease_part(a_part, b_part)
        if result:
            return result
    return 0


@total_ordering
class Version:
    """A parsed semantic version."""

    __slots__ = ("major", "minor", "patch", "prerelease", "metadata", "original")

    def __init__(self, major: int, minor: int = 0, patch: int = 0,
                 prerelease: str = "", metadata: str = "", original: str = ""):
        self.major = major
        self.minor = minor
        self.patch = patch
        self.prerelease = prerelease
        self.metadata = metadata
        self.original = original or str(self)

    @classmethod
    def parse(cls, tag: str) -> "Version":
        """Parse *tag*, raising InvalidVersion if it is not a version."""
        match = _VERSION_RE.match(tag or "")
        if not match:
            raise InvalidVersion(f"Invalid semantic version: {tag!r}")

        def _segment(group: Optional[str]) -> int:
            return int(group[1:]) if group else 0

        return cls(
            major=int(match.group(1)),
            minor=_segment(match.group(2)),
            patch=_segment(match.group(3)),
            prerelease=match.group(5) or "",
            metadata=match.group(8) or "",
            original=tag,
        )

    @property
    def triple(self) -> Tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    def compare(self, other: "Version") -> int:
        """Return -1, 0 or 1.  Build metadata is ignored."""
        if self.triple != other.triple:
            return -1 if self.triple < other.triple else 1
        return _compare_prerelease(self.prerelease, other.prerelease)

    def same_channel(self, other: "Version") -> bool:
        """True when prerelease and build metadata are identical."""
        return (self.prerelease == other.prerelease and
                self.metadata == other.metadata)

    def __eq__(self, other):
        if not isinstance(other, Version):
            return NotImplemented
        return self.compare(other) == 0

    def __lt__(self, other):
        if not isinstance(other, Version):
            return NotImplemented
        return self.compare(other) < 0

    def __hash__(self):
        return hash((self.triple, self.prerelease))

    def __str__(self):
        text = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            text += f"-{self.prerelease}"
        if self.metadata:
            text += f"+{self.metadata}"
        return text

    def __repr__(self):
        return f"Version({str(self)!r})"


def parse_version(tag: str) -> Version:
    return Version.parse(tag)


def is_latest(tag: Optional[str]) -> bool:
    return tag == LATEST_TAG


def should_update(current_tag: str, target_tag: str) -> bool:
    """Decide whether a container on *current_tag* should move to *target_tag*.

    A ``latest`` target only updates containers that also track ``latest``;
    a container tracking ``latest`` is never moved to a pinned version.  For
    concrete tags, both must be on the same prerelease/metadata channel and
    the target must be strictly newer.

    Raises InvalidVersion when either concrete tag cannot be parsed.
    """
    if is_latest(target_tag) or is_latest(current_tag):
        return is_latest(target_tag) and is_latest(current_tag)

    current = Version.parse(current_tag)
    target = Version.parse(target_tag)
    return current.same_channel(target) and current < target
