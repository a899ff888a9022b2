"""
Semantic versions - parsing and precedence for provider release versions.

Versions follow semver 2.0.0 with an optional leading "v". The original text
is kept so that a resolved version can be written back exactly as the user
or the repository spelled it (e.g. "v1.2.3").
"""

import functools
import re
from dataclasses import dataclass, field
from typing import Tuple, Union

from errors import InvalidVersionError

_SEMVER_PATTERN = re.compile(
    r"^v?(?P<major>0|[1-9]\d*)\.(?P<minor>0|[1-9]\d*)\.(?P<patch>0|[1-9]\d*)"
    r"(?:-(?P<prerelease>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+(?P<build>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)


@functools.total_ordering
@dataclass(frozen=True)
class SemanticVersion:
    """A parsed semantic version. Build metadata does not affect equality."""

    major: int
    minor: int
    patch: int
    prerelease: Tuple[Union[int, str], ...] = ()
    build: str = field(default="", compare=False)
    original: str = field(default="", compare=False)

    def __str__(self) -> str:
        if self.original:
            return self.original
        version = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            version += "-" + ".".join(str(p) for p in self.prerelease)
        if self.build:
            version += "+" + self.build
        return version

    def __lt__(self, other: "SemanticVersion") -> bool:
        if not isinstance(other, SemanticVersion):
            return NotImplemented
        return compare(self, other) < 0

    @property
    def is_prerelease(self) -> bool:
        return bool(self.prerelease)


def parse_semantic(value: str) -> SemanticVersion:
    """
    Parse a semantic version string.

    Args:
        value: Version text such as "v1.2.3" or "1.0.0-rc.1+build.5"

    Returns:
        The parsed SemanticVersion.

    Raises:
        InvalidVersionError: If value does not follow semver grammar.
    """
    if not isinstance(value, str):
        raise InvalidVersionError(f"could not parse {value!r} as version")

    match = _SEMVER_PATTERN.match(value.strip())
    if not match:
        raise InvalidVersionError(f"could not parse {value!r} as version")

    prerelease: Tuple[Union[int, str], ...] = ()
    if match.group("prerelease"):
        identifiers = []
        for part in match.group("prerelease").split("."):
            if part.isdigit():
                if len(part) > 1 and part.startswith("0"):
                    raise InvalidVersionError(
                        f"could not parse {value!r} as version: "
                        f"numeric pre-release identifier {part!r} has a leading zero"
                    )
                identifiers.append(int(part))
            else:
                identifiers.append(part)
        prerelease = tuple(identifiers)

    return SemanticVersion(
        major=int(match.group("major")),
        minor=int(match.group("minor")),
        patch=int(match.group("patch")),
        prerelease=prerelease,
        build=match.group("build") or "",
        original=value.strip(),
    )


def is_semantic(value: str) -> bool:
    """Return True if value parses as a semantic version."""
    try:
        parse_semantic(value)
    except InvalidVersionError:
        return False
    return True


def _compare_identifiers(
    a: Tuple[Union[int, str], ...], b: Tuple[Union[int, str], ...]
) -> int:
    for left, right in zip(a, b):
        if left == right:
            continue
        left_numeric = isinstance(left, int)
        right_numeric = isinstance(right, int)
        if left_numeric and right_numeric:
            return -1 if left < right else 1
        if left_numeric:
            return -1
        if right_numeric:
            return 1
        return -1 if left < right else 1
    if len(a) == len(b):
        return 0
    return -1 if len(a) < len(b) else 1


def compare(a: SemanticVersion, b: SemanticVersion) -> int:
    """
    Compare two versions by semver precedence.

    Returns:
        -1 if a < b, 0 if equal, 1 if a > b.
    """
    core_a = (a.major, a.minor, a.patch)
    core_b = (b.major, b.minor, b.patch)
    if core_a != core_b:
        return -1 if core_a < core_b else 1

    # A pre-release sorts before the release with the same core.
    if not a.prerelease and not b.prerelease:
        return 0
    if not a.prerelease:
        return 1
    if not b.prerelease:
        return -1
    return _compare_identifiers(a.prerelease, b.prerelease)


def less_than(a: SemanticVersion, b: SemanticVersion) -> bool:
    return compare(a, b) < 0
