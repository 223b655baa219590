"""Maven artifact version ordering.

Versions are split into numeric components, an optional build number and an
optional qualifier:

    1.2.3            -> (1, 2, 3), no qualifier
    1.2.3-4          -> (1, 2, 3), build number 4
    1.2.3-SNAPSHOT   -> (1, 2, 3), qualifier "SNAPSHOT"
    1.0.RELEASE      -> (1, 0), qualifier "RELEASE"
    core             -> (), qualifier "core"

Numeric components compare numerically (missing components count as zero).
A version with a qualifier ranks below the same numeric version without one.
"""

from __future__ import annotations

import re
from functools import total_ordering


_NUMBER_RE = re.compile(r"^\d+$")


@total_ordering
class ArtifactVersion:
    """A parsed, totally ordered Maven version string."""

    __slots__ = ("raw", "components", "build_number", "qualifier")

    def __init__(self, version: str) -> None:
        self.raw = (version or "").strip()
        self.components: tuple[int, ...] = ()
        self.build_number = 0
        self.qualifier: str | None = None
        self._parse()

    def _parse(self) -> None:
        main, sep, rest = self.raw.partition("-")

        components: list[int] = []
        tail: list[str] = []
        for token in main.split("."):
            if not tail and _NUMBER_RE.match(token):
                components.append(int(token))
            else:
                tail.append(token)

        if not components:
            # not a version number at all
            self.qualifier = self.raw or None
            return

        self.components = tuple(components)
        qualifier = ".".join(tail)
        if sep:
            if not qualifier and _NUMBER_RE.match(rest):
                self.build_number = int(rest)
            else:
                qualifier = f"{qualifier}-{rest}" if qualifier else rest
        self.qualifier = qualifier or None

    def _normalized(self) -> tuple[int, ...]:
        parts = list(self.components)
        while parts and parts[-1] == 0:
            parts.pop()
        return tuple(parts)

    def _compare(self, other: ArtifactVersion) -> int:
        width = max(len(self.components), len(other.components))
        left = self.components + (0,) * (width - len(self.components))
        right = other.components + (0,) * (width - len(other.components))
        if left != right:
            return -1 if left < right else 1

        if self.qualifier is None and other.qualifier is not None:
            return 1
        if self.qualifier is not None and other.qualifier is None:
            return -1
        if self.qualifier is not None and other.qualifier is not None:
            a, b = self.qualifier.lower(), other.qualifier.lower()
            if a != b:
                return -1 if a < b else 1

        if self.build_number != other.build_number:
            return -1 if self.build_number < other.build_number else 1
        return 0

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ArtifactVersion):
            return NotImplemented
        return self._compare(other) == 0

    def __lt__(self, other: ArtifactVersion) -> bool:
        if not isinstance(other, ArtifactVersion):
            return NotImplemented
        return self._compare(other) < 0

    def __hash__(self) -> int:
        qualifier = self.qualifier.lower() if self.qualifier else None
        return hash((self._normalized(), qualifier, self.build_number))

    def __str__(self) -> str:
        return self.raw

    def __repr__(self) -> str:
        return f"ArtifactVersion({self.raw!r})"
