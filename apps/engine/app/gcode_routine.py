"""Ordered G-code line container used for plate programs and change routines."""

from typing import Callable, Iterable, Iterator, List, Optional


class MarkerNotFoundError(Exception):
    """Raised when insert_before finds no line matching the predicate."""
    pass


class GCodeRoutine:
    """Ordered sequence of G-code lines.

    Lines are never reordered or deduplicated. ``insert_before`` returns a new
    routine so programs owned by a job stay untouched.
    """

    def __init__(self, lines: Optional[Iterable[str]] = None):
        self.lines: List[str] = list(lines) if lines is not None else []

    @classmethod
    def from_text(cls, content: str) -> "GCodeRoutine":
        return cls(line.rstrip() for line in content.split("\n"))

    def append(self, other: "GCodeRoutine") -> None:
        self.lines.extend(other.lines)

    def insert(self, index: int, other: "GCodeRoutine") -> None:
        self.lines[index:index] = other.lines

    def find_index(self, match: Callable[[str], bool]) -> int:
        for index, line in enumerate(self.lines):
            if match(line):
                return index
        return -1

    def insert_before(self, match: Callable[[str], bool], other: "GCodeRoutine") -> "GCodeRoutine":
        """Copy of this routine with ``other`` spliced before the first matching line.

        Raises:
            MarkerNotFoundError: If no line matches.
        """
        index = self.find_index(match)
        if index < 0:
            raise MarkerNotFoundError("Marker not found in G-code")

        lines = list(self.lines)
        lines[index:index] = other.lines
        return GCodeRoutine(lines)

    def without_comments(self) -> Iterator[str]:
        return (line for line in self.lines if not line.lstrip().startswith(";"))

    def to_text(self) -> str:
        return "\n".join(self.lines)

    def copy(self) -> "GCodeRoutine":
        return GCodeRoutine(self.lines)

    def __len__(self) -> int:
        return len(self.lines)

    def __iter__(self) -> Iterator[str]:
        return iter(self.lines)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, GCodeRoutine):
            return NotImplemented
        return self.lines == other.lines

    def __repr__(self) -> str:
        return f"GCodeRoutine({len(self.lines)} lines)"
