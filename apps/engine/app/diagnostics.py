"""Shared diagnostic value type for the parser, extractor, compiler and loader.

Every layer reports findings as ``Diagnostic`` records tagged with the layer
that produced them. Crossing a boundary re-tags (and optionally prefixes) the
record instead of translating between per-layer severity enums.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable, List, Optional
import logging


class Severity(str, Enum):
    INFO = "Info"
    WARNING = "Warning"
    ERROR = "Error"


# Layer tags
PARSER = "parser"
EXTRACTOR = "extractor"
VALIDATOR = "validator"
COMPILER = "compiler"
LOADER = "loader"
PACKAGER = "packager"


@dataclass(frozen=True)
class Diagnostic:
    severity: Severity
    message: str
    line_number: Optional[int] = None
    layer: str = ""

    def with_context(self, layer: str, prefix: Optional[str] = None) -> "Diagnostic":
        """Return a copy re-tagged for ``layer``, message optionally prefixed."""
        message = f"[{prefix}] {self.message}" if prefix else self.message
        return replace(self, layer=layer, message=message)

    def __str__(self) -> str:
        if self.line_number is not None:
            return f"[{self.severity.value}] Line {self.line_number}: {self.message}"
        return f"[{self.severity.value}] {self.message}"


def info(message: str, layer: str = "", line_number: Optional[int] = None) -> Diagnostic:
    return Diagnostic(Severity.INFO, message, line_number, layer)


def warning(message: str, layer: str = "", line_number: Optional[int] = None) -> Diagnostic:
    return Diagnostic(Severity.WARNING, message, line_number, layer)


def error(message: str, layer: str = "", line_number: Optional[int] = None) -> Diagnostic:
    return Diagnostic(Severity.ERROR, message, line_number, layer)


def has_errors(diagnostics: Iterable[Diagnostic]) -> bool:
    return any(d.severity is Severity.ERROR for d in diagnostics)


def has_warnings(diagnostics: Iterable[Diagnostic]) -> bool:
    return any(d.severity is Severity.WARNING for d in diagnostics)


def of_severity(diagnostics: Iterable[Diagnostic], severity: Severity) -> List[Diagnostic]:
    return [d for d in diagnostics if d.severity is severity]


_LOG_LEVELS = {
    Severity.INFO: logging.DEBUG,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}


def log_diagnostics(logger: logging.Logger, diagnostics: Iterable[Diagnostic]) -> None:
    """Mirror diagnostics into ``logger`` (info-level findings go to debug)."""
    for diagnostic in diagnostics:
        logger.log(_LOG_LEVELS[diagnostic.severity], str(diagnostic))
