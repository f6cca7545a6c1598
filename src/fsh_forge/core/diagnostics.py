"""
Diagnostics

Structured records of rule failures and warnings. The engine turns every
caught ForgeError into a Diagnostic with the rule's source location, and
also records warnings that element operations log while a rule runs.
"""

import logging
from contextlib import contextmanager
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from pydantic import BaseModel, Field

from .errors import ForgeError
from .rules import SourceInfo

logger = logging.getLogger(__name__)

# Package logger whose warnings count as diagnostics while a rule runs
CAPTURED_LOGGER = "fsh_forge"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class Diagnostic(BaseModel):
    """One reportable problem"""

    severity: Severity
    kind: str
    message: str
    path: Optional[str] = None
    artifact: Optional[str] = None
    source: Optional[SourceInfo] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    def __str__(self) -> str:
        location = f" ({self.source})" if self.source is not None and str(self.source) else ""
        artifact = f"{self.artifact}: " if self.artifact else ""
        return f"{self.severity.value}: {artifact}{self.message}{location}"

    @classmethod
    def from_error(
        cls,
        error: Exception,
        artifact: Optional[str] = None,
        path: Optional[str] = None,
        source: Optional[SourceInfo] = None,
    ) -> "Diagnostic":
        details = dict(error.details) if isinstance(error, ForgeError) else {}
        if isinstance(error, ForgeError) and error.fhir_references:
            details["fhir_references"] = list(error.fhir_references)
        return cls(
            severity=Severity.ERROR,
            kind=type(error).__name__,
            message=str(error),
            path=path,
            artifact=artifact,
            source=source,
            details=details,
        )


class DiagnosticCollector:
    """
    Aggregates diagnostics for a compilation

    Recorded diagnostics are also logged at the matching level.
    """

    def __init__(self):
        self.diagnostics: List[Diagnostic] = []

    def add(self, diagnostic: Diagnostic) -> Diagnostic:
        self.diagnostics.append(diagnostic)
        if diagnostic.severity == Severity.ERROR:
            logger.error(str(diagnostic))
        elif diagnostic.severity == Severity.WARNING:
            logger.warning(str(diagnostic))
        else:
            logger.info(str(diagnostic))
        return diagnostic

    def add_error(
        self,
        error: Exception,
        artifact: Optional[str] = None,
        path: Optional[str] = None,
        source: Optional[SourceInfo] = None,
    ) -> Diagnostic:
        return self.add(Diagnostic.from_error(error, artifact, path, source))

    def add_warning(
        self,
        message: str,
        artifact: Optional[str] = None,
        path: Optional[str] = None,
        source: Optional[SourceInfo] = None,
        kind: str = "Warning",
    ) -> Diagnostic:
        return self.add(
            Diagnostic(
                severity=Severity.WARNING,
                kind=kind,
                message=message,
                path=path,
                artifact=artifact,
                source=source,
            )
        )

    @property
    def errors(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.severity == Severity.ERROR]

    @property
    def warnings(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.severity == Severity.WARNING]

    def has_errors(self) -> bool:
        return bool(self.errors)

    def counts(self) -> Dict[str, int]:
        return {
            "errors": len(self.errors),
            "warnings": len(self.warnings),
        }

    def for_artifact(self, artifact: str) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.artifact == artifact]

    def merge(self, other: "DiagnosticCollector") -> "DiagnosticCollector":
        """Append another collector's diagnostics without logging them again"""
        self.diagnostics.extend(other.diagnostics)
        return self

    def to_dicts(self) -> List[Dict[str, Any]]:
        return [d.model_dump(mode="json", exclude_none=True) for d in self.diagnostics]


class _WarningCapture(logging.Handler):
    def __init__(self, collector: DiagnosticCollector, artifact, path, source):
        super().__init__(level=logging.WARNING)
        self.collector = collector
        self.artifact = artifact
        self.path = path
        self.source = source

    def emit(self, record: logging.LogRecord) -> None:
        if record.levelno != logging.WARNING or record.name == logger.name:
            return
        self.collector.diagnostics.append(
            Diagnostic(
                severity=Severity.WARNING,
                kind="Warning",
                message=record.getMessage(),
                path=self.path,
                artifact=self.artifact,
                source=self.source,
            )
        )


@contextmanager
def capture_warnings(
    collector: DiagnosticCollector,
    artifact: Optional[str] = None,
    path: Optional[str] = None,
    source: Optional[SourceInfo] = None,
) -> Iterator[None]:
    """
    Record warnings logged by core operations inside the block as diagnostics

    The package logger is lowered to WARNING inside the block; output handlers
    keep their own levels.
    """
    handler = _WarningCapture(collector, artifact, path, source)
    core_logger = logging.getLogger(CAPTURED_LOGGER)
    previous_level = core_logger.level
    if core_logger.getEffectiveLevel() > logging.WARNING:
        core_logger.setLevel(logging.WARNING)
    core_logger.addHandler(handler)
    try:
        yield
    finally:
        core_logger.removeHandler(handler)
        core_logger.setLevel(previous_level)
