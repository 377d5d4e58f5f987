"""
Error Taxonomy
==============

Every failure the package raises derives from :class:`HexGridError` and
carries a machine-readable ``code`` plus a ``recoverable`` flag.  The
coordinator turns stage-level errors into an ``Error`` state with the same
code; per-cell errors are recorded next to the results instead of aborting
the batch.

Codes:
  • ``validation-error``                – malformed input (bounds, map, image)
  • ``extraction-failure``              – one cell could not be cropped/analysed
  • ``stage-timeout``                   – a stage exceeded its deadline
  • ``recognition-engine-unavailable``  – no classifier can produce a verdict
  • ``resource-exhaustion``             – the buffer pool ceiling was hit
"""

from __future__ import annotations

from typing import Dict, Optional


class HexGridError(Exception):
    """Base class for all hexgrid_vision errors."""

    code: str = "hexgrid-error"
    default_recoverable: bool = False

    def __init__(
        self,
        message: str,
        *,
        cell_id: Optional[str] = None,
        recoverable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.cell_id = cell_id
        self.recoverable = (
            self.default_recoverable if recoverable is None else recoverable
        )

    def to_dict(self) -> Dict[str, object]:
        data: Dict[str, object] = {
            "code": self.code,
            "message": self.message,
            "recoverable": self.recoverable,
        }
        if self.cell_id is not None:
            data["cell_id"] = self.cell_id
        return data


class ValidationError(HexGridError):
    code = "validation-error"
    default_recoverable = True


class ExtractionFailure(HexGridError):
    code = "extraction-failure"
    default_recoverable = True


class StageTimeout(HexGridError):
    code = "stage-timeout"
    default_recoverable = True


class RecognitionEngineUnavailable(HexGridError):
    code = "recognition-engine-unavailable"


class ResourceExhaustion(HexGridError):
    code = "resource-exhaustion"
    default_recoverable = True


class LeaseClosed(ResourceExhaustion):
    """Raised when a buffer is requested from a lease that was closed."""
    code = "lease-closed"
