"""Live target: render functions call the cloud directly."""

from __future__ import annotations

import logging
import sys
from typing import IO, TYPE_CHECKING, Any, ClassVar

from .target import Target, TargetKind

if TYPE_CHECKING:
    from .report import RunReport

logger = logging.getLogger(__name__)


class ApiTarget(Target):
    """Applies changes through cloud API calls.

    Renderers for this target read the cloud handle from ``target.cloud`` and
    record provider IDs of objects they create in ``target.ids`` so later
    references resolve to real identifiers.
    """

    kind: ClassVar[TargetKind] = TargetKind.API
    observes: ClassVar[bool] = True

    def __init__(self, cloud: Any, out: IO[str] | None = None) -> None:
        """Initialize the target.

        Args:
            cloud: Provider handle used by the render functions.
            out: Stream the run summary is written to (default: stdout).
        """
        super().__init__()
        self.cloud = cloud
        self._out = out

    def finish(self, report: RunReport) -> None:
        logger.info(
            "Live run finished",
            extra={"success": report.success, "known_ids": len(self.ids.as_dict())},
        )
        out = self._out or sys.stdout
        out.write(report.format_summary() + "\n")
        out.flush()
