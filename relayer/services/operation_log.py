"""
Append-only audit trail of relayer operations, one CSV file per day.
"""

import csv
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

import structlog


logger = structlog.get_logger(__name__)

OK = "OK"
START = "START"
END = "END"
RECEIVED = "RECEIVED"
REGISTERED = "REGISTERED"


def error_status(detail: object) -> str:
    return f"ERROR: {detail}"


class OperationLog:
    """
    Writes ``time,operation,status`` rows to ``<prefix>_<year>-<month>-<day>.csv``.

    Rows are also mirrored to structlog so the audit trail shows up in the
    service logs.
    """

    def __init__(
        self,
        directory: Path,
        prefix: str = "operations_log",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.directory = Path(directory)
        self.prefix = prefix
        self._clock = clock or datetime.now
        self.logger = logger.bind(service="operation_log")

    def path_for(self, moment: datetime) -> Path:
        day = f"{moment.year}-{moment.month}-{moment.day}"
        return self.directory / f"{self.prefix}_{day}.csv"

    def record(self, operation: str, status: str = OK) -> None:
        moment = self._clock()
        path = self.path_for(moment)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", newline="", encoding="utf-8") as handle:
            csv.writer(handle).writerow([moment.strftime("%H:%M:%S"), operation, status])

        if status.startswith("ERROR"):
            self.logger.error(operation, status=status)
        else:
            self.logger.info(operation, status=status)
