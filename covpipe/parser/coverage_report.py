"""
Coverage Report Parser
======================
Reads the summary attributes of a Cobertura XML report.

Only the root <coverage> element and the package count are read; the
report itself is handed to the publisher untouched.
"""
import logging
import os
import stat
import xml.etree.ElementTree as ET

from covpipe.core.errors import InfrastructureError
from covpipe.models.pipeline_run import CoverageSummary

logger = logging.getLogger(__name__)


def parse_coverage_summary(report_path: str) -> CoverageSummary:
    """
    Parse line coverage totals from a Cobertura report.

    Raises
    ------
    InfrastructureError
        File missing or not a Cobertura document. A report the publisher
        cannot read is an instrumentation failure, not a test failure.
    """
    try:
        fd = os.open(report_path, os.O_RDONLY | os.O_NOFOLLOW | os.O_NONBLOCK)
    except FileNotFoundError as e:
        raise InfrastructureError(f"Coverage report {report_path} was not produced") from e
    except OSError as e:
        raise InfrastructureError(f"Coverage report {report_path} could not be opened: {e}") from e

    with os.fdopen(fd, "rb") as f:
        if not stat.S_ISREG(os.fstat(f.fileno()).st_mode):
            raise InfrastructureError(f"Coverage report {report_path} is not a regular file")
        try:
            root = ET.parse(f).getroot()
        except ET.ParseError as e:
            raise InfrastructureError(f"Coverage report {report_path} is not valid XML: {e}") from e

    if root.tag != "coverage":
        raise InfrastructureError(f"Coverage report root is <{root.tag}>, expected <coverage>")

    summary = CoverageSummary(
        line_rate=float(root.get("line-rate", 0) or 0),
        lines_covered=int(root.get("lines-covered", 0) or 0),
        lines_valid=int(root.get("lines-valid", 0) or 0),
        packages=len(root.findall("./packages/package")),
    )
    logger.info(
        "Coverage %.2f%% (%d/%d lines, %d packages)",
        summary.percent, summary.lines_covered, summary.lines_valid, summary.packages,
    )
    return summary
