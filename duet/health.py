"""Health probe — checks whether each configured CLI can be resolved on PATH."""

from __future__ import annotations

import logging
import shlex
import shutil
from typing import TYPE_CHECKING

from duet.schemas import CliAvailability, HealthStatus

if TYPE_CHECKING:
    from duet.config import CliConfig

logger = logging.getLogger(__name__)


def is_cli_available(command: str) -> bool:
    """True if the first word of ``command`` resolves to an executable."""
    try:
        words = shlex.split(command)
    except ValueError:
        logger.warning(f"CLI command cannot be parsed: {command}")
        return False
    if not words or shutil.which(words[0]) is None:
        logger.warning(f"CLI not found: {command}")
        return False
    return True


def check_health(cli: CliConfig) -> HealthStatus:
    availability = CliAvailability(
        gemini=is_cli_available(cli.gemini),
        claude=is_cli_available(cli.claude),
    )
    status = "ok" if availability.gemini and availability.claude else "degraded"
    return HealthStatus(status=status, cli=availability)
