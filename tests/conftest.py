import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from duet.config import CliConfig  # noqa: E402
from duet.conversations import ConversationStore  # noqa: E402


@pytest.fixture
def make_cli(tmp_path):
    """Build a CliConfig whose commands run in a scratch directory."""

    def _make(gemini: str = "printf '%s'", claude: str = "printf '%s'", timeout: float = 10.0):
        return CliConfig(
            gemini=gemini,
            claude=claude,
            workspace_dir=str(tmp_path),
            timeout_seconds=timeout,
        )

    return _make


@pytest.fixture
def store():
    return ConversationStore()
