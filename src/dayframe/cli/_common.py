"""Shared utilities for the CLI command modules.

Provides the Rich console, the default home directory, and the helper
that builds a SyncEngine for a command.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from rich.console import Console

from .. import DAYFRAME_HOME
from ..sync.engine import SyncEngine, configure_logging

console = Console()
logger = logging.getLogger("dayframe.cli")

__all__ = ["DAYFRAME_HOME", "console", "logger", "open_engine"]


def open_engine(
    home: str, user_id: Optional[str] = None, access_token: Optional[str] = None
) -> SyncEngine:
    """Build an engine for ``home`` with file logging enabled.

    Args:
        home: Dayframe home directory.
        user_id: Signed-in account to act as, from the auth provider.
        access_token: That account's access token.
    """
    home_path = Path(home).expanduser()
    configure_logging(home_path)
    engine = SyncEngine(home_path)
    if user_id:
        engine.remote.set_session(user_id, access_token)
    return engine
