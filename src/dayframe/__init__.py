"""
Dayframe — local-first journal, schedule, and task data core.

Every record lives on this device first. The remote store is a mirror,
kept current in the background and never trusted with plaintext.
"""

import os

__version__ = "0.1.0"

DAYFRAME_HOME = os.environ.get("DAYFRAME_HOME", "~/.dayframe")
