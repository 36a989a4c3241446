"""Parley backend application."""

from pathlib import Path
import sys

# the shared ``parley`` package lives beside the app under src/
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if SRC_PATH.exists() and str(SRC_PATH) not in sys.path:
    sys.path.append(str(SRC_PATH))
