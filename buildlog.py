"""Time-stamped console output shared by the build tasks."""
import sys
from datetime import datetime


def timestamp() -> str:
    return datetime.now().strftime("%H:%M:%S")


def log(message: str, *, label: str = ""):
    """Print one build message, e.g. "[12:01:59] Jekyll: done in 0.4s"."""
    if label:
        message = f"{label}: {message}"
    print(f"[{timestamp()}] {message}", flush=True)


def warn(message: str):
    print(f"[{timestamp()}] WARNING: {message}", file=sys.stderr, flush=True)
