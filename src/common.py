"""Common utilities for infrastructure automation."""

import logging
import subprocess
from pathlib import Path
from typing import Iterator, Optional

logger = logging.getLogger(__name__)


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: int = 600,
    capture: bool = True,
    env: Optional[dict] = None
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr)."""
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=env,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        return -1, '', f'Command timed out after {timeout}s'
    except OSError as e:
        return -1, '', str(e)


def backoff_delays(max_attempts: int, base: float, cap: float) -> Iterator[float]:
    """Yield the sleep before each retry: base, 2*base, 4*base... capped.

    Yields max_attempts - 1 values (no sleep before the first attempt).
    """
    for retry in range(max_attempts - 1):
        yield min(cap, base * (2 ** retry))
