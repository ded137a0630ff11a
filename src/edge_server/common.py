"""Common utilities shared by the server and CLI."""

import logging
import subprocess
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: Optional[float] = 600,
    env: Optional[dict] = None,
) -> tuple[int, bytes, bytes]:
    """Run a command and return (returncode, stdout, stderr).

    Output is captured in full as bytes. A command that cannot be spawned or
    runs past the timeout yields returncode -1 with the reason in stderr.
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            timeout=timeout,
            env=env,
            stdin=subprocess.DEVNULL,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired as e:
        stderr = (e.stderr or b'') + f'Command timed out after {timeout}s'.encode()
        return -1, e.stdout or b'', stderr
    except OSError as e:
        return -1, b'', str(e).encode()


def prefix_lines(text: str | bytes, prefix: str) -> str:
    """Prefix every line of text, dropping carriage returns."""
    if isinstance(text, bytes):
        text = text.decode('utf-8', errors='replace')
    text = text.replace('\r', '')
    return '\n'.join(f'{prefix}{line}' for line in text.split('\n'))
