from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from ralph.errors import CommandError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


def run_command(
    args: list[str],
    *,
    cwd: Path | None = None,
    timeout: float | None = DEFAULT_TIMEOUT,
    check: bool = True,
) -> subprocess.CompletedProcess[str]:
    """Run a blocking auxiliary command, mapping every failure to ``CommandError``.

    Callers on the event loop wrap this in ``asyncio.to_thread``.
    """
    rendered = " ".join(args)
    logger.debug("running %s (cwd=%s, timeout=%s)", rendered, cwd, timeout)
    try:
        proc = subprocess.run(
            args,
            cwd=cwd,
            text=True,
            capture_output=True,
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        raise CommandError(rendered, f"Command not found: {args[0]}") from exc
    except subprocess.TimeoutExpired as exc:
        raise CommandError(rendered, f"Command execution timed out after {timeout:.1f}s") from exc
    except OSError as exc:
        raise CommandError(rendered, str(exc)) from exc
    if check and proc.returncode != 0:
        raise CommandError(
            rendered,
            proc.stderr.strip() or proc.stdout.strip(),
            exit_code=proc.returncode,
        )
    return proc
