"""External command runner.

Every command is an argv list executed without a shell, so arguments are
passed to the program as discrete tokens and never re-parsed.
"""

import logging
import subprocess
from dataclasses import dataclass

from torrouter import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    rc: int
    output: str
    timed_out: bool = False

    @property
    def ok(self):
        return self.rc == 0 and not self.timed_out


def run(argv, timeout=None):
    """Run ``argv`` and return its exit status and combined stdout/stderr.

    Never raises for a failed, missing or hung program: those come back as a
    non-zero ``rc`` with a diagnostic in ``output``.
    """
    argv = [str(a) for a in argv]
    if timeout is None:
        timeout = settings.TIMEOUT_CONFIG["trigger"]
    try:
        r = subprocess.run(
            argv,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        logger.warning("%s timed out after %ss", argv[0], timeout)
        return CommandResult(-1, f"Timed out after {timeout}s.", timed_out=True)
    except OSError as e:
        logger.warning("could not run %s: %s", argv[0], e)
        return CommandResult(-1, str(e))
    return CommandResult(r.returncode, (r.stdout or "").rstrip())
