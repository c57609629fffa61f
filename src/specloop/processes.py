from __future__ import annotations

import logging
import os
import signal

logger = logging.getLogger(__name__)


def is_process_alive(pid: int | None) -> bool:
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to another user.
        return True
    return True


def signal_process(pid: int, sig: int) -> None:
    """Deliver ``sig`` to the process group led by ``pid``, or to ``pid`` alone.

    Agents and gate commands are spawned with ``start_new_session=True`` so
    they lead their own group and the signal reaches their children too.
    A controller pid is never a group leader of its own in that sense, so it
    only gets the direct ``os.kill``.

    Raises ``ProcessLookupError`` when the process no longer exists.
    """
    try:
        pgid = os.getpgid(pid)
    except ProcessLookupError:
        raise
    except OSError:
        pgid = None
    if pgid == pid:
        logger.debug("Sending signal %s to process group %s", sig, pgid)
        os.killpg(pgid, sig)
        return
    logger.debug("Sending signal %s to process %s", sig, pid)
    os.kill(pid, sig)


def terminate(pid: int) -> bool:
    """Send SIGTERM; return False if the process was already gone."""
    try:
        signal_process(pid, signal.SIGTERM)
    except ProcessLookupError:
        return False
    return True


def kill(pid: int) -> bool:
    """Send SIGKILL; return False if the process was already gone."""
    try:
        signal_process(pid, signal.SIGKILL)
    except ProcessLookupError:
        return False
    return True
