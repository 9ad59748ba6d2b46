import os
import signal
import psutil
from xdl.common.logger import setup_logger

logger = setup_logger("Process")


def is_process_running(pid: int | None) -> bool:
    """True when `pid` names a live, non-zombie process."""
    if not pid:
        return False
    try:
        if not psutil.pid_exists(pid):
            return False
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return False


def kill_process_tree(pid: int | None, timeout: float = 3.0) -> bool:
    """
    Kill a process and all of its children.

    Args:
        pid: Root process id. None or a dead pid is a no-op.
        timeout: Seconds to wait for the processes to disappear.

    Returns:
        True if something was killed.
    """
    if not pid:
        return False
    try:
        parent = psutil.Process(pid)
        children = parent.children(recursive=True)

        for child in children:
            try:
                child.kill()
            except psutil.NoSuchProcess:
                pass

        parent.kill()
        psutil.wait_procs(children + [parent], timeout=timeout)
        logger.debug(f"[Process] Killed process tree {pid}")
        return True
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied as e:
        logger.error(f"[Process] Not allowed to kill PID {pid}: {e}")
        return False


def kill_pid(pid: int | None) -> bool:
    """Send SIGKILL to a single pid recorded by an earlier session."""
    if not pid:
        return False
    try:
        os.kill(pid, getattr(signal, "SIGKILL", signal.SIGTERM))
        return True
    except ProcessLookupError:
        return False
    except OSError as e:
        logger.debug(f"[Process] Could not kill PID {pid}: {e}")
        return False
