"""Process tree termination.

A sandboxed build can leave a deep tree of processes behind (make, compilers,
test binaries). When a run ends abnormally the whole tree is killed, children
first, so nothing keeps writing into a workspace that is being torn down.
"""

import logging

import psutil

logger = logging.getLogger(__name__)


def kill_process_tree(root_pid: int, timeout: float = 3) -> int:
    """Kill a process and all of its descendants.

    Processes are asked to terminate first and killed if they are still
    alive after timeout seconds.

    Args:
        root_pid: PID of the root of the tree
        timeout: Seconds to wait for graceful termination

    Returns:
        Number of processes signalled
    """
    try:
        root = psutil.Process(root_pid)
        children = root.children(recursive=True)
    except psutil.NoSuchProcess:
        return 0

    # Children first (bottom-up to avoid orphans)
    processes = list(reversed(children)) + [root]

    signalled: list[psutil.Process] = []
    for proc in processes:
        try:
            proc.terminate()
            signalled.append(proc)
            logger.debug(f"Terminated process {proc.pid}")
        except psutil.NoSuchProcess:
            pass  # Already dead
        except psutil.AccessDenied as e:
            logger.warning(f"Not allowed to terminate process {proc.pid}: {e}")

    # Wait for graceful termination
    _, alive = psutil.wait_procs(signalled, timeout=timeout)

    # Force kill any survivors
    for proc in alive:
        try:
            proc.kill()
            logger.debug(f"Force killed process {proc.pid}")
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied as e:
            logger.warning(f"Not allowed to kill process {proc.pid}: {e}")

    return len(signalled)
