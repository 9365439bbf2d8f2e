"""Utilities for handling KeyboardInterrupt in worker threads.

Platform builds run in a thread pool. A KeyboardInterrupt raised inside a
worker only unwinds that worker, so it is forwarded to the main thread, which
then cancels the remaining builds and tears their sandboxes down.
"""

import _thread
from typing import NoReturn


def handle_keyboard_interrupt_properly(ke: KeyboardInterrupt) -> NoReturn:
    """Forward a KeyboardInterrupt to the main thread and re-raise it.

    Usage:
        try:
            runner.run(script)
        except KeyboardInterrupt as ke:
            handle_keyboard_interrupt_properly(ke)
        except SandboxError:
            ...

    Args:
        ke: The KeyboardInterrupt exception to handle

    Raises:
        KeyboardInterrupt: Always re-raises the exception after handling
    """
    _thread.interrupt_main()
    raise ke
