from __future__ import annotations

"""
Run blocking port calls on dedicated daemon threads.

Every call gets its own thread, so a device that never answers cannot queue
work for any other device or keep the interpreter alive at exit.
"""

from concurrent.futures import Future
import threading
from typing import Any, Callable


def submit_daemon(func: Callable[..., Any], *args: Any, name: str) -> Future:
    """
    Start ``func(*args)`` on a new daemon thread.

    Parameters
    ----------
    func : Callable[..., Any]
        Blocking callable.
    *args : Any
        Positional arguments for ``func``.
    name : str
        Thread name.

    Returns
    -------
    Future
        Resolves with the return value or the raised exception.
    """
    future: Future = Future()

    def _target() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            result = func(*args)
        except BaseException as exc:
            future.set_exception(exc)
        else:
            future.set_result(result)

    threading.Thread(target=_target, daemon=True, name=name).start()
    return future
