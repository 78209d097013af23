"""Stack dumps of every thread and asyncio task in the process."""

import asyncio
import io
import sys
import threading
import traceback


def format_exception(exc: BaseException) -> str:
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))


def dump_all_stacks() -> str:
    """Text dump of all thread stacks followed by all asyncio task stacks."""
    out = io.StringIO()
    names = {t.ident: t.name for t in threading.enumerate()}

    for ident, frame in sys._current_frames().items():
        out.write(f"Thread {names.get(ident, '?')} ({ident}):\n")
        out.write("".join(traceback.format_stack(frame)))
        out.write("\n")

    try:
        tasks = asyncio.all_tasks()
    except RuntimeError:
        tasks = set()

    for task in tasks:
        out.write(f"Task {task.get_name()}:\n")
        task.print_stack(file=out)
        out.write("\n")

    return out.getvalue()


__all__ = ['format_exception', 'dump_all_stacks']
