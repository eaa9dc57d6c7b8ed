"""Resolve a process and all of its descendants.

The OS process table is read through a :class:`ChildLister`, which answers
one question: "which processes are direct children of *pid*?".  The
default :class:`PgrepChildLister` spawns ``pgrep -P <pid>`` for every
visited pid.
"""

from __future__ import annotations

import abc
import logging
import subprocess
from collections import deque
from typing import Deque, List, Set

from .errors import ProcessTableError

logger = logging.getLogger(__name__)


class ChildLister(abc.ABC):
    """Lists the direct children of a process."""

    @abc.abstractmethod
    def children(self, pid: int) -> List[int]:
        """Return the pids whose parent is *pid*.

        Raises :class:`ProcessTableError` if the table cannot be read.
        """


class PgrepChildLister(ChildLister):
    """Reads the process table by running ``pgrep -P <pid>``.

    ``pgrep`` exits with status 1 when nothing matched, which is reported
    as an empty list.  Any other failure raises :class:`ProcessTableError`.
    """

    def __init__(self, executable: str = "pgrep"):
        self.executable = executable

    def children(self, pid: int) -> List[int]:
        cmd = [self.executable, "-P", str(int(pid))]
        try:
            proc = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                text=True,
                check=False,
            )
        except OSError as e:
            raise ProcessTableError(f"{self.executable} could not be started: {e}") from e

        if proc.returncode == 1:
            return []
        if proc.returncode != 0:
            raise ProcessTableError(f"{' '.join(cmd)} exited with status {proc.returncode}")

        pids: List[int] = []
        for line in proc.stdout.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                pids.append(int(line))
            except ValueError as e:
                raise ProcessTableError(f"unexpected pgrep output: {line!r}") from e
        return pids


def resolve_process_tree(root_pid: int, lister: ChildLister) -> Set[int]:
    """Return *root_pid* plus every transitive child, breadth first.

    A pid whose children cannot be listed is treated as childless, so the
    result always contains at least *root_pid* (``0`` included).  Parent
    links form a tree, so no cycle guard is needed beyond skipping pids
    already seen.
    """
    found: Set[int] = {int(root_pid)}
    queue: Deque[int] = deque([int(root_pid)])

    while queue:
        pid = queue.popleft()
        try:
            kids = lister.children(pid)
        except ProcessTableError as e:
            logger.debug("Could not list children of pid %d: %s", pid, e)
            continue
        for kid in kids:
            if kid not in found:
                found.add(kid)
                queue.append(kid)

    return found
