import os
import time
from contextlib import contextmanager
from functools import cached_property
from typing import List, Tuple

# Import mpi4py and utilities
from mpi4py import MPI  # Note this initializes and finalizes MPI session automatically

#    _                                      _
#   |_     _   _      _|_ o  _  ._     _  _ |_  _|_  _    _|_
#   |_ >< (/_ (_ |_|   |_ | (_) | |   (_ (_) | |  |_ (/_ >< |_
#


class Execution_context(object):
    """Process topology shared by every component of a run.

    Wraps an MPI communicator; the master rank is the only one allowed to
    print or to write files.

    >>> ctx = Execution_context()
    >>> ctx.world_size >= 1, 0 <= ctx.rank < ctx.world_size
    (True, True)
    """

    MPI_master_rank = 0

    def __init__(self, comm=None):
        self.comm = MPI.COMM_WORLD if comm is None else comm
        self.world_size = self.comm.Get_size()  # No. of processes running
        self.rank = self.comm.Get_rank()  # Rank of current process

    @cached_property
    def n_threads(self) -> int:
        # Work is split over ranks, not threads. Only reported.
        try:
            return int(os.environ["OMP_NUM_THREADS"])
        except (KeyError, ValueError):
            return os.cpu_count() or 1

    @property
    def is_master(self) -> bool:
        return self.rank == self.MPI_master_rank

    def barrier(self):
        self.comm.Barrier()

    def bcast(self, obj):
        """Send a python object from the master rank to every rank"""
        return self.comm.bcast(obj, root=self.MPI_master_rank)

    def print_master(self, str_):
        """Master rank prints inputted str"""
        if self.is_master:
            print(str_, flush=True)

    def local_slice(self, n: int) -> range:
        """Indices handled by this rank when `n` independent tasks are split round-robin
        >>> ctx = Execution_context()
        >>> ctx.world_size = 3
        >>> ctx.rank = 1
        >>> list(ctx.local_slice(8))
        [1, 4, 7]
        """
        return range(self.rank, n, self.world_size)

    @cached_property
    def timer(self):
        return Timer(self)


#  ___
#   |  o ._ _   _  ._
#   |  | | | | (/_ |
#

ANSI_COLOR_GREEN = "\x1b[32m"
ANSI_COLOR_YELLOW = "\x1b[33m"
ANSI_COLOR_RESET = "\x1b[0m"


class Timer(object):
    """Nested named sections, for diagnostics only.

    Every start/end is a collective barrier. The master prints
    `[START] outer >> inner [diff/section/total]` where `diff` is the time
    since the previous mark, `section` since the start of the innermost
    section and `total` since the timer was created.
    """

    def __init__(self, ctx: Execution_context):
        self.ctx = ctx
        self.ctx.barrier()
        self.init_time = self.prev_time = time.perf_counter()
        self.start_times: List[Tuple[str, float]] = []
        if self.ctx.is_master:
            print(f"\nStart time: {time.asctime()}")
            print(f"Format: {ANSI_COLOR_YELLOW}[DIFF/SECTION/TOTAL]{ANSI_COLOR_RESET}", flush=True)

    def event_path(self, now: float) -> str:
        path = " >> ".join(event for event, _ in self.start_times)
        section_start = self.start_times[-1][1] if self.start_times else self.init_time
        return (
            f"{path} {ANSI_COLOR_YELLOW}"
            f"[{now - self.prev_time:.3f}/{now - section_start:.3f}/{now - self.init_time:.3f}]"
            f"{ANSI_COLOR_RESET}"
        )

    def start(self, event: str):
        self.ctx.barrier()
        now = time.perf_counter()
        self.start_times.append((event, now))
        self.ctx.print_master(f"\n{ANSI_COLOR_GREEN}[START]{ANSI_COLOR_RESET} {self.event_path(now)}")
        self.prev_time = now

    def checkpoint(self, event: str):
        now = time.perf_counter()
        self.ctx.print_master(f"{event} {self.event_path(now)}")
        self.prev_time = now

    def end(self):
        self.ctx.barrier()
        now = time.perf_counter()
        self.ctx.print_master(f"{ANSI_COLOR_GREEN}[=END=]{ANSI_COLOR_RESET} {self.event_path(now)}")
        self.start_times.pop()
        self.prev_time = now

    @contextmanager
    def section(self, event: str):
        """Scoped section; `end` runs on every exit path"""
        self.start(event)
        try:
            yield self
        finally:
            self.end()
