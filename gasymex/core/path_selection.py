"""
Paths waiting to be explored and the order they are explored in.
"""
import logging

l = logging.getLogger(name=__name__)


class Continuation:
    """
    Resume point inside a partially executed instruction.

    Attributes:
        frames: Executor frames, the innermost last. The top frame's index
            points at the operation that forked, which is executed again.
        locals: Instruction locals at the time of the fork
        reads: Values the forking operation read before it forked. They are
            returned in order when the operation is executed again instead
            of being read a second time.
    """

    def __init__(self, frames, locals, reads=()):
        self.frames = frames
        self.locals = locals
        self.reads = list(reads)

    def __repr__(self):
        return f"Continuation(depth={len(self.frames)})"


class Path:
    """
    A forked state waiting to be resumed.

    Attributes:
        state: The forked State
        constraint: Constraint distinguishing this path from its sibling,
            asserted when the path is resumed
        continuation: Where to resume inside the instruction that forked, or
            None to continue with the next instruction
    """

    def __init__(self, state, constraint=None, continuation=None):
        self.state = state
        self.constraint = constraint
        self.continuation = continuation

    def __repr__(self):
        return f"Path({self.state}, constraint={self.constraint})"


class DFSPathSelection:
    """Depth first worklist: the most recently forked path is resumed first."""

    def __init__(self):
        self.paths = []

    def save(self, path):
        l.debug(f"saving {path}")
        self.paths.append(path)

    def get_path(self):
        """Next path to explore or None when the worklist is empty"""
        if not self.paths:
            return None
        return self.paths.pop()

    def waiting_paths(self):
        return len(self.paths)

    def __len__(self):
        return len(self.paths)
