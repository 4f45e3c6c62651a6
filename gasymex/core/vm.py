"""
Drives symbolic execution: resumes paths from the worklist and runs them to
completion one at a time.
"""
import logging

import claripy

from gasymex.core.errors import PathError, PathUnsatisfiable, SymbolicProgramCounter, InstructionLimitReached
from gasymex.core.executor import Executor, Success, Failure, AssumptionUnsat, Suppress
from gasymex.core.machine_state import State
from gasymex.core.path_selection import Path, DFSPathSelection
from gasymex.core.report import Variable, Integer
from gasymex.core.run_config import Intrinsic, EndSuccess, EndFailure
from gasymex.core.run_config import Suppress as SuppressHook

l = logging.getLogger(name=__name__)


class VM:
    """
    Explores every path of `function` depth first.

    Usage:
        vm = VM(project, cfg, "my_function")
        for (result, state) in vm.run():
            ...
    """

    def __init__(self, project, cfg, function):
        self.project = project
        self.cfg = cfg
        self.paths = DFSPathSelection()
        self.paths.save(Path(State.create(project, cfg, function)))
        self.instruction_cache = {}
        self.paths_explored = 0

    def run(self, max_paths=None):
        """Generator of (PathResult, State), one per resumed path"""
        while True:
            if max_paths is not None and self.paths_explored >= max_paths:
                l.info(f"Stopping after {max_paths} paths, {len(self.paths)} left unexplored")
                return
            path = self.paths.get_path()
            if path is None:
                return
            self.paths_explored += 1
            l.info(f"Exploring path {self.paths_explored}, {len(self.paths)} waiting")
            result = self.run_path(path)
            l.debug(f"path {self.paths_explored} ended with {result}")
            yield result, path.state

    def run_path(self, path):
        state = path.state
        executor = Executor(state, self.paths, self.cfg.max_address_resolutions)
        try:
            if path.constraint is not None:
                state.constraints.add(path.constraint)
                if not state.constraints.satisfiable():
                    return AssumptionUnsat()
            if path.continuation is not None:
                executor.resume(path.continuation)
            return self._run(state, executor)
        except PathUnsatisfiable as e:
            l.debug(f"pruning path: {e}")
            return AssumptionUnsat()
        except PathError as e:
            l.info(f"path failed: {e}")
            return Failure(str(e))
        except claripy.errors.UnsatError as e:
            l.debug(f"pruning path: {e}")
            return AssumptionUnsat()
        except claripy.errors.ClaripyError as e:
            l.warning(f"path failed in the solver: {e!r}")
            return Failure(f"Solver error: {e}")

    def _run(self, state, executor):
        hooks = self.project.hooks
        while True:
            pc = state.pc
            if pc is None:
                raise SymbolicProgramCounter(state.registers["PC"])

            hook = hooks.pc_hook(pc)
            if hook is not None:
                l.debug(f"pc hook {hook} at {pc:#x}")
                if isinstance(hook, EndSuccess):
                    return Success(self._return_value(state))
                if isinstance(hook, EndFailure):
                    return Failure(hook.reason)
                if isinstance(hook, SuppressHook):
                    return Suppress()
                if isinstance(hook, Intrinsic):
                    hook.function(state)
                    continue

            limit = self.cfg.max_instructions
            if limit is not None and state.instruction_count >= limit:
                raise InstructionLimitReached(limit)

            executor.execute_instruction(self.get_instruction(state, pc))

    def get_instruction(self, state, pc):
        """Decode the instruction at `pc`, reusing earlier decodings when possible"""
        cacheable = self.cfg.cache_instructions and not state.get_in_conditional_block()
        if cacheable and pc in self.instruction_cache:
            return self.instruction_cache[pc]

        data = self.project.get_raw_bytes(pc, self.project.ptr_size // 8)
        instruction = self.project.arch.translate(data, state)
        if cacheable:
            self.instruction_cache[pc] = instruction
        return instruction

    def _return_value(self, state):
        register = self.project.arch.return_register
        value = state.registers.get(register)
        if value is None:
            return None
        return Variable(register, value, Integer(len(value)))
