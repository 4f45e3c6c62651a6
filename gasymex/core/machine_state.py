"""
The complete mutable context of one execution path.
"""
import collections
import logging

import claripy

from gasymex.core.errors import EntryFunctionNotFound, OutOfBounds, WritingToStaticMemoryProhibited
from gasymex.core.memory_model import ArrayMemory, BITS_IN_BYTE
from gasymex.core.report import Variable, Integer, format_value
from gasymex.core.run_config import END_PC
from gasymex.utils import get_constant, resize, bool_to_bv, describeAst

l = logging.getLogger(name=__name__)

FLAGS = ("N", "Z", "C", "V")


class State:
    """
    Registers, flags, memory and path constraints of one path, together with
    the counters used for cycle accounting.

    Registers and flags that are read before they are written get a fresh
    unconstrained value, which is recorded in `inputs`.
    """

    def __init__(self, project, cfg, constraints=None, memory=None):
        self.project = project
        self.cfg = cfg
        self.constraints = constraints if constraints is not None else claripy.Solver()
        self.memory = memory if memory is not None else ArrayMemory(
            project.ptr_size, project.endianness, self.constraints,
            initial_byte=project.initial_byte, image_bytes=project.initial_bytes)

        self.registers = {}
        self.flags = {}
        self.marked_symbolic = []
        self.inputs = []

        self.instruction_count = 0
        self.cycle_count = 0
        self.cycle_laps = []
        self.count_cycles = True

        self.current_instruction = None
        self.has_jumped = False
        self.last_memory_address = None
        # conditions of the instructions following a ConditionalExecution
        self.conditions = collections.deque()

    @classmethod
    def create(cls, project, cfg, function):
        """Fresh state about to execute `function`"""
        entry = project.get_symbol_address(function)
        if entry is None:
            raise EntryFunctionNotFound(function)
        l.debug(f"Creating state for {function} at {entry:#x}")

        state = cls(project, cfg)
        word = state.word_size
        state.registers["PC"] = claripy.BVV(entry, word)
        state.registers["SP"] = claripy.BVV(cfg.initial_sp, word)
        state.registers["LR"] = claripy.BVV(END_PC, word)
        return state

    def copy(self):
        """Deep copy for a forked path. Expressions are immutable and shared."""
        constraints = self.constraints.branch()
        new = State(self.project, self.cfg, constraints, self.memory.copy(constraints))
        new.registers = dict(self.registers)
        new.flags = dict(self.flags)
        new.marked_symbolic = list(self.marked_symbolic)
        new.inputs = list(self.inputs)
        new.instruction_count = self.instruction_count
        new.cycle_count = self.cycle_count
        new.cycle_laps = list(self.cycle_laps)
        new.count_cycles = self.count_cycles
        new.current_instruction = self.current_instruction
        new.has_jumped = self.has_jumped
        new.last_memory_address = self.last_memory_address
        new.conditions = collections.deque(self.conditions)
        return new

    @property
    def word_size(self):
        return int(self.project.word_size)

    @property
    def pc(self):
        """Concrete program counter or None when it is symbolic"""
        return get_constant(self.registers["PC"])

    #--------------------------------------------------------------------------
    # INSTRUCTION BOOKKEEPING
    #--------------------------------------------------------------------------

    def begin_instruction(self, instruction):
        """Record `instruction` as executing and move PC past it"""
        self.current_instruction = instruction
        self.has_jumped = False
        step = claripy.BVV(instruction.instruction_size // BITS_IN_BYTE, self.word_size)
        self.registers["PC"] = self.registers["PC"] + step

    def end_instruction(self, instruction):
        self.instruction_count += 1
        if self.count_cycles:
            cycles = instruction.max_cycle.evaluate(self)
            self.cycle_count += cycles
            l.debug(f"{instruction} took {cycles} cycles, total {self.cycle_count}")

    def get_in_conditional_block(self):
        """True while instructions guarded by a ConditionalExecution are pending"""
        return len(self.conditions) > 0

    #--------------------------------------------------------------------------
    # REGISTERS AND FLAGS
    #--------------------------------------------------------------------------

    def get_register(self, name):
        hook = self.project.hooks.register_read_hooks.get(name)
        if hook is not None:
            return resize(hook(self), self.word_size)
        value = self.registers.get(name)
        if value is None:
            value = self._unconstrained(name, self.word_size)
            self.registers[name] = value
        return value

    def set_register(self, name, value):
        hook = self.project.hooks.register_write_hooks.get(name)
        if hook is not None:
            hook(self, value)
            return
        if name == "PC":
            self.has_jumped = True
        self.registers[name] = resize(value, self.word_size)

    def get_flag(self, name):
        value = self.flags.get(name)
        if value is None:
            value = self._unconstrained(name, 1)
            self.flags[name] = value
        return value

    def set_flag(self, name, value):
        if isinstance(value, claripy.ast.Bool):
            value = bool_to_bv(value)
        self.flags[name] = resize(value, 1)

    def _unconstrained(self, name, bits):
        value = claripy.BVS(name, bits, explicit_name=True)
        self.inputs.append(Variable(name, value, Integer(bits)))
        l.debug(f"{name} read before written, using unconstrained value")
        return value

    #--------------------------------------------------------------------------
    # MEMORY
    #--------------------------------------------------------------------------

    def read_memory(self, addr, bits):
        """
        Read `bits` bits at `addr`. Concrete addresses are checked against the
        memory read hooks, then the static program image.
        """
        address = get_constant(addr)
        self.last_memory_address = address
        if address is not None:
            hook = self.project.hooks.memory_read_hook(address)
            if hook is not None:
                l.debug(f"memory read hook at {address:#x}")
                return resize(hook(self, address), bits)
            if self.project.address_in_range(address):
                return self._read_static(address, bits)
        return self.memory.read(addr, bits)

    def write_memory(self, addr, value):
        """
        Write `value` at `addr`. Writes that touch the static program image
        fail, for symbolic addresses as soon as the image can be touched.
        """
        address = get_constant(addr)
        self.last_memory_address = address
        num_bytes = max(len(value) // BITS_IN_BYTE, 1)
        if address is not None:
            hook = self.project.hooks.memory_write_hook(address)
            if hook is not None:
                l.debug(f"memory write hook at {address:#x}")
                hook(self, address, value, len(value))
                return
            for offset in range(num_bytes):
                if self.project.address_in_range(address + offset):
                    raise WritingToStaticMemoryProhibited(address + offset)
        else:
            overlap = self._static_overlap(addr, num_bytes)
            if overlap is not None and self.constraints.satisfiable(extra_constraints=[overlap]):
                witness = self.constraints.eval(addr, 1, extra_constraints=[overlap])[0]
                raise WritingToStaticMemoryProhibited(witness)
        self.memory.write(addr, value)

    def _static_overlap(self, addr, num_bytes):
        """Bool that holds when `num_bytes` bytes at `addr` overlap static memory, None without static memory"""
        width = len(addr) + 1
        start = addr.zero_extend(1)
        end = start + claripy.BVV(num_bytes, width)
        overlaps = [claripy.And(claripy.ULT(start, claripy.BVV(segment.end_address, width)),
                                claripy.UGT(end, claripy.BVV(segment.start_address, width)))
                    for segment in self.project.static_segments]
        if not overlaps:
            return None
        return claripy.Or(*overlaps)

    def _read_static(self, address, bits):
        num_bytes = max(bits // BITS_IN_BYTE, 1)
        data = self.project.get_raw_bytes(address, num_bytes)
        if len(data) < num_bytes:
            raise OutOfBounds(address + len(data))
        value = claripy.BVV(int.from_bytes(data, self.project.endianness.byteorder), num_bytes * BITS_IN_BYTE)
        return resize(value, bits)

    #--------------------------------------------------------------------------
    # SOLVING
    #--------------------------------------------------------------------------

    def solve(self, value):
        """One concrete model of `value` under the path constraints, formatted for display"""
        solution = self.constraints.eval(value, 1)[0]
        return format_value(solution, len(value))

    def end_state_variables(self):
        """Variables for every register and flag the path has touched"""
        variables = [Variable(name, value, Integer(len(value))) for (name, value) in sorted(self.registers.items())]
        variables += [Variable(name, self.flags[name], Integer(1)) for name in FLAGS if name in self.flags]
        return variables

    def __repr__(self):
        pc = self.registers.get("PC")
        return (f"<State pc={describeAst(pc) if pc is not None else None} "
                f"instructions={self.instruction_count} cycles={self.cycle_count}>")
