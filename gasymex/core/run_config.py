"""
Configuration of a symbolic execution run and the hooks it installs.

Hooks intercept execution at a program counter, a register access or a memory
access. Callers put them in a RunConfig; architectures add their defaults via
Arch.add_hooks. Before execution starts the configuration is normalized into a
HookTable keyed by address / register name so nothing is pattern matched per
fetch.
"""
import copy
import enum
import logging
import re

l = logging.getLogger(name=__name__)

#------------------------------------------------------------------------------
# PC HOOKS
#------------------------------------------------------------------------------

class PCHook:
    """Action taken instead of decoding the instruction at a hooked address"""
    terminal = True

class Intrinsic(PCHook):
    """
    Replace the code at the address by a Python function.

    `function(state)` runs instead of the hooked code. It is responsible for
    moving the PC on (typically to LR). It may raise PathUnsatisfiable.
    """
    terminal = False

    def __init__(self, function):
        self.function = function

    def __repr__(self):
        return f"Intrinsic({getattr(self.function, '__name__', self.function)})"

class EndSuccess(PCHook):
    def __repr__(self):
        return "EndSuccess()"

class EndFailure(PCHook):
    def __init__(self, reason):
        self.reason = reason

    def __repr__(self):
        return f"EndFailure({self.reason!r})"

class Suppress(PCHook):
    """End the path and leave it out of the reported results"""
    def __repr__(self):
        return "Suppress()"

#------------------------------------------------------------------------------
# MEMORY HOOK ADDRESSES
#------------------------------------------------------------------------------

class Single:
    def __init__(self, address):
        self.address = address

    def contains(self, address):
        return address == self.address

    def __repr__(self):
        return f"Single({self.address:#x})"

class Range:
    """Half open address range [start, end)"""
    def __init__(self, start, end):
        if end <= start:
            raise ValueError(f"Empty memory hook range {start:#x}-{end:#x}")
        self.start = start
        self.end = end

    def contains(self, address):
        return self.start <= address < self.end

    def __repr__(self):
        return f"Range({self.start:#x}, {self.end:#x})"

#------------------------------------------------------------------------------
# RUN CONFIGURATION
#------------------------------------------------------------------------------

class SolveFor(enum.Enum):
    """Which paths get their variables solved for reporting"""
    ALL = "all"
    ERROR = "error"
    SUCCESS = "success"

# Sentinel return address, execution returning here ends the path successfully.
END_PC = 0xFFFFFFFE

DEFAULT_INITIAL_SP = 0x20040000

class RunConfig:
    """
    Configures a symbolic execution run.

    Hook lists:
        pc_hooks: list of (pattern, PCHook). A pattern is a regular expression
            matched against symbol names, or an int address
        register_read_hooks: list of (name, function(state) -> value)
        register_write_hooks: list of (name, function(state, value))
        memory_read_hooks: list of (Single | Range, function(state, address) -> value)
        memory_write_hooks: list of (Single | Range, function(state, address, value, bits))

    For the same key the hook registered first wins, so hooks a caller puts in
    the config take precedence over architecture defaults added later.
    """

    def __init__(self, pc_hooks=None, register_read_hooks=None, register_write_hooks=None,
                 memory_read_hooks=None, memory_write_hooks=None,
                 solve_inputs=True, solve_symbolics=True, solve_output=True,
                 solve_for=SolveFor.ALL, show_path_results=False,
                 max_instructions=None, max_address_resolutions=50,
                 initial_sp=DEFAULT_INITIAL_SP, cache_instructions=True, decoder=None):
        self.pc_hooks = list(pc_hooks or [])
        self.register_read_hooks = list(register_read_hooks or [])
        self.register_write_hooks = list(register_write_hooks or [])
        self.memory_read_hooks = list(memory_read_hooks or [])
        self.memory_write_hooks = list(memory_write_hooks or [])
        self.solve_inputs = solve_inputs
        self.solve_symbolics = solve_symbolics
        self.solve_output = solve_output
        self.solve_for = solve_for
        self.show_path_results = show_path_results
        self.max_instructions = max_instructions
        self.max_address_resolutions = max_address_resolutions
        self.initial_sp = initial_sp
        self.cache_instructions = cache_instructions
        self.decoder = decoder

    def copy(self):
        """Copy with its own hook lists, so hooks added to the copy do not leak back"""
        new = copy.copy(self)
        new.pc_hooks = list(self.pc_hooks)
        new.register_read_hooks = list(self.register_read_hooks)
        new.register_write_hooks = list(self.register_write_hooks)
        new.memory_read_hooks = list(self.memory_read_hooks)
        new.memory_write_hooks = list(self.memory_write_hooks)
        return new

    def should_solve(self, failed):
        if self.solve_for is SolveFor.ALL:
            return True
        if self.solve_for is SolveFor.ERROR:
            return failed
        return not failed


def cycle_lap_hook(label):
    """
    Memory write hook that records (cycle_count, label) in the path's cycle
    laps instead of performing the write. Meant for interrupt mask registers,
    e.g. the NVIC set/clear enable registers to time critical sections.
    """
    def record_lap(state, address, value, bits):
        l.debug(f"cycle lap {label!r} at {state.cycle_count} (write to {address:#x})")
        state.cycle_laps.append((state.cycle_count, label))
    record_lap.__name__ = f"cycle_lap_{label}"
    return record_lap

#------------------------------------------------------------------------------
# NORMALIZED HOOK TABLE
#------------------------------------------------------------------------------

_HASH_SUFFIX = re.compile(r"::h[0-9a-f]{16}$")

def symbol_names(name):
    """
    Names a symbol can be matched by: the name itself, and for demangled
    paths the last path segment without the hash suffix.
    """
    names = [name]
    stripped = _HASH_SUFFIX.sub("", name)
    if "::" in stripped:
        last = stripped.rsplit("::", 1)[1]
        names.append(last)
    elif stripped != name:
        names.append(stripped)
    return names

class HookTable:
    """
    Lookup structure built once from a RunConfig and a symbol table.
    """

    def __init__(self, pc_hooks=None, register_read_hooks=None, register_write_hooks=None,
                 memory_read_hooks=None, memory_write_hooks=None):
        self.pc_hooks = dict(pc_hooks or {})
        self.pc_hooks.setdefault(END_PC, EndSuccess())
        self.register_read_hooks = dict(register_read_hooks or {})
        self.register_write_hooks = dict(register_write_hooks or {})
        self._memory_read = _MemoryHooks(memory_read_hooks or [])
        self._memory_write = _MemoryHooks(memory_write_hooks or [])

    @classmethod
    def build(cls, cfg, symtab):
        pc_hooks = {}
        compiled = []
        for (pattern, hook) in cfg.pc_hooks:
            if isinstance(pattern, int):
                pc_hooks.setdefault(pattern, hook)
            else:
                compiled.append((re.compile(pattern), hook))

        for (name, address) in sorted(symtab.items()):
            for (regex, hook) in compiled:
                if any(regex.search(candidate) for candidate in symbol_names(name)):
                    if address not in pc_hooks:
                        l.debug(f"pc hook {hook} at {address:#x} ({name})")
                        pc_hooks[address] = hook
                    break

        register_read_hooks = {}
        for (name, hook) in cfg.register_read_hooks:
            register_read_hooks.setdefault(name, hook)
        register_write_hooks = {}
        for (name, hook) in cfg.register_write_hooks:
            register_write_hooks.setdefault(name, hook)

        return cls(pc_hooks, register_read_hooks, register_write_hooks,
                   cfg.memory_read_hooks, cfg.memory_write_hooks)

    def pc_hook(self, pc):
        return self.pc_hooks.get(pc)

    def memory_read_hook(self, address):
        return self._memory_read.find(address)

    def memory_write_hook(self, address):
        return self._memory_write.find(address)

class _MemoryHooks:
    def __init__(self, hooks):
        self._single = {}
        self._ranges = []
        for (where, hook) in hooks:
            if isinstance(where, Single):
                self._single.setdefault(where.address, hook)
            elif isinstance(where, Range):
                self._ranges.append((where, hook))
            else:
                raise TypeError(f"Memory hooks are keyed by Single or Range, got {where!r}")

    def find(self, address):
        hook = self._single.get(address)
        if hook is not None:
            return hook
        for (where, hook) in self._ranges:
            if where.contains(address):
                return hook
        return None
