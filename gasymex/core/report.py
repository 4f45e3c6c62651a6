"""
Per path reporting: named variables, their types and solved values.
"""
import logging

from gasymex.core.executor import Success, Failure

l = logging.getLogger(name=__name__)

#------------------------------------------------------------------------------
# VARIABLES
#------------------------------------------------------------------------------

class ExpressionType:
    """Type of a reported variable, used only for display"""
    pass

class Integer(ExpressionType):
    def __init__(self, bits):
        self.bits = bits

    def __repr__(self):
        return f"Integer({self.bits})"

class Unknown(ExpressionType):
    def __repr__(self):
        return "Unknown"

class Variable:
    """
    A named expression of interest: a register, a flag, a marked symbolic
    value or an input the path read without writing it first.
    """

    def __init__(self, name, value, ty=None):
        self.name = name
        self.value = value
        self.ty = ty if ty is not None else Unknown()

    def __repr__(self):
        return f"Variable({self.name}, {self.value}, {self.ty!r})"

def format_value(value, bits):
    """Hex for whole bytes, binary otherwise, always followed by the width"""
    if bits % 8 == 0:
        text = f"{value:#0{bits // 4 + 2}x}"
    else:
        text = f"{value:#0{bits + 2}b}"
    suffix = "1-bit" if bits == 1 else f"{bits}-bits"
    return f"{text} ({suffix})"

#------------------------------------------------------------------------------
# PATH STATUS
#------------------------------------------------------------------------------

class PathStatus:
    failed = False

class Ok(PathStatus):
    def __init__(self, value=None):
        self.value = value

    def __str__(self):
        if self.value is None:
            return "Success"
        return f"Success, returned {self.value}"

class Failed(PathStatus):
    failed = True

    def __init__(self, message):
        self.message = message

    def __str__(self):
        return f"Failed: {self.message}"

#------------------------------------------------------------------------------
# PATH REPORT
#------------------------------------------------------------------------------

class PathReport:
    """
    Result of one finished path. Variables are solved under the path
    constraints the first time they are accessed, and only when the run
    configuration asks for them.
    """

    def __init__(self, path, result, state, cfg):
        self.path = path
        self.instruction_count = state.instruction_count
        self.max_cycles = state.cycle_count
        self.cycle_laps = list(state.cycle_laps)
        self._state = state
        self._cfg = cfg
        self._cache = {}

        if isinstance(result, Success):
            self._returned = result.value
            self.status = Ok()
        elif isinstance(result, Failure):
            self._returned = None
            self.status = Failed(result.reason)
        else:
            raise ValueError(f"Only finished paths are reported, got {result!r}")

    @property
    def _solve(self):
        return self._cfg.should_solve(self.status.failed)

    def _solved(self, key, variables, enabled):
        if not (enabled and self._solve):
            return []
        if key not in self._cache:
            self._cache[key] = [(v.name, self._state.solve(v.value)) for v in variables]
        return self._cache[key]

    @property
    def symbolics(self):
        """[(name, formatted value)] of the values marked symbolic by the program"""
        return self._solved('symbolics', self._state.marked_symbolic, self._cfg.solve_symbolics)

    @property
    def inputs(self):
        """[(name, formatted value)] of everything read before it was written"""
        return self._solved('inputs', self._state.inputs, self._cfg.solve_inputs)

    @property
    def end_state(self):
        """[(name, formatted value)] of the registers and flags at the end of the path"""
        return self._solved('end_state', self._state.end_state_variables(), self._cfg.solve_output)

    @property
    def output(self):
        """Formatted return value of a successful path, None otherwise"""
        if self._returned is None or not (self._cfg.solve_output and self._solve):
            return None
        if 'output' not in self._cache:
            self._cache['output'] = self._state.solve(self._returned.value)
        return self._cache['output']

    @property
    def result(self):
        output = self.output
        if isinstance(self.status, Ok) and output is not None:
            return f"Success, returned {output}"
        return str(self.status)

    def __repr__(self):
        return f"PathReport(path={self.path}, {self.result}, cycles={self.max_cycles})"
