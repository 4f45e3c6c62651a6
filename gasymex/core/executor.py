"""
Executes decoded instructions against a State.

When a branch condition or a memory address is ambiguous under the path
constraints the executor forks: the current path continues with one outcome,
and for every other outcome a copy of the state is saved to the path selection
together with the constraint selecting that outcome and a continuation. A
resumed continuation executes the forking operation again, this time with the
outcome fixed by its constraint, and then finishes the instruction.
"""
import collections
import logging

import claripy

from gasymex.core import ir
from gasymex.core.errors import InvalidOperand, PathUnsatisfiable
from gasymex.core.path_selection import Path, Continuation
from gasymex.utils import get_constant, resize, bool_to_bv, describeAst

l = logging.getLogger(name=__name__)

#------------------------------------------------------------------------------
# PATH RESULTS
#------------------------------------------------------------------------------

class PathResult:
    pass

class Success(PathResult):
    """Path returned to the end address. `value` is the returned Variable or None."""
    def __init__(self, value=None):
        self.value = value

    def __repr__(self):
        return f"Success({self.value!r})"

class Failure(PathResult):
    def __init__(self, reason):
        self.reason = reason

    def __repr__(self):
        return f"Failure({self.reason!r})"

class AssumptionUnsat(PathResult):
    """Path constraints became unsatisfiable, the path does not exist"""
    def __repr__(self):
        return "AssumptionUnsat()"

class Suppress(PathResult):
    def __repr__(self):
        return "Suppress()"

#------------------------------------------------------------------------------
# EXECUTOR
#------------------------------------------------------------------------------

class _Frame:
    """Position in one operation list, and the operand a ForEach bound to it"""
    __slots__ = ('operations', 'index', 'operand')

    def __init__(self, operations, index=0, operand=None):
        self.operations = operations
        self.index = index
        self.operand = operand

    def copy(self):
        return _Frame(self.operations, self.index, self.operand)

class _ExecuteIf(ir.Operation):
    """Guard placed in front of an instruction inside a conditional block"""
    __slots__ = _fields = ('condition',)

    def __init__(self, condition):
        super().__init__(condition=condition)


class Executor:
    """
    Runs instructions on `state`. Forked paths are saved to `path_selection`.
    """

    def __init__(self, state, path_selection, max_address_resolutions=50):
        self.state = state
        self.path_selection = path_selection
        self.max_address_resolutions = max_address_resolutions
        self._frames = []
        self._locals = {}
        # leaf values read by the current operation, and values to hand back
        # instead of reading when a forked operation runs again
        self._reads = []
        self._replay = collections.deque()

    def execute_instruction(self, instruction):
        state = self.state
        state.begin_instruction(instruction)

        operations = instruction.operations
        if state.conditions:
            operations = (_ExecuteIf(state.conditions.popleft()),) + operations

        self._run([_Frame(operations)], {})
        state.end_instruction(instruction)

    def resume(self, continuation):
        """Finish the instruction a forked path was split off in"""
        self._run([f.copy() for f in continuation.frames], dict(continuation.locals), continuation.reads)
        self.state.end_instruction(self.state.current_instruction)

    def _run(self, frames, locals, replay=()):
        self._frames = frames
        self._locals = locals
        replay = collections.deque(replay)
        while frames:
            frame = frames[-1]
            if frame.index >= len(frame.operations):
                frames.pop()
                continue
            operation = frame.operations[frame.index]
            if isinstance(operation, ir.ForEach):
                frame.index += 1
                for operand in reversed(operation.operands):
                    frames.append(_Frame(operation.operations, operand=operand))
                continue
            self._reads = []
            self._replay = replay
            self.execute_operation(operation)
            replay = collections.deque()
            frame.index += 1

    #--------------------------------------------------------------------------
    # FORKING
    #--------------------------------------------------------------------------

    def _fork(self, constraint):
        forked = self.state.copy()
        continuation = Continuation([f.copy() for f in self._frames], dict(self._locals), self._reads)
        l.debug(f"forking with {describeAst(constraint)}")
        self.path_selection.save(Path(forked, constraint, continuation))

    def _decide(self, condition):
        """
        Truth value of `condition` on this path. Forks when both outcomes are
        possible, the current path continues with the condition holding.
        """
        condition = claripy.simplify(condition)
        if claripy.is_true(condition):
            return True
        if claripy.is_false(condition):
            return False

        constraints = self.state.constraints
        can_be_true = constraints.satisfiable(extra_constraints=[condition])
        can_be_false = constraints.satisfiable(extra_constraints=[claripy.Not(condition)])
        if can_be_true and can_be_false:
            self._fork(claripy.Not(condition))
            constraints.add(condition)
            return True
        if can_be_true:
            return True
        if can_be_false:
            return False
        raise PathUnsatisfiable(f"neither {describeAst(condition)} nor its negation can hold")

    def resolve_address(self, addr):
        """
        Make `addr` concrete if it has a bounded number of solutions, forking
        one path per additional solution.
        """
        if get_constant(addr) is not None:
            return addr

        candidates = self.state.memory.resolve_addresses(addr, self.max_address_resolutions)
        if not candidates:
            raise PathUnsatisfiable(f"no address satisfies {describeAst(addr)}")
        if len(candidates) == 1:
            if candidates[0] is not addr:
                self.state.constraints.add(addr == candidates[0])
            return candidates[0]

        l.debug(f"{describeAst(addr)} resolves to {len(candidates)} addresses")
        for candidate in candidates[1:]:
            self._fork(addr == candidate)
        self.state.constraints.add(addr == candidates[0])
        return candidates[0]

    #--------------------------------------------------------------------------
    # OPERANDS
    #--------------------------------------------------------------------------

    def _bind(self, operand):
        if isinstance(operand, ir.Local) and operand.name == ir.CURRENT_OPERAND:
            for frame in reversed(self._frames):
                if frame.operand is not None:
                    return frame.operand
            raise InvalidOperand(f"{ir.CURRENT_OPERAND} used outside of a ForEach")
        return operand

    def _memory_address(self, operand):
        ptr_size = self.state.project.ptr_size
        if isinstance(operand, ir.Address):
            return claripy.BVV(operand.address.value, ptr_size), operand.bits
        if isinstance(operand, ir.AddressWithOffset):
            offset = self._read(self.state.get_register, operand.offset_reg)
            addr = claripy.BVV(operand.address.value, ptr_size) + resize(offset, ptr_size)
            return self.resolve_address(addr), operand.width
        if isinstance(operand, ir.AddressInLocal):
            addr = resize(self._get_local(operand.name), ptr_size)
            return self.resolve_address(addr), operand.bits
        raise InvalidOperand(f"{operand} is not a memory operand")

    def _get_local(self, name):
        try:
            return self._locals[name]
        except KeyError:
            raise InvalidOperand(f"Local {name} read before it was written") from None

    def _read(self, load, *args):
        # replayed values are recorded again so a second fork keeps the full prefix
        value = self._replay.popleft() if self._replay else load(*args)
        self._reads.append(value)
        return value

    def get_operand_value(self, operand):
        operand = self._bind(operand)
        if isinstance(operand, ir.Register):
            return self._read(self.state.get_register, operand.name)
        if isinstance(operand, ir.Immediate):
            return claripy.BVV(operand.word.value, operand.word.bits)
        if isinstance(operand, ir.Local):
            return self._get_local(operand.name)
        if isinstance(operand, ir.Flag):
            return self._read(self.state.get_flag, operand.name)
        if operand.is_memory:
            addr, bits = self._memory_address(operand)
            return self._read(self.state.read_memory, addr, bits)
        raise InvalidOperand(f"Can not read {operand}")

    def set_operand_value(self, operand, value):
        operand = self._bind(operand)
        if isinstance(operand, ir.Register):
            self.state.set_register(operand.name, value)
        elif isinstance(operand, ir.Local):
            self._locals[operand.name] = value
        elif isinstance(operand, ir.Flag):
            self.state.set_flag(operand.name, value)
        elif operand.is_memory:
            addr, bits = self._memory_address(operand)
            self.state.write_memory(addr, resize(value, bits))
        else:
            raise InvalidOperand(f"Can not write to {operand}")

    def _operands(self, operand1, operand2):
        """Values of both operands, the narrower one zero extended"""
        a = self.get_operand_value(operand1)
        b = self.get_operand_value(operand2)
        width = max(len(a), len(b))
        return resize(a, width), resize(b, width)

    #--------------------------------------------------------------------------
    # CONDITIONS
    #--------------------------------------------------------------------------

    def _flag_set(self, name):
        return self.state.get_flag(name) == 1

    def condition(self, condition):
        """claripy Bool for an ARM style condition over the N, Z, C and V flags"""
        if condition is ir.Condition.NONE:
            return claripy.BoolV(True)
        if condition in (ir.Condition.EQ, ir.Condition.NE):
            result = self._flag_set("Z")
        elif condition in (ir.Condition.CS, ir.Condition.CC):
            result = self._flag_set("C")
        elif condition in (ir.Condition.MI, ir.Condition.PL):
            result = self._flag_set("N")
        elif condition in (ir.Condition.VS, ir.Condition.VC):
            result = self._flag_set("V")
        elif condition in (ir.Condition.HI, ir.Condition.LS):
            result = claripy.And(self._flag_set("C"), claripy.Not(self._flag_set("Z")))
        elif condition in (ir.Condition.GE, ir.Condition.LT):
            result = self.state.get_flag("N") == self.state.get_flag("V")
        elif condition in (ir.Condition.GT, ir.Condition.LE):
            result = claripy.And(claripy.Not(self._flag_set("Z")),
                                 self.state.get_flag("N") == self.state.get_flag("V"))
        else:
            raise InvalidOperand(f"Unknown condition {condition}")

        if condition in (ir.Condition.NE, ir.Condition.CC, ir.Condition.PL, ir.Condition.VC,
                         ir.Condition.LS, ir.Condition.LT, ir.Condition.LE):
            return claripy.Not(result)
        return result

    #--------------------------------------------------------------------------
    # OPERATIONS
    #--------------------------------------------------------------------------

    def execute_operation(self, operation):
        handler = _HANDLERS.get(type(operation))
        if handler is None:
            raise InvalidOperand(f"Unsupported operation {operation}")
        handler(self, operation)

    def _nop(self, operation):
        pass

    def _move(self, operation):
        self.set_operand_value(operation.destination, self.get_operand_value(operation.source))

    def _binary(self, operation):
        a, b = self._operands(operation.operand1, operation.operand2)
        width = len(a)
        zero = claripy.BVV(0, width)
        kind = type(operation)
        if kind is ir.Add:
            result = a + b
        elif kind is ir.Adc:
            result = a + b + self.state.get_flag("C").zero_extend(width - 1)
        elif kind is ir.Sub:
            result = a - b
        elif kind is ir.Mul:
            result = a * b
        elif kind is ir.SDiv:
            result = claripy.If(b == zero, zero, a.SDiv(self._divisor(b)))
        elif kind is ir.UDiv:
            result = claripy.If(b == zero, zero, a // self._divisor(b))
        elif kind is ir.And:
            result = a & b
        elif kind is ir.Or:
            result = a | b
        else:
            result = a ^ b
        self.set_operand_value(operation.destination, result)

    @staticmethod
    def _divisor(b):
        # division by zero yields zero, the divisor itself must never be zero
        return claripy.If(b == 0, claripy.BVV(1, len(b)), b)

    def _not(self, operation):
        self.set_operand_value(operation.destination, ~self.get_operand_value(operation.operand))

    def _shifted(self, value, shift, shift_t):
        width = len(value)
        if shift_t is ir.Shift.RRX:
            carry = self.state.get_flag("C").zero_extend(width - 1)
            return (carry << (width - 1)) | claripy.LShR(value, 1)
        shift = resize(shift, width)
        if shift_t is ir.Shift.LSL:
            return value << shift
        if shift_t is ir.Shift.LSR:
            return claripy.LShR(value, shift)
        if shift_t is ir.Shift.ASR:
            return value >> shift
        return claripy.RotateRight(value, shift)

    def _shift(self, operation):
        value = self.get_operand_value(operation.operand)
        shift = self.get_operand_value(operation.shift_n)
        self.set_operand_value(operation.destination, self._shifted(value, shift, operation.shift_t))

    def _shift_by(self, operation):
        value = self.get_operand_value(operation.operand)
        shift = self.get_operand_value(operation.shift)
        self.set_operand_value(operation.destination, self._shifted(value, shift, _SHIFT_KINDS[type(operation)]))

    def _extend(self, operation):
        value = self.get_operand_value(operation.operand)
        bits = operation.bits
        if isinstance(operation, ir.Resize):
            result = resize(value, bits)
        else:
            word = self.state.word_size
            low = resize(value, bits)
            if bits >= word:
                result = resize(low, word)
            elif isinstance(operation, ir.SignExtend):
                result = low.sign_extend(word - bits)
            else:
                result = low.zero_extend(word - bits)
        self.set_operand_value(operation.destination, result)

    def _count(self, operation):
        value = self.get_operand_value(operation.operand)
        width = len(value)
        kind = type(operation)
        if kind in (ir.CountOnes, ir.CountZeroes):
            ones = claripy.BVV(0, width)
            for i in range(width):
                ones = ones + value[i:i].zero_extend(width - 1)
            result = ones if kind is ir.CountOnes else claripy.BVV(width, width) - ones
        else:
            if kind is ir.CountLeadingOnes:
                value = ~value
            # the highest set bit is the last, outermost choice
            result = claripy.BVV(width, width)
            for i in range(width):
                result = claripy.If(value[i:i] == 1, claripy.BVV(width - 1 - i, width), result)
        self.set_operand_value(operation.destination, result)

    def _conditional_jump(self, operation):
        if self._decide(self.condition(operation.condition)):
            destination = self.get_operand_value(operation.destination)
            l.debug(f"jumping to {describeAst(destination)}")
            self.state.set_register("PC", destination)

    def _execute_if(self, operation):
        if not self._decide(self.condition(operation.condition)):
            l.debug(f"condition {operation.condition} does not hold, skipping instruction")
            self._frames.clear()

    def _conditional_execution(self, operation):
        self.state.conditions.extend(operation.conditions)

    #--------------------------------------------------------------------------
    # FLAGS
    #--------------------------------------------------------------------------

    def _set_n(self, operation):
        value = self.get_operand_value(operation.operand)
        self.state.set_flag("N", value[len(value) - 1:len(value) - 1])

    def _set_z(self, operation):
        value = self.get_operand_value(operation.operand)
        self.state.set_flag("Z", bool_to_bv(value == 0))

    def _add_operands(self, operation):
        a, b = self._operands(operation.operand1, operation.operand2)
        if operation.sub:
            b = ~b
        if operation.carry:
            carry_in = self.state.get_flag("C")
        else:
            carry_in = claripy.BVV(1 if operation.sub else 0, 1)
        return a, b, carry_in

    def _set_c(self, operation):
        a, b, carry_in = self._add_operands(operation)
        width = len(a)
        total = a.zero_extend(1) + b.zero_extend(1) + carry_in.zero_extend(width)
        self.state.set_flag("C", total[width:width])

    def _set_v(self, operation):
        a, b, carry_in = self._add_operands(operation)
        width = len(a)
        result = a + b + carry_in.zero_extend(width - 1)
        sign = width - 1
        overflow = claripy.And(a[sign:sign] == b[sign:sign], result[sign:sign] != a[sign:sign])
        self.state.set_flag("V", bool_to_bv(overflow))

    def _set_c_shift(self, operation):
        value = self.get_operand_value(operation.operand)
        width = len(value)
        shift = resize(self.get_operand_value(operation.shift), width)
        one = claripy.BVV(1, width)
        kind = type(operation)
        if kind is ir.SetCFlagShiftLeft:
            shifted = claripy.LShR(value, claripy.BVV(width, width) - shift)
        elif kind is ir.SetCFlagSrl:
            shifted = claripy.LShR(value, shift - one)
        else:
            shifted = value >> (shift - one)
        carry = claripy.If(shift == 0, self.state.get_flag("C"), shifted[0:0])
        self.state.set_flag("C", carry)

    def _set_c_ror(self, operation):
        value = self.get_operand_value(operation.operand)
        self.state.set_flag("C", value[len(value) - 1:len(value) - 1])


_SHIFT_KINDS = {
    ir.Sl: ir.Shift.LSL,
    ir.Srl: ir.Shift.LSR,
    ir.Sra: ir.Shift.ASR,
    ir.Sror: ir.Shift.ROR,
}

_HANDLERS = {
    ir.Nop: Executor._nop,
    ir.Move: Executor._move,
    ir.Not: Executor._not,
    ir.ShiftOperation: Executor._shift,
    ir.ConditionalJump: Executor._conditional_jump,
    ir.ConditionalExecution: Executor._conditional_execution,
    ir.SetNFlag: Executor._set_n,
    ir.SetZFlag: Executor._set_z,
    ir.SetCFlag: Executor._set_c,
    ir.SetVFlag: Executor._set_v,
    ir.SetCFlagShiftLeft: Executor._set_c_shift,
    ir.SetCFlagSrl: Executor._set_c_shift,
    ir.SetCFlagSra: Executor._set_c_shift,
    ir.SetCFlagRor: Executor._set_c_ror,
    _ExecuteIf: Executor._execute_if,
}
for _kind in (ir.Add, ir.Adc, ir.Sub, ir.Mul, ir.SDiv, ir.UDiv, ir.And, ir.Or, ir.Xor):
    _HANDLERS[_kind] = Executor._binary
for _kind in _SHIFT_KINDS:
    _HANDLERS[_kind] = Executor._shift_by
for _kind in (ir.ZeroExtend, ir.SignExtend, ir.Resize):
    _HANDLERS[_kind] = Executor._extend
for _kind in (ir.CountOnes, ir.CountZeroes, ir.CountLeadingOnes, ir.CountLeadingZeroes):
    _HANDLERS[_kind] = Executor._count
