"""
Architecture independent instruction representation ("general assembly").

Decoders translate machine code into Instructions made of the Operations
defined here. Operands describe where a value lives, never the value itself.
"""
import collections
import enum


class DataWord(collections.namedtuple('DataWord', ['value', 'bits'])):
    """
    Width tagged immediate word.
    """
    __slots__ = ()

    def __new__(cls, value, bits=32):
        if bits not in (8, 16, 32, 64):
            raise ValueError(f"Unsupported data word width {bits}")
        return super().__new__(cls, value & ((1 << bits) - 1), bits)

    def __int__(self):
        return self.value

    def to_bytes(self, endianness):
        return self.value.to_bytes(self.bits // 8, endianness.byteorder)

def word8(value):
    return DataWord(value, 8)

def word16(value):
    return DataWord(value, 16)

def word32(value):
    return DataWord(value, 32)

def word64(value):
    return DataWord(value, 64)


class _Node:
    """Value-like base class: equality, hashing and repr come from `_fields`."""
    __slots__ = ()
    _fields = ()

    def _values(self):
        return tuple(getattr(self, f) for f in self._fields)

    def __eq__(self, other):
        return type(self) is type(other) and self._values() == other._values()

    def __hash__(self):
        return hash((type(self).__name__,) + tuple(_hashable(v) for v in self._values()))

    def __repr__(self):
        args = ", ".join(f"{f}={getattr(self, f)!r}" for f in self._fields)
        return f"{type(self).__name__}({args})"

def _hashable(value):
    if isinstance(value, list):
        return tuple(_hashable(v) for v in value)
    return value

#------------------------------------------------------------------------------
# OPERANDS
#------------------------------------------------------------------------------

class Operand(_Node):
    __slots__ = ()

    def __setattr__(self, name, value):
        raise AttributeError(f"{type(self).__name__} is immutable")

    def _init(self, **fields):
        for name, value in fields.items():
            object.__setattr__(self, name, value)

    @property
    def is_memory(self):
        return False

class Register(Operand):
    __slots__ = ('name',)
    _fields = ('name',)

    def __init__(self, name):
        self._init(name=name)

class Immediate(Operand):
    __slots__ = ('word',)
    _fields = ('word',)

    def __init__(self, word):
        if not isinstance(word, DataWord):
            word = DataWord(word)
        self._init(word=word)

class AddressInLocal(Operand):
    """`bits` bits of memory at the address held by local `name`"""
    __slots__ = ('name', 'bits')
    _fields = ('name', 'bits')

    def __init__(self, name, bits):
        self._init(name=name, bits=bits)

    @property
    def is_memory(self):
        return True

class Address(Operand):
    """`bits` bits of memory at a constant address"""
    __slots__ = ('address', 'bits')
    _fields = ('address', 'bits')

    def __init__(self, address, bits):
        if not isinstance(address, DataWord):
            address = DataWord(address)
        self._init(address=address, bits=bits)

    @property
    def is_memory(self):
        return True

class AddressWithOffset(Operand):
    """`width` bits of memory at `address` plus the value of register `offset_reg`"""
    __slots__ = ('address', 'offset_reg', 'width')
    _fields = ('address', 'offset_reg', 'width')

    def __init__(self, address, offset_reg, width):
        if not isinstance(address, DataWord):
            address = DataWord(address)
        self._init(address=address, offset_reg=offset_reg, width=width)

    @property
    def is_memory(self):
        return True

class Local(Operand):
    """Value local to the executing instruction"""
    __slots__ = ('name',)
    _fields = ('name',)

    def __init__(self, name):
        self._init(name=name)

class Flag(Operand):
    __slots__ = ('name',)
    _fields = ('name',)

    def __init__(self, name):
        self._init(name=name)

# Inside a ForEach body this local names the operand of the current iteration.
CURRENT_OPERAND = "CurrentOperand"

#------------------------------------------------------------------------------
# CONDITIONS AND SHIFTS
#------------------------------------------------------------------------------

class Condition(enum.Enum):
    EQ = "eq"   # Z = 1
    NE = "ne"   # Z = 0
    CS = "cs"   # C = 1
    CC = "cc"   # C = 0
    MI = "mi"   # N = 1
    PL = "pl"   # N = 0
    VS = "vs"   # V = 1
    VC = "vc"   # V = 0
    HI = "hi"   # C = 1 and Z = 0
    LS = "ls"   # C = 0 or Z = 1
    GE = "ge"   # N = V
    LT = "lt"   # N != V
    GT = "gt"   # Z = 0 and N = V
    LE = "le"   # Z = 1 or N != V
    NONE = "none"

class Shift(enum.Enum):
    LSL = "lsl"
    LSR = "lsr"
    ASR = "asr"
    RRX = "rrx"
    ROR = "ror"

#------------------------------------------------------------------------------
# OPERATIONS
#------------------------------------------------------------------------------

class Operation(_Node):
    __slots__ = ()

    def __init__(self, **fields):
        for name in self._fields:
            setattr(self, name, fields[name])

class Nop(Operation):
    __slots__ = ()

    def __init__(self):
        pass

class Move(Operation):
    __slots__ = _fields = ('destination', 'source')

    def __init__(self, destination, source):
        super().__init__(destination=destination, source=source)

class _BinaryOperation(Operation):
    """destination = operand1 <op> operand2"""
    __slots__ = _fields = ('destination', 'operand1', 'operand2')

    def __init__(self, destination, operand1, operand2):
        super().__init__(destination=destination, operand1=operand1, operand2=operand2)

class Add(_BinaryOperation):
    __slots__ = ()

class Adc(_BinaryOperation):
    """destination = operand1 + operand2 + C"""
    __slots__ = ()

class Sub(_BinaryOperation):
    __slots__ = ()

class Mul(_BinaryOperation):
    __slots__ = ()

class SDiv(_BinaryOperation):
    """Signed division, division by zero yields zero"""
    __slots__ = ()

class UDiv(_BinaryOperation):
    """Unsigned division, division by zero yields zero"""
    __slots__ = ()

class And(_BinaryOperation):
    __slots__ = ()

class Or(_BinaryOperation):
    __slots__ = ()

class Xor(_BinaryOperation):
    __slots__ = ()

class Not(Operation):
    __slots__ = _fields = ('destination', 'operand')

    def __init__(self, destination, operand):
        super().__init__(destination=destination, operand=operand)

class ShiftOperation(Operation):
    """General shift or rotation selected by `shift_t`"""
    __slots__ = _fields = ('destination', 'operand', 'shift_n', 'shift_t')

    def __init__(self, destination, operand, shift_n, shift_t):
        super().__init__(destination=destination, operand=operand, shift_n=shift_n, shift_t=shift_t)

class _ShiftBy(Operation):
    __slots__ = _fields = ('destination', 'operand', 'shift')

    def __init__(self, destination, operand, shift):
        super().__init__(destination=destination, operand=operand, shift=shift)

class Sl(_ShiftBy):
    __slots__ = ()

class Srl(_ShiftBy):
    __slots__ = ()

class Sra(_ShiftBy):
    __slots__ = ()

class Sror(_ShiftBy):
    __slots__ = ()

class _Extend(Operation):
    __slots__ = _fields = ('destination', 'operand', 'bits')

    def __init__(self, destination, operand, bits):
        super().__init__(destination=destination, operand=operand, bits=bits)

class ZeroExtend(_Extend):
    """Zero extends the low `bits` bits of operand to a machine word"""
    __slots__ = ()

class SignExtend(_Extend):
    """Sign extends the low `bits` bits of operand to a machine word"""
    __slots__ = ()

class Resize(_Extend):
    """Truncates or zero extends operand to `bits` bits"""
    __slots__ = ()

class _Count(Operation):
    __slots__ = _fields = ('destination', 'operand')

    def __init__(self, destination, operand):
        super().__init__(destination=destination, operand=operand)

class CountOnes(_Count):
    __slots__ = ()

class CountZeroes(_Count):
    __slots__ = ()

class CountLeadingOnes(_Count):
    __slots__ = ()

class CountLeadingZeroes(_Count):
    __slots__ = ()

class ConditionalJump(Operation):
    __slots__ = _fields = ('destination', 'condition')

    def __init__(self, destination, condition=Condition.NONE):
        super().__init__(destination=destination, condition=condition)

class SetNFlag(Operation):
    __slots__ = _fields = ('operand',)

    def __init__(self, operand):
        super().__init__(operand=operand)

class SetZFlag(Operation):
    __slots__ = _fields = ('operand',)

    def __init__(self, operand):
        super().__init__(operand=operand)

class SetCFlag(Operation):
    """
    Carry out of operand1 + operand2 (+ C when `carry`). With `sub` the
    second operand is inverted, which gives the ARM not-borrow convention.
    """
    __slots__ = _fields = ('operand1', 'operand2', 'sub', 'carry')

    def __init__(self, operand1, operand2, sub=False, carry=False):
        super().__init__(operand1=operand1, operand2=operand2, sub=sub, carry=carry)

class SetVFlag(Operation):
    """Signed overflow of the same computation as SetCFlag"""
    __slots__ = _fields = ('operand1', 'operand2', 'sub', 'carry')

    def __init__(self, operand1, operand2, sub=False, carry=False):
        super().__init__(operand1=operand1, operand2=operand2, sub=sub, carry=carry)

class SetCFlagShiftLeft(Operation):
    __slots__ = _fields = ('operand', 'shift')

    def __init__(self, operand, shift):
        super().__init__(operand=operand, shift=shift)

class SetCFlagSrl(Operation):
    __slots__ = _fields = ('operand', 'shift')

    def __init__(self, operand, shift):
        super().__init__(operand=operand, shift=shift)

class SetCFlagSra(Operation):
    __slots__ = _fields = ('operand', 'shift')

    def __init__(self, operand, shift):
        super().__init__(operand=operand, shift=shift)

class SetCFlagRor(Operation):
    __slots__ = _fields = ('operand',)

    def __init__(self, operand):
        super().__init__(operand=operand)

class ForEach(Operation):
    """
    Run `operations` once per operand in `operands`. The current operand is
    reachable as Local(CURRENT_OPERAND).
    """
    __slots__ = _fields = ('operands', 'operations')

    def __init__(self, operands, operations):
        super().__init__(operands=tuple(operands), operations=tuple(operations))

class ConditionalExecution(Operation):
    """The i:th following instruction only runs if the i:th condition holds."""
    __slots__ = _fields = ('conditions',)

    def __init__(self, conditions):
        super().__init__(conditions=tuple(conditions))

#------------------------------------------------------------------------------
# CYCLE COUNTS AND INSTRUCTIONS
#------------------------------------------------------------------------------

class CycleCount:
    """Maximum number of cycles an instruction takes"""

    def evaluate(self, state):
        raise NotImplementedError()

class Fixed(CycleCount):
    def __init__(self, cycles):
        self.cycles = cycles

    def evaluate(self, state):
        return self.cycles

    def __repr__(self):
        return f"Fixed({self.cycles})"

class Computed(CycleCount):
    """
    Cycle count that depends on the state after the instruction's operations
    ran. `function` receives the state and must not modify it.
    """
    def __init__(self, function):
        self.function = function

    def evaluate(self, state):
        return self.function(state)

    def __repr__(self):
        return f"Computed({getattr(self.function, '__name__', self.function)})"

class Instruction:
    """
    One decoded machine instruction.

    Attributes:
        instruction_size: Size of the machine instruction in bits
        operations: Operations executed in order
        max_cycle: CycleCount evaluated after the operations ran
        memory_access: Whether the instruction touches memory
    """
    __slots__ = ('instruction_size', 'operations', 'max_cycle', 'memory_access')

    def __init__(self, instruction_size, operations, max_cycle, memory_access=False):
        if isinstance(max_cycle, int):
            max_cycle = Fixed(max_cycle)
        self.instruction_size = instruction_size
        self.operations = tuple(operations)
        self.max_cycle = max_cycle
        self.memory_access = memory_access

    def __repr__(self):
        return (f"Instruction(size={self.instruction_size}, operations={list(self.operations)}, "
                f"max_cycle={self.max_cycle})")
