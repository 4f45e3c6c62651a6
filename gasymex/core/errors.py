"""
Error taxonomy for symbolic execution runs.

Setup errors abort the whole run. Path errors abort only the path that raised
them and are reported as a failed path. PathUnsatisfiable is not an error from
the user's point of view: the path is pruned.
"""


class GASymError(Exception):
    """Base class for all errors raised by gasymex"""
    pass

#------------------------------------------------------------------------------
# SETUP ERRORS (fatal for the run)
#------------------------------------------------------------------------------

class SetupError(GASymError):
    pass

class UnableToParseElf(SetupError):
    def __init__(self, reason):
        super().__init__(f"Unable to parse elf file: {reason}")
        self.reason = reason

class MissingSection(SetupError):
    def __init__(self, section):
        super().__init__(f"Elf file missing critical section {section}.")
        self.section = section

class UnsupportedArchitecture(SetupError):
    def __init__(self, detail=None):
        message = "Tried to execute code for an unsupported architecture"
        if detail is not None:
            message += f" ({detail})"
        super().__init__(message)

class EntryFunctionNotFound(SetupError):
    def __init__(self, function):
        super().__init__(f"Entry function {function} not found.")
        self.function = function

#------------------------------------------------------------------------------
# PATH ERRORS (fatal for one path only)
#------------------------------------------------------------------------------

class PathError(GASymError):
    pass

class DecodeError(PathError):
    """
    Raised by decoders when the bytes at PC can not be turned into an Instruction.
    """
    INSUFFICIENT_INPUT = "Insufficient input"
    MALFORMED_INSTRUCTION = "Tried to parse a malformed instruction."
    INVALID_INSTRUCTION = "Instruction not supported in the parser."
    UNPREDICTABLE = "Instruction defined as unpredictable."
    INVALID_REGISTER = "Parser encountered an invalid register."
    INVALID_CONDITION = "Parser encountered an invalid condition."

    def __init__(self, kind, address=None):
        message = kind if address is None else f"{kind} (at {address:#x})"
        super().__init__(message)
        self.kind = kind
        self.address = address

class MemoryAccessError(PathError):
    pass

class OutOfBounds(MemoryAccessError):
    def __init__(self, address):
        super().__init__(f"Memory access out of bounds at {address:#x}")
        self.address = address

class WritingToStaticMemoryProhibited(PathError):
    """Write to the read-only program image. Kept apart from MemoryAccessError."""
    def __init__(self, address):
        super().__init__(f"Writing to static memory not permitted (address {address:#x}).")
        self.address = address

class SymbolicProgramCounter(PathError):
    def __init__(self, pc):
        super().__init__(f"Program counter is symbolic: {pc}")
        self.pc = pc

class InvalidOperand(PathError):
    pass

class InstructionLimitReached(PathError):
    def __init__(self, limit):
        super().__init__(f"Instruction limit of {limit} reached")
        self.limit = limit

#------------------------------------------------------------------------------
# PRUNING
#------------------------------------------------------------------------------

class PathUnsatisfiable(GASymError):
    """
    The constraints of the current path can not be satisfied any more.
    The scheduler turns this into an AssumptionUnsat result.
    """
    pass
