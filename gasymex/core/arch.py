"""
Supported target architectures.

The set of supported ISAs is closed, so an Arch is a tagged value (ArchKind)
and behaviour is selected by matching on the kind. The byte level decoder for
an ISA lives outside this package: it is handed to the Arch as a callable
`decoder(data, state) -> Instruction` that raises DecodeError on bad input.
"""
import enum
import logging

import claripy
from elftools.elf.sections import ARMAttributesSection

from gasymex.core.errors import DecodeError, UnsupportedArchitecture, MissingSection, InvalidOperand, PathUnsatisfiable
from gasymex.core.report import Variable, Integer
from gasymex.core.run_config import Intrinsic, Single
from gasymex.utils import get_constant, describeAst

l = logging.getLogger(name=__name__)

# Peripheral reset status register (RP2040 RESETS.RESET_DONE), reset is always done
RESET_DONE_ADDRESS = 0x4000c008


class ArchKind(enum.Enum):
    ARMV6M = "ARMv6-M"
    ARMV7EM = "ARMv7E-M"

# TAG_CPU_ARCH values from the ARM EABI addenda
_CPU_ARCH = {
    11: ArchKind.ARMV6M,    # v6-M
    12: ArchKind.ARMV6M,    # v6S-M
    13: ArchKind.ARMV7EM,   # v7E-M
}


class Arch:
    """
    A target ISA together with the decoder that translates its machine code.
    """

    def __init__(self, kind, decoder=None):
        self.kind = kind
        self.decoder = decoder

    @classmethod
    def from_attributes(cls, attributes, decoder=None):
        """
        Pick the ISA from the parsed .ARM.attributes section (see read_arm_attributes).
        """
        cpu_arch = attributes.get('TAG_CPU_ARCH')
        kind = _CPU_ARCH.get(cpu_arch)
        if kind is None:
            raise UnsupportedArchitecture(f"TAG_CPU_ARCH={cpu_arch}")
        l.debug(f"Detected {kind.value}")
        return cls(kind, decoder)

    def __repr__(self):
        return f"Arch({self.kind.value})"

    def translate(self, data, state):
        """Translate the bytes at PC into an Instruction"""
        if self.decoder is None:
            raise DecodeError(f"No decoder registered for {self.kind.value}", state.pc)
        instruction = self.decoder(data, state)
        l.debug(f"decoded {instruction}")
        return instruction

    @property
    def return_register(self):
        return "R0"

    def add_hooks(self, cfg):
        """Add the hooks every binary of this ISA needs to `cfg`"""
        if self.kind is ArchKind.ARMV6M:
            _add_arm_hooks(cfg)
        elif self.kind is ArchKind.ARMV7EM:
            _add_arm_hooks(cfg)
            cfg.register_read_hooks.append(("SP&", _read_sp_aligned))
            cfg.register_write_hooks.append(("SP&", _write_sp_aligned))
        else:
            raise UnsupportedArchitecture(self.kind)

#------------------------------------------------------------------------------
# ARM HOOKS
#------------------------------------------------------------------------------

def _add_arm_hooks(cfg):
    cfg.pc_hooks.append((r"^symbolic_size(<.+>)?$", Intrinsic(symbolic_sized)))
    cfg.pc_hooks.append((r"^assume$", Intrinsic(assume)))

    cfg.register_read_hooks.append(("PC+", _read_pc_plus))
    cfg.register_write_hooks.append(("PC+", _write_pc))

    cfg.memory_read_hooks.append((Single(RESET_DONE_ADDRESS), read_reset_done))

def symbolic_sized(state):
    """
    symbolic_size(ptr: R0, size_in_bytes: R1): overwrite *ptr with a fresh
    unconstrained value and return to LR.
    """
    value_ptr = state.get_register("R0")
    size = get_constant(state.get_register("R1"))
    if size is None:
        raise InvalidOperand("symbolic_size called with a symbolic size")
    bits = size * 8
    l.debug(f"trying to create symbolic: addr: {describeAst(value_ptr)}, size: {bits}")

    name = f"any{len(state.marked_symbolic)}"
    value = claripy.BVS(name, bits, explicit_name=True)
    state.marked_symbolic.append(Variable(name, value, Integer(bits)))
    state.write_memory(value_ptr, value)

    state.set_register("PC", state.get_register("LR"))

def assume(state):
    """assume(condition: R0): keep only the executions where condition holds"""
    condition = state.get_register("R0")[7:0] != 0
    if not state.constraints.satisfiable(extra_constraints=[condition]):
        raise PathUnsatisfiable("assumption can not hold")
    state.constraints.add(condition)
    state.set_register("PC", state.get_register("LR"))

def _read_pc_plus(state):
    # PC as seen by the executing instruction: its address plus 4
    pc = state.get_register("PC")
    size = state.current_instruction.instruction_size // 8
    return pc - size + 4

def _write_pc(state, value):
    state.set_register("PC", value)

def _read_sp_aligned(state):
    return state.get_register("SP") & claripy.BVV(~0b11 & 0xFFFFFFFF, 32)

def _write_sp_aligned(state, value):
    state.set_register("SP", value)

def read_reset_done(state, address):
    return claripy.BVV(0xFFFFFFFF, 32)

#------------------------------------------------------------------------------
# .ARM.attributes
#------------------------------------------------------------------------------

def read_arm_attributes(elf):
    """
    File scope "aeabi" attributes of an ELFFile's .ARM.attributes section.

    Returns a dict of tag name (e.g. 'TAG_CPU_ARCH') -> value.
    """
    section = elf.get_section_by_name('.ARM.attributes')
    if section is None:
        raise MissingSection('.ARM.attributes')
    if not isinstance(section, ARMAttributesSection):
        raise UnsupportedArchitecture(f".ARM.attributes has section type {section['sh_type']}")

    attributes = {}
    for subsection in section.iter_subsections('aeabi'):
        for subsubsection in subsection.iter_subsubsections('TAG_FILE'):
            for attribute in subsubsection.iter_attributes():
                attributes[attribute.tag] = attribute.value
    l.debug(f"ARM attributes: {attributes}")
    return attributes
