import struct

import pytest

from gasymex.core.arch import Arch, ArchKind
from gasymex.core.errors import DecodeError
from gasymex.core.executor import Executor
from gasymex.core.machine_state import State
from gasymex.core.path_selection import DFSPathSelection
from gasymex.core.project import Project, Segment, Endianness, WordSize
from gasymex.core.run_config import RunConfig, HookTable

CODE_START = 0x1000
RAM_START = 0x20000000
ELF_TEXT = 0x8000


class TableDecoder:
    """Decoder that looks the instruction up by PC instead of parsing bytes"""

    def __init__(self, program):
        self.program = program

    def __call__(self, data, state):
        try:
            return self.program[state.pc]
        except KeyError:
            raise DecodeError(DecodeError.INVALID_INSTRUCTION, state.pc) from None


def make_project(program=None, symtab=None, cfg=None, segments=None,
                 kind=ArchKind.ARMV6M, endianness=Endianness.LITTLE):
    """
    Project with 0x200 bytes of zeroed static memory at CODE_START and the
    instructions of `program` (pc -> Instruction) served by a TableDecoder.
    """
    cfg = cfg if cfg is not None else RunConfig()
    arch = Arch(kind, decoder=TableDecoder(program or {}))
    arch.add_hooks(cfg)
    symtab = symtab if symtab is not None else {"test": CODE_START}
    if segments is None:
        segments = [Segment(bytes(0x200), CODE_START)]
    return Project(segments, WordSize.BIT32, endianness, arch, symtab, HookTable.build(cfg, symtab))


def const(state, value):
    """The single value `value` can take on the path of `state`"""
    solutions = state.constraints.eval(value, 2)
    assert len(solutions) == 1, f"{value} is not determined: {solutions}"
    return solutions[0]


@pytest.fixture
def cfg():
    return RunConfig()

@pytest.fixture
def project(cfg):
    return make_project(cfg=cfg)

@pytest.fixture
def state(project, cfg):
    return State.create(project, cfg, "test")

@pytest.fixture
def paths():
    return DFSPathSelection()

@pytest.fixture
def executor(state, paths):
    return Executor(state, paths)


#------------------------------------------------------------------------------
# ELF FILES
#------------------------------------------------------------------------------

def arm_attributes(cpu_arch, cpu_name="Cortex-M0"):
    """.ARM.attributes contents with a file scope TAG_CPU_NAME and TAG_CPU_ARCH"""
    body = bytes([5]) + cpu_name.encode() + b"\0" + bytes([6, cpu_arch])
    file_scope = bytes([1]) + struct.pack("<I", 5 + len(body)) + body
    vendor = b"aeabi\0"
    return b"A" + struct.pack("<I", 4 + len(vendor) + len(file_scope)) + vendor + file_scope

def build_elf(code, symbols, attributes, relocatable=False):
    """
    Bytes of a little endian 32-bit ARM ELF file with `code` in .text, the
    given .ARM.attributes contents and a symbol table of thumb functions
    (name -> address). Executables load .text at ELF_TEXT through a single
    program header, relocatable objects have no program headers.
    """
    shstrtab = b"\0.text\0.ARM.attributes\0.symtab\0.strtab\0.shstrtab\0"
    def section_name(name):
        return shstrtab.index(name.encode() + b"\0")

    text_address = 0 if relocatable else ELF_TEXT
    strtab = b"\0"
    symtab = bytes(16)
    for (name, address) in symbols.items():
        # STB_GLOBAL, STT_FUNC, defined in .text
        symtab += struct.pack("<IIIBBH", len(strtab), address | 1, 2, 0x12, 0, 1)
        strtab += name.encode() + b"\0"

    def align(offset):
        return (offset + 3) & ~3

    text_offset = 0x100
    attributes_offset = align(text_offset + len(code))
    symtab_offset = align(attributes_offset + len(attributes))
    strtab_offset = symtab_offset + len(symtab)
    shstrtab_offset = strtab_offset + len(strtab)
    headers_offset = align(shstrtab_offset + len(shstrtab))

    section_headers = [
        bytes(40),
        struct.pack("<10I", section_name(".text"), 1, 0x6, text_address, text_offset, len(code), 0, 0, 4, 0),
        struct.pack("<10I", section_name(".ARM.attributes"), 0x70000003, 0, 0, attributes_offset,
                    len(attributes), 0, 0, 1, 0),
        struct.pack("<10I", section_name(".symtab"), 2, 0, 0, symtab_offset, len(symtab), 4, 1, 4, 16),
        struct.pack("<10I", section_name(".strtab"), 3, 0, 0, strtab_offset, len(strtab), 0, 0, 1, 0),
        struct.pack("<10I", section_name(".shstrtab"), 3, 0, 0, shstrtab_offset, len(shstrtab), 0, 0, 1, 0),
    ]

    ident = b"\x7fELF" + bytes([1, 1, 1, 0]) + bytes(8)
    header = ident + struct.pack("<HHIIIIIHHHHHH",
                                 1 if relocatable else 2,  # ET_REL / ET_EXEC
                                 40,                       # EM_ARM
                                 1,
                                 0 if relocatable else text_address | 1,
                                 0 if relocatable else 52,
                                 headers_offset,
                                 0x05000200,               # EABI5, soft float
                                 52, 32, 0 if relocatable else 1, 40, len(section_headers), 5)
    program_header = b"" if relocatable else struct.pack(
        "<8I", 1, text_offset, text_address, text_address, len(code), len(code), 0x5, 4)

    image = bytearray(headers_offset + 40 * len(section_headers))
    image[0:len(header)] = header
    image[len(header):len(header) + len(program_header)] = program_header
    for (offset, data) in ((text_offset, code), (attributes_offset, attributes), (symtab_offset, symtab),
                           (strtab_offset, strtab), (shstrtab_offset, shstrtab)):
        image[offset:offset + len(data)] = data
    image[headers_offset:] = b"".join(section_headers)
    return bytes(image)
