"""
The loaded program image.

A Project is built once per run. It holds the static (read-only) memory of the
binary, the symbol table, word size and endianness, the target architecture
and the normalized hook table. It is never modified after construction.
"""
import enum
import logging

import angr
import pydemumble
from cle.address_translator import AT
from elftools.common.exceptions import ELFError
from elftools.elf.elffile import ELFFile

from gasymex.core.arch import Arch, read_arm_attributes
from gasymex.core.errors import UnableToParseElf, OutOfBounds, MissingSection
from gasymex.core.ir import DataWord
from gasymex.core.run_config import HookTable

l = logging.getLogger(name=__name__)


class Endianness(enum.Enum):
    LITTLE = "little"
    BIG = "big"

    @property
    def is_little(self):
        return self is Endianness.LITTLE

    @property
    def byteorder(self):
        return self.value

class WordSize(enum.IntEnum):
    BIT64 = 64
    BIT32 = 32
    BIT16 = 16
    BIT8 = 8


class Segment:
    """A contiguous block of memory loaded from the binary"""

    def __init__(self, data, start_address, writable=False):
        self.data = bytes(data)
        self.start_address = start_address
        self.end_address = start_address + len(self.data)
        self.writable = writable

    def contains(self, address, length=1):
        return self.start_address <= address and address + length <= self.end_address

    def read(self, address, length):
        offset = address - self.start_address
        return self.data[offset:offset + length]

    def __repr__(self):
        kind = "rw" if self.writable else "ro"
        return f"<Segment {kind} {self.start_address:#x}-{self.end_address:#x}>"


class Project:
    """
    Immutable program image.

    Args:
        segments: Loaded Segments. Non-writable segments form the static memory,
            writable ones only provide initial values
        word_size: WordSize of the target
        endianness: Endianness of the target
        arch: Target Arch
        symtab: Dict of symbol name -> address
        hooks: HookTable built from a RunConfig (empty table if None)
    """

    def __init__(self, segments, word_size, endianness, arch, symtab, hooks=None):
        self.segments = list(segments)
        self.word_size = WordSize(word_size)
        self.endianness = endianness
        self.arch = arch
        self.symtab = dict(symtab)
        self.hooks = hooks if hooks is not None else HookTable()
        self._static = [s for s in self.segments if not s.writable]

    @classmethod
    def from_path(cls, path, cfg):
        """
        Load an ELF file. The architecture is detected from the binary, its
        default hooks are added to `cfg` and all hooks are normalized against
        the symbol table.
        """
        l.debug(f"Parsing elf file: {path}")
        try:
            proj = angr.Project(path, auto_load_libs=False)
        except Exception as e:
            raise UnableToParseElf(f"{path}: {e}") from e

        obj = proj.loader.main_object
        endianness = Endianness.LITTLE if proj.arch.memory_endness == 'Iend_LE' else Endianness.BIG
        word_size = WordSize(proj.arch.bits)

        with open(path, 'rb') as f:
            try:
                attributes = read_arm_attributes(ELFFile(f))
            except ELFError as e:
                raise UnableToParseElf(f"{path}: {e}") from e
        arch = Arch.from_attributes(attributes, decoder=cfg.decoder)

        segments = _load_segments(proj)
        symtab = _load_symbols(obj, is_arm=proj.arch.name.startswith('ARM'))

        arch.add_hooks(cfg)
        hooks = HookTable.build(cfg, symtab)
        project = cls(segments, word_size, endianness, arch, symtab, hooks)
        l.debug(f"Created project: {project}")
        return project

    def __repr__(self):
        return (f"Project(segments={self.segments}, word_size={int(self.word_size)}, "
                f"endianness={self.endianness.value}, arch={self.arch})")

    #--------------------------------------------------------------------------
    # GEOMETRY
    #--------------------------------------------------------------------------

    @property
    def ptr_size(self):
        # Oversimplification, but holds for the supported targets
        return int(self.word_size)

    @property
    def static_segments(self):
        return list(self._static)

    def address_in_range(self, address):
        """True if `address` lies in the static (read-only) program memory"""
        return any(s.contains(address) for s in self._static)

    def get_symbol_address(self, symbol):
        """Address of `symbol` or None"""
        return self.symtab.get(symbol)

    #--------------------------------------------------------------------------
    # STATIC MEMORY READS
    #--------------------------------------------------------------------------

    def get_raw_bytes(self, address, length):
        """
        Up to `length` bytes of static memory starting at `address`, cut at the
        end of the containing segment.
        """
        for segment in self._static:
            if segment.contains(address):
                return segment.read(address, length)
        raise OutOfBounds(address)

    def _read(self, address, num_bytes):
        for segment in self._static:
            if segment.contains(address, num_bytes):
                return int.from_bytes(segment.read(address, num_bytes), self.endianness.byteorder)
        raise OutOfBounds(address)

    def get_byte(self, address):
        return DataWord(self._read(address, 1), 8)

    def get_half_word(self, address):
        bits = self.ptr_size // 2
        if bits < 8:
            raise OutOfBounds(address)
        return DataWord(self._read(address, bits // 8), bits)

    def get_word(self, address):
        bits = self.ptr_size
        return DataWord(self._read(address, bits // 8), bits)

    def initial_byte(self, address):
        """Initial content of any loaded byte (static or data), None when not loaded"""
        for segment in self.segments:
            if segment.contains(address):
                return segment.data[address - segment.start_address]
        return None

    def initial_bytes(self, low, high):
        """(address, byte) for every loaded byte in [low, high], in address order"""
        for segment in sorted(self.segments, key=lambda s: s.start_address):
            start = max(low, segment.start_address)
            end = min(high + 1, segment.end_address)
            for address in range(start, end):
                yield address, segment.data[address - segment.start_address]


def _load_segments(proj):
    obj = proj.loader.main_object
    segments = []
    for seg in obj.segments:
        if seg.filesize == 0:
            continue
        address = AT.from_lva(seg.vaddr, obj).to_mva()
        data = proj.loader.memory.load(address, seg.filesize)
        segments.append(Segment(data, address, writable=seg.is_writable))
    if not segments:
        # relocatable objects have no program headers, fall back to .text
        text = obj.sections_map.get('.text')
        if text is None:
            raise MissingSection('.text')
        address = AT.from_lva(text.vaddr, obj).to_mva()
        segments.append(Segment(proj.loader.memory.load(address, text.memsize), address))
    l.debug(f"Loaded segments {segments}")
    return segments

def _load_symbols(obj, is_arm):
    symtab = {}
    for symbol in obj.symbols:
        if not symbol.name:
            continue
        address = symbol.rebased_addr
        if is_arm and symbol.is_function:
            # thumb functions have the lowest bit set
            address &= ~1
        symtab[symbol.name] = address
        demangled = pydemumble.demangle(symbol.name)
        if demangled and demangled != symbol.name:
            symtab.setdefault(demangled, address)
    return symtab
