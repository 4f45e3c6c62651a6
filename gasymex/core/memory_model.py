"""
Byte addressable symbolic memory.

Every value is stored as individual bytes. Multi byte writes split the value
into bytes, multi byte reads concatenate them again according to the configured
endianness. Bytes written at concrete addresses live in a dict; bytes written
at addresses the solver could not enumerate are kept in an ordered log and
folded into reads with if-then-else chains.

Memory that was never written holds the loaded program image where there is
one. Everywhere else it holds unconstrained bytes, created lazily per address
expression and kept in creation order. When two of those addresses turn out to
be equal the byte created first is the content of both, so every read of the
same location agrees whether its address was concrete or symbolic.
"""
import itertools
import logging

import claripy

from gasymex.core.errors import MemoryAccessError
from gasymex.utils import get_constant, describeAst, isDefinitelyEqual_Solver, isDefinitelyNotEqual_Solver

l = logging.getLogger(name=__name__)

BITS_IN_BYTE = 8

# image bytes a single symbolic read may range over
MAX_IMAGE_BYTES = 0x1000


class ArrayMemory:
    """
    Memory store for one path.

    Attributes:
        ptr_size: Width of addresses in bits
        endianness: Endianness used to split and join multi byte values
        solver: claripy solver holding the path constraints, used to
            enumerate symbolic addresses
        initial_byte: Optional callable returning the initial content (int)
            of an address or None when the address is uninitialized
        image_bytes: Optional callable (low, high) yielding (address, byte)
            for every initialized address in [low, high]
    """

    def __init__(self, ptr_size, endianness, solver, initial_byte=None, image_bytes=None,
                 cells=None, symbolic_writes=None, unconstrained=None, counter=None):
        self.ptr_size = ptr_size
        self.endianness = endianness
        self.solver = solver
        self.initial_byte = initial_byte
        self.image_bytes = image_bytes
        # address -> (byte expression, write sequence number)
        self._cells = cells if cells is not None else {}
        # [(address expression, byte expression, write sequence number)]
        self._symbolic_writes = symbolic_writes if symbolic_writes is not None else []
        # ast hash of an address -> (address, byte) of the unconstrained byte
        # handed out for never written memory there, in creation order
        self._unconstrained = unconstrained if unconstrained is not None else {}
        self._counter = counter if counter is not None else itertools.count()

    def copy(self, solver):
        """Independent copy of this memory bound to `solver` (the forked path's solver)"""
        counter_start = next(self._counter)
        return ArrayMemory(
            ptr_size=self.ptr_size,
            endianness=self.endianness,
            solver=solver,
            initial_byte=self.initial_byte,
            image_bytes=self.image_bytes,
            cells=dict(self._cells),
            symbolic_writes=list(self._symbolic_writes),
            unconstrained=dict(self._unconstrained),
            counter=itertools.count(counter_start + 1)
        )

    #--------------------------------------------------------------------------
    # PUBLIC INTERFACE
    #--------------------------------------------------------------------------

    def resolve_addresses(self, addr, bound):
        """
        Concrete candidates for `addr` under the current constraints.

        Returns [addr] when addr is already concrete. Otherwise returns at most
        `bound` sorted candidate addresses (as bitvector values). If the
        solver finds more than `bound` solutions the symbolic address is
        returned as the only element. An empty list means the path
        constraints are unsatisfiable.
        """
        if get_constant(addr) is not None:
            return [addr]
        if not self.solver.satisfiable():
            return []
        solutions = self.solver.eval(addr, bound + 1)
        if len(solutions) > bound:
            l.debug(f"{describeAst(addr)} has more than {bound} solutions, keeping it symbolic")
            return [addr]
        return [claripy.BVV(value, len(addr)) for value in sorted(solutions)]

    def read(self, addr, bits):
        """Read `bits` bits starting at `addr`"""
        self._check_address(addr)
        if bits < BITS_IN_BYTE:
            return self._read_u8(addr)[bits - 1:0]

        if bits % BITS_IN_BYTE != 0:
            raise ValueError(f"Must read whole bytes when reading {bits} >= 8 bits")

        num_bytes = bits // BITS_IN_BYTE
        data = [self._read_u8(self._offset(addr, n)) for n in range(num_bytes)]
        if self.endianness.is_little:
            # first byte is the least significant one
            data.reverse()
        value = data[0] if len(data) == 1 else claripy.Concat(*data)
        l.debug(f"read {bits} bits from {describeAst(addr)}: {describeAst(value)}")
        return value

    def write(self, addr, value):
        """Write `value` starting at `addr`. Values below one byte are zero extended."""
        self._check_address(addr)
        if len(value) < BITS_IN_BYTE:
            value = value.zero_extend(BITS_IN_BYTE - len(value))

        if len(value) % BITS_IN_BYTE != 0:
            raise ValueError(f"Must write whole bytes, got a {len(value)} bit value")

        l.debug(f"write {describeAst(value)} to {describeAst(addr)}")
        num_bytes = len(value) // BITS_IN_BYTE
        for n in range(num_bytes):
            byte = value[(n + 1) * BITS_IN_BYTE - 1:n * BITS_IN_BYTE]
            if self.endianness.is_little:
                offset = n
            else:
                offset = num_bytes - 1 - n
            self._write_u8(self._offset(addr, offset), byte)

    #--------------------------------------------------------------------------
    # BYTE LEVEL ACCESS
    #--------------------------------------------------------------------------

    def _check_address(self, addr):
        if len(addr) != self.ptr_size:
            raise ValueError(f"passed wrong sized address: {len(addr)} bits, expected {self.ptr_size}")

    def _offset(self, addr, offset):
        if offset == 0:
            return addr
        return addr + claripy.BVV(offset, self.ptr_size)

    def _may_alias(self, a, b):
        constant_a, constant_b = get_constant(a), get_constant(b)
        if constant_a is not None and constant_b is not None:
            return constant_a == constant_b
        return not isDefinitelyNotEqual_Solver(self.solver, a, b)

    def _read_u8(self, addr):
        address = get_constant(addr)
        if address is not None:
            return self._read_concrete_u8(address)

        # Symbolic address: replay every write in order on top of the initial content
        entries = [(claripy.BVV(a, self.ptr_size), byte, seq) for (a, (byte, seq)) in self._cells.items()]
        entries += self._symbolic_writes
        entries.sort(key=lambda entry: entry[2])
        value = self._initial_symbolic_u8(addr)
        for (written_addr, byte, _) in entries:
            value = claripy.If(addr == written_addr, byte, value)
        return value

    def _read_concrete_u8(self, address):
        if address in self._cells:
            value, seq = self._cells[address]
        else:
            value, seq = self._initial_u8(address), -1

        concrete_addr = claripy.BVV(address, self.ptr_size)
        for (written_addr, byte, written_seq) in self._symbolic_writes:
            if written_seq < seq or not self._may_alias(concrete_addr, written_addr):
                continue
            if isDefinitelyEqual_Solver(self.solver, concrete_addr, written_addr):
                value = byte
            else:
                value = claripy.If(concrete_addr == written_addr, byte, value)
        return value

    def _initial_u8(self, address):
        if self.initial_byte is not None:
            initial = self.initial_byte(address)
            if initial is not None:
                return claripy.BVV(initial, BITS_IN_BYTE)
        return self._unconstrained_u8(claripy.BVV(address, self.ptr_size), f"memory_{address:#x}")

    def _initial_symbolic_u8(self, addr):
        value = self._unconstrained_u8(addr, "memory")
        if self.image_bytes is None:
            return value

        low, high = self.solver.min(addr), self.solver.max(addr)
        image = list(itertools.islice(self.image_bytes(low, high), MAX_IMAGE_BYTES + 1))
        if len(image) > MAX_IMAGE_BYTES:
            raise MemoryAccessError(
                f"Symbolic read at {describeAst(addr)} ranges over more than {MAX_IMAGE_BYTES:#x} "
                f"initialized bytes ({low:#x}-{high:#x})")
        for (image_address, byte) in image:
            value = claripy.If(addr == claripy.BVV(image_address, self.ptr_size), claripy.BVV(byte, BITS_IN_BYTE), value)
        return value

    def _unconstrained_u8(self, addr, name):
        """
        Unconstrained content of never written memory at `addr`. Bytes handed
        out earlier take precedence whenever their address equals `addr`.
        """
        key = addr.hash()
        if key not in self._unconstrained:
            self._unconstrained[key] = (addr, claripy.BVS(name, BITS_IN_BYTE))

        earlier = []
        for (other_key, entry) in self._unconstrained.items():
            if other_key == key:
                break
            earlier.append(entry)

        value = self._unconstrained[key][1]
        for (other_addr, byte) in reversed(earlier):
            if self._may_alias(addr, other_addr):
                value = claripy.If(addr == other_addr, byte, value)
        return value

    def _write_u8(self, addr, byte):
        seq = next(self._counter)
        address = get_constant(addr)
        if address is not None:
            self._cells[address] = (byte, seq)
        else:
            self._symbolic_writes.append((addr, byte, seq))
