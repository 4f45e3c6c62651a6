import claripy
import pytest

from gasymex.core import ir
from gasymex.core.ir import (Instruction, Register, Immediate, Local, Flag, Address, AddressWithOffset,
                             AddressInLocal, Condition, Shift, CURRENT_OPERAND, Computed)
from gasymex.core.errors import PathUnsatisfiable
from gasymex.core.executor import Executor
from gasymex.core.machine_state import State
from gasymex.core.path_selection import DFSPathSelection
from gasymex.core.run_config import RunConfig, Single
from gasymex.core.vm import VM

from conftest import make_project, const, CODE_START, RAM_START

R0, R1, R2, R3 = Register("R0"), Register("R1"), Register("R2"), Register("R3")


def run(executor, *operations, cycles=1, size=16):
    executor.execute_instruction(Instruction(size, operations, cycles))

def flags(state):
    return {name: const(state, state.get_flag(name)) for name in "NZCV"}


def test_pc_is_advanced_before_operations(executor, state):
    run(executor, ir.Move(R0, Register("PC")))
    assert const(state, state.get_register("R0")) == CODE_START + 2
    assert state.pc == CODE_START + 2
    run(executor, ir.Nop(), size=32)
    assert state.pc == CODE_START + 6

def test_fixed_cycles_and_instruction_count(executor, state):
    run(executor, ir.Nop(), cycles=3)
    run(executor, ir.Nop(), cycles=2)
    assert state.instruction_count == 2
    assert state.cycle_count == 5

def test_computed_cycles_see_the_finished_instruction(executor, state):
    cost = Computed(lambda s: 3 if s.has_jumped else 1)
    run(executor, ir.Nop(), cycles=cost)
    run(executor, ir.ConditionalJump(Immediate(0x1100)), cycles=cost)
    assert state.cycle_count == 4
    assert state.pc == 0x1100

def test_stopped_cycle_counting(executor, state):
    state.count_cycles = False
    run(executor, ir.Nop(), cycles=5)
    assert state.instruction_count == 1
    assert state.cycle_count == 0

@pytest.mark.parametrize("operation, a, b, expected", [
    (ir.Add, 0xffffffff, 2, 1),
    (ir.Sub, 5, 7, 0xfffffffe),
    (ir.Mul, 0x10000, 0x10000, 0),
    (ir.UDiv, 7, 2, 3),
    (ir.UDiv, 7, 0, 0),
    (ir.SDiv, 0xfffffff9, 2, 0xfffffffd),
    (ir.SDiv, 7, 0, 0),
    (ir.And, 0b1100, 0b1010, 0b1000),
    (ir.Or, 0b1100, 0b1010, 0b1110),
    (ir.Xor, 0b1100, 0b1010, 0b0110),
])
def test_binary_operations(executor, state, operation, a, b, expected):
    run(executor, operation(R0, Immediate(a), Immediate(b)))
    assert const(state, state.get_register("R0")) == expected

def test_add_with_carry(executor, state):
    state.set_flag("C", claripy.BVV(1, 1))
    run(executor, ir.Adc(R0, Immediate(1), Immediate(1)))
    assert const(state, state.get_register("R0")) == 3

def test_narrow_operands_are_zero_extended(executor, state):
    run(executor, ir.Add(R0, Immediate(ir.word8(0xff)), Immediate(1)))
    assert const(state, state.get_register("R0")) == 0x100

@pytest.mark.parametrize("shift_t, value, n, expected", [
    (Shift.LSL, 0x80000001, 1, 0x2),
    (Shift.LSR, 0x80000000, 4, 0x08000000),
    (Shift.ASR, 0x80000000, 4, 0xf8000000),
    (Shift.ROR, 0x00000001, 1, 0x80000000),
])
def test_shifts(executor, state, shift_t, value, n, expected):
    run(executor, ir.ShiftOperation(R0, Immediate(value), Immediate(n), shift_t))
    assert const(state, state.get_register("R0")) == expected

def test_rrx_shifts_in_the_carry(executor, state):
    state.set_flag("C", claripy.BVV(1, 1))
    run(executor, ir.ShiftOperation(R0, Immediate(0b10), Immediate(1), Shift.RRX))
    assert const(state, state.get_register("R0")) == 0x80000001

def test_shift_by_operations(executor, state):
    run(executor,
        ir.Sl(R0, Immediate(1), Immediate(4)),
        ir.Srl(R1, Immediate(0x80000000), Immediate(31)),
        ir.Sra(R2, Immediate(0x80000000), Immediate(31)),
        ir.Sror(R3, Immediate(0x12345678), Immediate(8)))
    assert const(state, state.get_register("R0")) == 0x10
    assert const(state, state.get_register("R1")) == 1
    assert const(state, state.get_register("R2")) == 0xffffffff
    assert const(state, state.get_register("R3")) == 0x78123456

def test_extensions(executor, state):
    run(executor,
        ir.ZeroExtend(R0, Immediate(0xff80), 8),
        ir.SignExtend(R1, Immediate(0xff80), 8),
        ir.Resize(Local("narrow"), Immediate(0x12345678), 16),
        ir.Move(R2, Local("narrow")))
    assert const(state, state.get_register("R0")) == 0x80
    assert const(state, state.get_register("R1")) == 0xffffff80
    assert const(state, state.get_register("R2")) == 0x5678

@pytest.mark.parametrize("operation, value, expected", [
    (ir.CountOnes, 0xf0f0, 8),
    (ir.CountZeroes, 0xf0f0, 24),
    (ir.CountLeadingZeroes, 0x00010000, 15),
    (ir.CountLeadingZeroes, 0, 32),
    (ir.CountLeadingOnes, 0xff000000, 8),
    (ir.CountLeadingOnes, 0xffffffff, 32),
])
def test_counts(executor, state, operation, value, expected):
    run(executor, operation(R0, Immediate(value)))
    assert const(state, state.get_register("R0")) == expected

def test_not(executor, state):
    run(executor, ir.Not(R0, Immediate(0x0000ffff)))
    assert const(state, state.get_register("R0")) == 0xffff0000

#------------------------------------------------------------------------------
# FLAGS
#------------------------------------------------------------------------------

def compare(executor, a, b):
    run(executor,
        ir.Sub(Local("result"), Immediate(a), Immediate(b)),
        ir.SetNFlag(Local("result")),
        ir.SetZFlag(Local("result")),
        ir.SetCFlag(Immediate(a), Immediate(b), sub=True),
        ir.SetVFlag(Immediate(a), Immediate(b), sub=True))

@pytest.mark.parametrize("a, b, expected", [
    (5, 5, dict(N=0, Z=1, C=1, V=0)),
    (5, 7, dict(N=1, Z=0, C=0, V=0)),
    (7, 5, dict(N=0, Z=0, C=1, V=0)),
    (0x80000000, 1, dict(N=0, Z=0, C=1, V=1)),
    (0x7fffffff, 0xffffffff, dict(N=1, Z=0, C=0, V=1)),
])
def test_subtraction_flags(executor, state, a, b, expected):
    compare(executor, a, b)
    assert flags(state) == expected

def test_addition_flags(executor, state):
    run(executor,
        ir.SetCFlag(Immediate(0xffffffff), Immediate(1)),
        ir.SetVFlag(Immediate(0x7fffffff), Immediate(1)))
    assert const(state, state.get_flag("C")) == 1
    assert const(state, state.get_flag("V")) == 1

def test_add_with_carry_flags(executor, state):
    state.set_flag("C", claripy.BVV(1, 1))
    run(executor, ir.SetCFlag(Immediate(0xfffffffe), Immediate(1), carry=True))
    assert const(state, state.get_flag("C")) == 1

def test_shift_carry_flags(executor, state):
    state.set_flag("C", claripy.BVV(0, 1))
    run(executor, ir.SetCFlagShiftLeft(Immediate(0x80000001), Immediate(1)))
    assert const(state, state.get_flag("C")) == 1
    run(executor, ir.SetCFlagSrl(Immediate(0b10), Immediate(1)))
    assert const(state, state.get_flag("C")) == 0
    run(executor, ir.SetCFlagSra(Immediate(0x80000000), Immediate(32)))
    assert const(state, state.get_flag("C")) == 1
    run(executor, ir.SetCFlagRor(Immediate(0x80000000)))
    assert const(state, state.get_flag("C")) == 1

def test_shift_by_zero_keeps_the_carry(executor, state):
    state.set_flag("C", claripy.BVV(1, 1))
    run(executor, ir.SetCFlagShiftLeft(Immediate(0), Immediate(0)))
    assert const(state, state.get_flag("C")) == 1

@pytest.mark.parametrize("condition, a, b, taken", [
    (Condition.EQ, 3, 3, True), (Condition.NE, 3, 3, False),
    (Condition.CS, 3, 2, True), (Condition.CC, 3, 2, False),
    (Condition.MI, 2, 3, True), (Condition.PL, 2, 3, False),
    (Condition.HI, 3, 2, True), (Condition.LS, 3, 3, True),
    (Condition.GE, 0xffffffff, 1, False), (Condition.LT, 0xffffffff, 1, True),
    (Condition.GT, 2, 1, True), (Condition.LE, 2, 1, False),
    (Condition.VS, 0x80000000, 1, True), (Condition.VC, 0x80000000, 1, False),
])
def test_conditions(executor, state, paths, condition, a, b, taken):
    compare(executor, a, b)
    run(executor, ir.ConditionalJump(Immediate(0x1100), condition))
    assert (state.pc == 0x1100) == taken
    assert len(paths) == 0

#------------------------------------------------------------------------------
# FORKING
#------------------------------------------------------------------------------

def test_ambiguous_branch_forks(executor, state, paths):
    run(executor, ir.ConditionalJump(Immediate(0x1100), Condition.EQ), cycles=2)
    assert state.pc == 0x1100
    assert const(state, state.get_flag("Z")) == 1
    assert state.cycle_count == 2
    assert len(paths) == 1

    forked = paths.get_path()
    assert forked.continuation is not None
    vm_state = forked.state
    vm_state.constraints.add(forked.constraint)
    Executor(vm_state, paths).resume(forked.continuation)
    assert vm_state.pc == CODE_START + 2
    assert const(vm_state, vm_state.get_flag("Z")) == 0
    assert vm_state.instruction_count == 1
    assert vm_state.cycle_count == 2
    assert len(paths) == 0

def test_constant_address_does_not_fork(executor, state, paths):
    addr = claripy.BVV(RAM_START, 32)
    assert executor.resolve_address(addr) is addr
    run(executor, ir.Move(Address(RAM_START, 32), Immediate(9)), ir.Move(R0, Address(RAM_START, 32)))
    assert const(state, state.get_register("R0")) == 9
    assert len(paths) == 0

def test_ambiguous_address_forks_per_candidate(executor, state, paths):
    index = claripy.BVS("index", 32)
    state.set_register("R1", index)
    state.constraints.add(claripy.Or(index == 0, index == 4, index == 8))

    run(executor, ir.Move(R2, AddressWithOffset(RAM_START, "R1", 32)))

    assert state.constraints.eval(index, 3) == (0,)
    assert len(paths) == 2
    forked = sorted(p.state.constraints.eval(index, 3, extra_constraints=[p.constraint])[0]
                    for p in paths.paths)
    assert forked == [4, 8]

def test_forked_paths_do_not_repeat_hooked_reads():
    peripheral = 0x40000000
    calls = []
    def read_peripheral(state, address):
        calls.append(address)
        return claripy.BVV(5, 32)
    cfg = RunConfig(memory_read_hooks=[(Single(peripheral), read_peripheral)])
    state = State.create(make_project(cfg=cfg), cfg, "test")
    paths = DFSPathSelection()
    index = claripy.BVS("index", 32)
    state.set_register("R1", index)
    state.constraints.add(claripy.Or(index == 0, index == 4))
    state.write_memory(claripy.BVV(RAM_START, 32), claripy.BVV(10, 32))
    state.write_memory(claripy.BVV(RAM_START + 4, 32), claripy.BVV(20, 32))

    run(Executor(state, paths), ir.Add(R0, Address(peripheral, 32), AddressWithOffset(RAM_START, "R1", 32)))
    assert calls == [peripheral]
    assert const(state, state.get_register("R0")) == 15

    forked = paths.get_path()
    forked.state.constraints.add(forked.constraint)
    Executor(forked.state, paths).resume(forked.continuation)
    assert calls == [peripheral]
    assert const(forked.state, forked.state.get_register("R0")) == 25
    assert forked.state.instruction_count == 1

def test_unsatisfiable_address_prunes_the_path(executor, state):
    index = claripy.BVS("index", 32)
    state.set_register("R1", index)
    state.constraints.add(index == 1)
    state.constraints.add(index == 2)
    with pytest.raises(PathUnsatisfiable):
        run(executor, ir.Move(R2, AddressWithOffset(RAM_START, "R1", 32)))

def test_address_in_local(executor, state):
    run(executor,
        ir.Add(Local("addr"), Immediate(RAM_START), Immediate(8)),
        ir.Move(AddressInLocal("addr", 16), Immediate(0xbeef)),
        ir.Move(R0, Address(RAM_START + 8, 16)))
    assert const(state, state.get_register("R0")) == 0xbeef

def test_for_each_binds_the_current_operand(executor, state):
    run(executor, ir.ForEach([R0, R1, R2], [
        ir.Move(Local(CURRENT_OPERAND), Immediate(7)),
        ir.Add(R3, R3, Local(CURRENT_OPERAND)),
    ]), ir.Move(Local("after"), Immediate(1)))
    for name in ("R0", "R1", "R2"):
        assert const(state, state.get_register(name)) == 7
    assert state.constraints.eval(state.get_register("R3") - state.inputs[0].value, 1) == (21,)

def test_flag_operands(executor, state):
    run(executor, ir.Move(Flag("C"), Immediate(1)), ir.Move(R0, Flag("C")))
    assert const(state, state.get_flag("C")) == 1
    assert const(state, state.get_register("R0")) == 1

def test_conditional_execution_skips_failing_instructions(executor, state):
    state.set_flag("Z", claripy.BVV(1, 1))
    run(executor, ir.ConditionalExecution([Condition.EQ, Condition.NE]))
    assert state.get_in_conditional_block()
    run(executor, ir.Move(R0, Immediate(1)), cycles=2)
    run(executor, ir.Move(R1, Immediate(1)), cycles=2)
    assert not state.get_in_conditional_block()
    assert const(state, state.get_register("R0")) == 1
    assert "R1" not in state.registers
    assert state.pc == CODE_START + 6
    assert state.cycle_count == 5

def test_vm_explores_both_sides_of_a_branch(project, cfg):
    project.arch.decoder.program.update({
        CODE_START: Instruction(16, [ir.ConditionalJump(Immediate(CODE_START + 4), Condition.EQ)], 1),
        CODE_START + 2: Instruction(16, [ir.Move(R0, Immediate(1)), ir.Move(Register("PC"), Register("LR"))], 1),
        CODE_START + 4: Instruction(16, [ir.Move(R0, Immediate(2)), ir.Move(Register("PC"), Register("LR"))], 1),
    })
    results = [(type(result).__name__, const(state, state.get_register("R0"))) for (result, state) in VM(project, cfg, "test").run()]
    assert results == [("Success", 2), ("Success", 1)]
