"""
PC hooks for library functions that do not depend on the target ISA.
"""
import logging

from gasymex.core.run_config import Intrinsic, EndFailure, Suppress

l = logging.getLogger(name=__name__)


def start_cyclecount(state):
    """Restart cycle counting from zero, e.g. after setup code"""
    l.debug(f"cycle count reset at {state.cycle_count}")
    state.cycle_count = 0
    state.set_register("PC", state.get_register("LR"))

def end_cyclecount(state):
    """Stop counting cycles for the rest of the path"""
    l.debug(f"cycle counting stopped at {state.cycle_count}")
    state.count_cycles = False
    state.set_register("PC", state.get_register("LR"))

def add_intrinsics(cfg):
    """Add the hooks for panics, path suppression and cycle counting to `cfg`"""
    cfg.pc_hooks.append((r"^panic_cold_explicit$", EndFailure("explicit panic")))
    cfg.pc_hooks.append((r"^panic_bounds_check$", EndFailure("bounds check panic")))
    cfg.pc_hooks.append((r"^unreachable_unchecked$", EndFailure("reach a unreachable unchecked call undefined behavior")))
    cfg.pc_hooks.append((r"^panic$", EndFailure("panic")))
    cfg.pc_hooks.append((r"^suppress_path$", Suppress()))
    cfg.pc_hooks.append((r"^start_cyclecount$", Intrinsic(start_cyclecount)))
    cfg.pc_hooks.append((r"^end_cyclecount$", Intrinsic(end_cyclecount)))
    return cfg
