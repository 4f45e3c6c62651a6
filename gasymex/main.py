"""
gasymex: symbolic execution of microcontroller machine code

Runs every path of a function in an ELF file and reports, per path, how it
ended, the values that lead there and the number of cycles it took.
"""
import logging
import time

from tabulate import tabulate

from gasymex.core.executor import Suppress, AssumptionUnsat
from gasymex.core.intrinsics import add_intrinsics
from gasymex.core.project import Project
from gasymex.core.report import PathReport
from gasymex.core.run_config import RunConfig
from gasymex.core.vm import VM

l = logging.getLogger(name=__name__)

# Configure logging
def configure_logging(verbose=False):
    """Configure logging levels based on verbosity"""
    logging.getLogger('gasymex.core.executor').setLevel(logging.DEBUG if verbose else logging.WARNING)
    logging.getLogger('gasymex.core.vm').setLevel(logging.INFO if verbose else logging.WARNING)
    logging.getLogger('gasymex.core.memory_model').setLevel(logging.DEBUG if verbose else logging.WARNING)
    logging.getLogger(__name__).setLevel(logging.INFO)

#------------------------------------------------------------------------------
# RUNNING
#------------------------------------------------------------------------------

class RunMetrics:
    def __init__(self):
        self.start_time = None
        self.execution_time = 0
        self.paths_explored = 0
        self.paths_reported = 0
        self.paths_suppressed = 0
        self.paths_unsat = 0

    def start(self):
        self.start_time = time.process_time()

    def end(self):
        if self.start_time is not None:
            self.execution_time = time.process_time() - self.start_time

def run_paths(vm, cfg, max_paths=None, metrics=None):
    """Drain `vm`, returning a PathReport for every path that was not suppressed or pruned"""
    metrics = metrics if metrics is not None else RunMetrics()
    metrics.start()
    reports = []
    for (result, state) in vm.run(max_paths=max_paths):
        metrics.paths_explored += 1
        if isinstance(result, Suppress):
            l.debug("Suppressing path")
            metrics.paths_suppressed += 1
            continue
        if isinstance(result, AssumptionUnsat):
            l.info("Encountered an unsatisfiable assumption, ignoring this path")
            metrics.paths_unsat += 1
            continue

        report = PathReport(len(reports) + 1, result, state, cfg)
        if cfg.show_path_results:
            print(describe_path(report))
        reports.append(report)
    metrics.paths_reported = len(reports)
    metrics.end()
    l.info(f"Explored {metrics.paths_explored} paths in {metrics.execution_time:.4f}s")
    return reports

def run_elf(path, function, cfg=None, max_paths=None, metrics=None):
    """
    Symbolically execute `function` in the ELF file at `path`.

    Args:
        path: Path to the ELF file
        function: Name of the function execution starts at
        cfg: RunConfig, a default one if None
        max_paths: Stop after exploring this many paths
        metrics: Optional RunMetrics filled in during the run

    Returns:
        List of PathReport
    """
    cfg = cfg.copy() if cfg is not None else RunConfig()
    add_intrinsics(cfg)
    project = Project.from_path(path, cfg)
    l.info(f"Created project: {project}")
    vm = VM(project, cfg, function)
    return run_paths(vm, cfg, max_paths=max_paths, metrics=metrics)

#------------------------------------------------------------------------------
# DISPLAY
#------------------------------------------------------------------------------

def describe_path(report):
    lines = [f"PATH {report.path}: {report.result}"]
    for (title, variables) in (("Symbolic", report.symbolics),
                               ("Inputs", report.inputs),
                               ("End state", report.end_state)):
        if variables:
            lines.append(f"{title}:")
            lines.extend(f"    {name}: {value}" for (name, value) in variables)
    lines.append(f"Instructions executed: {report.instruction_count}")
    lines.append(f"Max number of cycles: {report.max_cycles}")
    if report.cycle_laps:
        laps = ", ".join(f"{label}@{cycles}" for (cycles, label) in report.cycle_laps)
        lines.append(f"Cycle laps: {laps}")
    return "\n".join(lines)

def display_path_results(reports, title=None):
    """Display path results in a nice tabular format"""
    if not reports:
        print("No path results to display.")
        return

    if title:
        print(f"\n===== {title} =====\n")

    headers = ["Path", "Result", "Instructions", "Max Cycles", "Symbolics", "Cycle Laps"]
    table_data = []
    for report in reports:
        symbolics = ", ".join(f"{name}={value}" for (name, value) in report.symbolics)
        laps = ", ".join(f"{label}@{cycles}" for (cycles, label) in report.cycle_laps)
        table_data.append([
            report.path,
            report.result,
            report.instruction_count,
            report.max_cycles,
            symbolics or "N/A",
            laps or "None",
        ])

    print(tabulate(table_data, headers=headers, tablefmt="grid"))

    worst = max(reports, key=lambda report: report.max_cycles)
    print(f"\nWorst case: path {worst.path} with {worst.max_cycles} cycles")
