"""
Small helpers for working with claripy expressions.
"""
import claripy


def get_constant(expr):
    """
    Return the concrete integer held by a bitvector expression, or None if the
    expression is symbolic.
    """
    if expr.op == 'BVV':
        return expr.args[0]
    if expr.symbolic:
        return None
    simplified = claripy.simplify(expr)
    if simplified.op == 'BVV':
        return simplified.args[0]
    return None

def to_signed(value, bits):
    """Interpret an unsigned integer of the given width as two's complement"""
    if value >> (bits - 1):
        return value - (1 << bits)
    return value

def resize(expr, bits):
    """Zero extend or truncate `expr` to exactly `bits` bits."""
    width = len(expr)
    if width == bits:
        return expr
    if width < bits:
        return expr.zero_extend(bits - width)
    return expr[bits - 1:0]

def bool_to_bv(cond):
    """Turn a claripy Bool into a 1-bit vector"""
    return claripy.If(cond, claripy.BVV(1, 1), claripy.BVV(0, 1))

def describeAst(ast):
    """Short human readable description of an AST, for log messages"""
    if ast.op == 'BVV':
        return hex(ast.args[0])
    text = str(ast)
    return text if len(text) <= 80 else text[:77] + '...'

def isDefinitelyEqual_Solver(solver, a, b):
    """True if `a == b` holds under every model of `solver`"""
    return not solver.satisfiable(extra_constraints=[a != b])

def isDefinitelyNotEqual_Solver(solver, a, b):
    """True if `a == b` holds under no model of `solver`"""
    return not solver.satisfiable(extra_constraints=[a == b])
