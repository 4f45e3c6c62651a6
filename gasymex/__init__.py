"""
gasymex: symbolic execution of microcontroller machine code with cycle accounting.
"""
__version__ = "0.3.0"
