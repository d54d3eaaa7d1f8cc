"""
perp-console: operator console for a perpetual-futures trading backend.
"""
__version__ = "1.0.0"
