"""
signalstream - MT5 position streaming and signal reconciliation engine.
"""

__version__ = "1.0.0"
