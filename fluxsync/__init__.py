"""
Flux Console - live-data synchronization engine for the operator dashboard
"""
__version__ = "1.0.0"
