"""
Smart parking reservation core
"""
__version__ = "1.0.0"
