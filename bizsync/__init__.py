"""BizSync data synchronization platform"""

__version__ = "1.0.0"
