"""Static Mach-O analyzer: load commands, Objective-C runtime metadata and dyld info"""

__version__ = "1.0.0"
__author__ = "machodump contributors"

__all__ = ["__version__", "__author__"]
