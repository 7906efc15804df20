"""
threadline: conversation context and multi-provider chat orchestration.
"""

__version__ = "0.3.0"
