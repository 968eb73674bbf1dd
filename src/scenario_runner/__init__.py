"""
Scenario Runner - orchestrated multi-session UI scenario execution.
"""

__version__ = "0.4.0"
