"""
A2A (Agent-to-Agent) Protocol Types

Wire models for the A2A protocol used by the task engine.
"""

__version__ = "0.1.0"
__protocol_version__ = "0.3.0"
