"""taskloop - a bounded ReAct agent runtime with tools, memory and resilience."""

__version__ = "0.1.0"
