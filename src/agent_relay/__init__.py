"""Supervision of CLI coding agents: spawn, log fan-out, and approval gating."""

__version__ = "0.1.0"
