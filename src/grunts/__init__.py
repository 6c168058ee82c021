"""Grunts: self-healing validation and error learning for generated code."""

__version__ = "0.4.0"
