"""Run, converse with and smoke-test nanoclaw agent containers."""

__version__ = "0.1.0"
