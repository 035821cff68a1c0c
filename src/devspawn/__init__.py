"""devspawn: volume-backed devcontainers on demand, plus a queue-driven runner."""

__version__ = "0.1.0"
