"""spark-relay: incident relay and pause/presence coordination for coding agents."""

__version__ = "0.1.0"
