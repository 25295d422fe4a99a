"""gamefleet: deployment and fleet orchestration for game-server workloads."""

__version__ = "0.1.0"
