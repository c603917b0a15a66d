"""webhook-listener: socket-activated webhook receiver that runs configured commands."""

__version__ = "0.3.0"
