"""agentstream: streaming augmentation of coding-agent output for browser clients."""

__version__ = "0.1.0"
