"""teamstream — stream and supervise external coding-agent CLI sessions."""

__version__ = "0.1.0"
