"""Contact form backend for actualintelligence-hash.github.io."""

__version__ = "1.0.0"
