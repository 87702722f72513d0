"""oathsync: incremental sync engine for NYC OATH summons records."""

__version__ = "0.1.0"
