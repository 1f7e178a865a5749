"""Service orchestration and migration engine for the doom-coding stack."""

__version__ = "0.1.0"
