"""Security review bot: LLM-backed analysis of pull requests with a maintainer-controlled false-positive ledger."""

__version__ = "0.1.0"
