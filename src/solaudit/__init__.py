"""solaudit - multi-agent smart contract auditing engine."""

__version__ = "2.0.0"
