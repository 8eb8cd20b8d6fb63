"""gridtpl: in-memory engine and agent-first CLI for tabular report templates."""

__version__ = "0.1.0"
