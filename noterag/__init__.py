"""noterag: retrieval-augmented generation over a user's notes."""

__version__ = "0.1.0"
