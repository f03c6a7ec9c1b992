"""mapcompare - vocabulary-normalized comparison of concept maps."""

__version__ = "0.1.0"
