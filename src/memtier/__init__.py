"""memtier — hot/cold lifecycle for local assistant session memories."""

__version__ = "0.1.0"
