"""Storage layer for lodestore.

This sub-package encapsulates the SQLite interactions so that the dispatch
engine stays agnostic to what a request's payload means.
"""
