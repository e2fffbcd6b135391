"""
Immutable per-pool records, the tier store and its snapshot encoding.
"""
