"""Domain layer: events, messages, read models and saga records.

Every other layer depends on these types; nothing here performs I/O.
"""
