"""
tradebridge package

HTTP-to-websocket bridge for a binary-options trading venue: one persistent
stream connection, request correlation, a bounded tick buffer and a
single-flight trade engine behind a small FastAPI facade.
"""

__version__ = "0.1.0"
