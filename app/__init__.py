"""Application package root.

First-party code for the library storefront's database connection layer:
configuration, connection lifecycle management and the web wiring that
hands the connection manager to request handlers.
"""

__all__ = [
]
