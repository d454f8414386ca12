"""Marketplace HTML parsers.

Every parser exposes ``parse_listings(html, url)`` and an ordered
``STRATEGIES`` tuple of ``(name, callable)`` pairs.
"""

from . import bilbasen, gaspedaal, generic, leboncoin, marktplaats

__all__ = ["bilbasen", "gaspedaal", "generic", "leboncoin", "marktplaats"]
