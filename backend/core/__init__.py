"""Core mathematics and configuration for the H2H edge engine.

This package contains pure, sport-agnostic building blocks:

- ``percentiles``    : nearest-rank p05/p95/median, visibility, pair keys
- ``segments``       : recency windows and segment confidence scoring
- ``edge_classifier``: line vs. band → signal, strength, hit probability
- ``sizing``         : execution config, position size, limit price
- ``sport_config``   : per-sport provider URLs, aliases, franchise tables

Nothing in this package imports from ``backend.services`` or ``backend.models``.
All modules are side-effect-free and unit-testable in isolation.
"""
