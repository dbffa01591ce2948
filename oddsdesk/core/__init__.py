"""Core arithmetic and configuration for the OddsDesk betting engine.

This package contains pure building blocks:

- ``odds_math``    : odds notation parsing, conversion and display formatting
- ``returns``      : stake / total-return / profit arithmetic
- ``engine_config``: timing windows, thresholds and service endpoints

Nothing in this package imports from ``oddsdesk.services``.
``odds_math`` and ``returns`` are side-effect-free and unit-testable in
isolation.
"""
