"""
Tally - Board Game Scoring Engine

A formula and rule evaluation engine for board game scorekeeping.
Game templates describe categories, objects and rules; the engine provides:
- A small formula language ({refs}, operators, functions)
- Category aggregation (rollups, formulas, weights)
- Object ownership and lifecycle
- Rules that append compensating score entries
"""

__version__ = "0.1.0"
