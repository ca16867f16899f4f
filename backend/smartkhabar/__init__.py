"""
SmartKhabar personalization engine.

Learns a reader's topic and source affinities from feed interactions and
turns their preference profile into a ranked semantic search.
"""

from smartkhabar.engine import PersonalizationEngine

__version__ = "0.1.0"

__all__ = ["PersonalizationEngine"]
