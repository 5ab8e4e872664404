"""
Intake Reasoning Engine

Deterministic safety gating, differential reasoning and follow-up
generation for structured patient intake. Produces routing signals and
clinician-review material only; never a diagnosis.
"""

__version__ = "1.0.0"
