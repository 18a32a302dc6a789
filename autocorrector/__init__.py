"""
Manuscript auto-correction service.
Audit, correct and re-audit long-form manuscripts until a quality threshold is met.
"""

__version__ = "1.0.0"
