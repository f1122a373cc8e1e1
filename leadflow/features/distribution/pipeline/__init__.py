"""
Pipeline stages for lead distribution.

Each subpackage owns one stage: identity normalization, duplicate
detection and assignee selection.
"""

__all__ = ["assignment", "duplicates", "normalization"]
