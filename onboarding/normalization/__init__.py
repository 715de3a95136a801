"""Normalization package.

One normalizer per contact field.  Each takes the raw cell text from an
uploaded file and returns the canonical form used for storage and for
identity comparison, or ``None`` when the value is unusable.
"""
