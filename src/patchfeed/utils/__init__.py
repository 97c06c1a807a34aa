"""Utility modules for patchfeed.

- paths: relative-path normalization and traversal checks
- sanitization: credential stripping for logged URLs
- timestamps: ISO-8601 parsing tolerant of seven-digit fractions
"""

__all__: list[str] = []
