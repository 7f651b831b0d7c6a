"""
Listing extractor: drives ordered provider calls for a business listing and
merges their outputs into one canonical, resumable draft record.
"""

__version__ = "0.1.0"
