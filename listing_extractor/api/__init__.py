"""
HTTP API for triggering and polling extractions.
"""
