"""REDCap API adapter.

Implements SourceSystemPort against the REDCap record API.
"""
