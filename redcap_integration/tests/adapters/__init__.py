"""Tests for adapter implementations.

These tests exercise adapters against mocked REDCap and Management
Portal endpoints to validate the translation between core domain models
and the wire formats of both systems.
"""
