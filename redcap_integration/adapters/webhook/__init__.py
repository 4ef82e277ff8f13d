"""Webhook receiver adapters.

Provides the HTTP endpoint REDCap calls as its Data Entry Trigger:
- Parse the trigger body
- Run the integration pipeline
- Answer with a status code REDCap can log
"""
