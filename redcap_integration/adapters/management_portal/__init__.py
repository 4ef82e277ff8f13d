"""Management Portal adapters.

Implements TargetSystemPort against the Management Portal subject API,
authenticated with OAuth2 client credentials.
"""
