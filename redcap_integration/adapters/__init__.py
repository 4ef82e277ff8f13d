"""External adapters for the REDCap integration service.

This package contains all external dependencies (httpx, pydantic, YAML,
HTTP servers) and provides implementations of the core port interfaces.

Adapter Organization:

- redcap/: REDCap record API client (SourceSystemPort)
- management_portal/: Management Portal subject client and OAuth2 tokens (TargetSystemPort)
- projects/: YAML project table loader
- webhook/: HTTP endpoint for Data Entry Triggers
"""
