"""Test suite for the REDCap integration service.

Organized into three categories:

1. core/: Unit tests for core domain logic
   - Minimal dependencies, fast execution
   - Uses in-memory fakes for ports

2. adapters/: Tests for adapter implementations
   - REDCap and Management Portal clients against httpx.MockTransport
   - Webhook receiver and HTTP server, project table loader

3. fakes/: Port implementations for testing
   - In-memory implementations of SourceSystemPort and TargetSystemPort
   - Used by core unit tests
"""
