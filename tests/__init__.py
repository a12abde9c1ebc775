"""
Tests Package - Unit and Integration Tests

Test structure:
- tests/unit/ - Fast, isolated tests of schemas, watermark, cursor, sinks, feed client, CLI
- tests/integration/ - Poll loop and poller service runs against simulated feeds
- tests/conftest.py - Shared fixtures and fake feeds

No test touches the network: HTTP goes through httpx.MockTransport.
"""
