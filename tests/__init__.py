"""
Test suite for Credence

- Unit tests for identity records, classification, field parsing and matching
- Decision policy and state machine tests
- Verification service tests over an in-memory SQLite store with a fake extractor
- Expiry sweep and scheduler tests
- HTTP tests with FastAPI TestClient and CLI tests with click CliRunner
"""
