"""
Integration Tests Package.

This package contains integration tests that verify
component interactions with mocked external APIs.

Tests verify:
- End-to-end workflow with mocked externals
- Component integration and data flow
- Error handling across components
"""
