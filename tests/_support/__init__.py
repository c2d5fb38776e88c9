"""Test support utilities for rollgate tests."""
