"""Persisted documents: session state and driving events."""
