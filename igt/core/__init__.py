"""Subtest runtime used by test binaries."""
