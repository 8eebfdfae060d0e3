"""Test orchestration: job lists, execution, resume and result generation."""
