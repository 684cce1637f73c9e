"""Complexity analysis and subtask expansion, with a deterministic fallback."""
