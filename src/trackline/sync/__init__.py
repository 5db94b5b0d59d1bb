"""JSONL synchronization: export, import, history and merge."""
