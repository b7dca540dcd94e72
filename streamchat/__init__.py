"""Session-scoped streaming chat orchestration."""
