"""SQLite persistence for shared billing state."""
