"""SQLite persistence for tasks, conversation history and transcripts."""
