"""Session-authenticated real-time message relay."""
