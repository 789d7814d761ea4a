"""Anonymous two-party support chat API."""
