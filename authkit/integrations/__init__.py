"""External collaborators: OAuth providers and mail delivery."""
