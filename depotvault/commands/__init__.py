"""CLI commands for depotvault."""
