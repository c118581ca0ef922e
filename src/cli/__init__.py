"""Command-line interface for the Mental Model Engine."""
