"""Command line interface for the package repository cache."""
