"""Core settings, logging, errors and utilities."""
