"""Backends, configuration and logging for workstate."""
