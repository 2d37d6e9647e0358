"""Libs layer: pluggable protocol handlers."""
