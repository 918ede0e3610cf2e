"""Shared host pieces for running a tool panel in its own window."""
