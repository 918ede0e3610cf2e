"""Sync core, stream primitives and the ttkbootstrap panel."""
