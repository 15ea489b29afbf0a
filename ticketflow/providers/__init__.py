"""Capability contracts and their local bindings."""
