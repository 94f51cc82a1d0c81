"""Perception-state tracking between entities in a shared scene."""
