"""Gavel core subsystems."""
