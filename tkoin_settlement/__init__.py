"""Tkoin settlement core."""
