"""Signed webhook protocol between Tkoin and sovereign platforms."""
