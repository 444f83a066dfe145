"""Admin governance: slashing and treasury burns."""
