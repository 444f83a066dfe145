"""Agent staking engine."""
