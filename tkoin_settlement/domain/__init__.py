"""Pure domain types: enums, policies, state machines and token units."""
